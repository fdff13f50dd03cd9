from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ChatRequest(BaseModel):
    message: Optional[str] = None
    history: List[Dict[str, Any]] = Field(default_factory=list)


class ChatResponse(BaseModel):
    text: str
    messages: List[Dict[str, Any]]
