from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from voice_agent.dependencies import VoiceServices, get_services
from voice_agent.models.chat import ChatRequest, ChatResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=ChatResponse)
async def chat(
    body: ChatRequest,
    request: Request,
    services: VoiceServices = Depends(get_services),
) -> ChatResponse:
    """Text conversation over the same agent loop the phone line uses."""
    if not body.message or not body.message.strip():
        raise HTTPException(status_code=400, detail="message is required")

    agent = services.agent
    result = await agent.run(
        agent.system_prompt(),
        body.history,
        body.message.strip(),
        recorder=getattr(request.state, "flight_recorder", None),
    )
    if result.failed:
        logger.error("chat.agent_failed provider_calls=%d", result.provider_calls)
        raise HTTPException(status_code=500, detail="Failed to process the message")
    return ChatResponse(text=result.text, messages=result.messages)
