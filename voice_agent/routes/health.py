from typing import Any, Dict

from fastapi import APIRouter, Depends

from voice_agent.dependencies import VoiceServices, get_services

router = APIRouter()


@router.get("/")
def healthcheck(services: VoiceServices = Depends(get_services)) -> Dict[str, Any]:
    return {"status": "ok", "active_sessions": len(services.registry)}
