from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Request, WebSocket

from voice_agent.services.agent import ConversationAgent, OpenAIReasoningProvider
from voice_agent.services.facility import FacilityRepository, load_default_repository
from voice_agent.services.session import SessionRegistry
from voice_agent.services.stt import DeepgramRecognizerFactory, RecognizerFactory
from voice_agent.services.tts import ElevenLabsSynthesizer, SpeechSynthesizer


@dataclass
class VoiceServices:
    """Process-wide collaborators shared by every call."""

    registry: SessionRegistry
    repository: FacilityRepository
    agent: ConversationAgent
    synthesizer: SpeechSynthesizer
    recognizer_factory: RecognizerFactory
    filler_initial_delay_ms: Optional[int] = None
    filler_repeat_interval_ms: Optional[int] = None


def build_default_services() -> VoiceServices:
    repository = load_default_repository()
    return VoiceServices(
        registry=SessionRegistry(),
        repository=repository,
        agent=ConversationAgent(OpenAIReasoningProvider(), repository),
        synthesizer=ElevenLabsSynthesizer(),
        recognizer_factory=DeepgramRecognizerFactory(),
    )


def get_services(request: Request) -> VoiceServices:
    return request.app.state.services


def get_ws_services(websocket: WebSocket) -> VoiceServices:
    return websocket.app.state.services
