from __future__ import annotations

import asyncio
import os
from typing import Awaitable, Callable, List, Optional, Protocol

import logging
from elevenlabs import VoiceSettings
from elevenlabs.client import ElevenLabs

from voice_agent.models.realtime import AudioEncoding, AudioFrame
from voice_agent.services.audio_codec import chunk_frames, generate_tone, to_twilio_frame

logger = logging.getLogger(__name__)

DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"
DEFAULT_MODEL_ID = "eleven_flash_v2_5"
PROVIDER_SAMPLE_RATE = 24000
FRAME_SIZE = 160

AudioChunkCallback = Callable[[bytes], Awaitable[None]]


class SynthesisError(RuntimeError):
    pass


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str) -> bytes: ...

    async def synthesize_stream(self, text: str, on_audio_chunk: AudioChunkCallback) -> None: ...


async def stream_frames(audio: bytes, on_audio_chunk: AudioChunkCallback, frame_size: int = FRAME_SIZE) -> None:
    for frame in chunk_frames(audio, frame_size):
        await on_audio_chunk(frame)


class ElevenLabsSynthesizer:
    """Text to 8 kHz mu-law via ElevenLabs PCM output.

    The SDK call is blocking, so it runs in a worker thread. Without
    ``ELEVENLABS_API_KEY`` every utterance becomes a short tone.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        voice_id: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> None:
        self.api_key = api_key or os.getenv("ELEVENLABS_API_KEY")
        self.voice_id = voice_id or os.getenv("ELEVENLABS_VOICE_ID", DEFAULT_VOICE_ID)
        self.model_id = model_id or os.getenv("ELEVENLABS_MODEL_ID", DEFAULT_MODEL_ID)
        self._client: Optional[ElevenLabs] = None
        if self.api_key:
            self._client = ElevenLabs(api_key=self.api_key)

    def _collect_pcm(self, text: str) -> bytes:
        chunks: List[bytes] = []
        for part in self._client.text_to_speech.convert(
            self.voice_id,
            text=text,
            model_id=self.model_id,
            output_format=f"pcm_{PROVIDER_SAMPLE_RATE}",
            voice_settings=VoiceSettings(
                stability=0.5,
                similarity_boost=0.75,
            ),
        ):
            if isinstance(part, (bytes, bytearray)):
                chunks.append(bytes(part))
        return b"".join(chunks)

    async def synthesize(self, text: str) -> bytes:
        if not text:
            return b""
        if not self._client:
            logger.info("tts.stubbed chars=%d", len(text))
            return generate_tone(duration_s=0.5, freq_hz=440)

        try:
            pcm = await asyncio.to_thread(self._collect_pcm, text)
        except Exception as exc:
            logger.warning("elevenlabs.tts_error %s", exc, exc_info=True)
            raise SynthesisError(str(exc)) from exc
        audio = to_twilio_frame(AudioFrame(pcm, AudioEncoding.PCM16, PROVIDER_SAMPLE_RATE)).data
        logger.info("tts.generated chars=%d bytes=%d", len(text), len(audio))
        return audio

    async def synthesize_stream(self, text: str, on_audio_chunk: AudioChunkCallback) -> None:
        audio = await self.synthesize(text)
        await stream_frames(audio, on_audio_chunk)
