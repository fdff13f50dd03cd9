from __future__ import annotations

import asyncio
import os
import random
from enum import Enum
from typing import Dict, List, Optional, Set

import logging

from voice_agent.logging.flight_recorder import FlightRecorder
from voice_agent.services.tts import AudioChunkCallback, SpeechSynthesizer

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_DELAY_MS = 2000
DEFAULT_REPEAT_INTERVAL_MS = 4000


class FillerContext(str, Enum):
    THINKING = "thinking"
    SEARCHING = "searching"
    PROCESSING = "processing"
    WAITING = "waiting"


class FillerState(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    PLAYING = "playing"


FILLERS: Dict[FillerContext, List[str]] = {
    FillerContext.THINKING: ["Certainly.", "Let me see.", "Thank you."],
    FillerContext.SEARCHING: ["Let me look that up.", "Checking now.", "Searching for that now."],
    FillerContext.PROCESSING: ["Processing that now.", "Getting that ready."],
    FillerContext.WAITING: ["Just a moment, please.", "Sorry to keep you waiting."],
}


def _env_ms(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw else default


class FillerManager:
    """Short spoken phrases that cover agent latency.

    ``start`` arms a timer. If the turn is still running when it fires, one
    phrase from the current context is played, then a ``waiting`` phrase
    every repeat interval until ``stop``. A context requested while a phrase
    is playing is used for the next phrase instead. Every scheduled task
    remembers the generation it was armed under and does nothing once that
    is stale.
    """

    def __init__(
        self,
        synthesizer: SpeechSynthesizer,
        on_audio: AudioChunkCallback,
        initial_delay_ms: Optional[int] = None,
        repeat_interval_ms: Optional[int] = None,
        rng: Optional[random.Random] = None,
        recorder: Optional[FlightRecorder] = None,
    ) -> None:
        self.synthesizer = synthesizer
        self.on_audio = on_audio
        self.initial_delay_ms = (
            initial_delay_ms
            if initial_delay_ms is not None
            else _env_ms("FILLER_INITIAL_DELAY_MS", DEFAULT_INITIAL_DELAY_MS)
        )
        self.repeat_interval_ms = (
            repeat_interval_ms
            if repeat_interval_ms is not None
            else _env_ms("FILLER_REPEAT_INTERVAL_MS", DEFAULT_REPEAT_INTERVAL_MS)
        )
        self.rng = rng or random.Random()
        self.recorder = recorder
        self.state = FillerState.IDLE
        self.current_context = FillerContext.THINKING
        self.used_fillers: Set[str] = set()
        self.played: List[str] = []
        self._generation = 0
        self._pending_context: Optional[FillerContext] = None
        self._task: Optional[asyncio.Task] = None

    def start(self, context: FillerContext = FillerContext.THINKING) -> None:
        if self.state is FillerState.PLAYING:
            self._pending_context = context
            return
        self.current_context = context
        self._cancel()
        generation = self._generation
        self.state = FillerState.SCHEDULED
        self._task = asyncio.create_task(self._run(generation))

    def stop(self) -> None:
        self._cancel()
        self.state = FillerState.IDLE

    def reset(self) -> None:
        self.stop()
        self.used_fillers.clear()
        self.current_context = FillerContext.THINKING

    async def play_immediate(self, context: FillerContext = FillerContext.THINKING) -> Optional[str]:
        if self.state is FillerState.PLAYING:
            self._pending_context = context
            return None
        self.current_context = context
        return await self._play(self._generation)

    def select_filler(self, context: FillerContext) -> str:
        candidates = FILLERS[context]
        available = [phrase for phrase in candidates if phrase not in self.used_fillers]
        if not available:
            self.used_fillers.clear()
            return self.rng.choice(candidates)
        selected = self.rng.choice(available)
        self.used_fillers.add(selected)
        return selected

    def _cancel(self) -> None:
        self._generation += 1
        self._pending_context = None
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, generation: int) -> None:
        await asyncio.sleep(self.initial_delay_ms / 1000)
        while generation == self._generation:
            await self._play(generation)
            if generation != self._generation:
                return
            self.state = FillerState.SCHEDULED
            await asyncio.sleep(self.repeat_interval_ms / 1000)
            if generation != self._generation:
                return
            self.current_context = self._pending_context or FillerContext.WAITING
            self._pending_context = None

    async def _play(self, generation: int) -> Optional[str]:
        if generation != self._generation:
            return None
        phrase = self.select_filler(self.current_context)
        self.state = FillerState.PLAYING
        logger.info("filler.play context=%s phrase=%s", self.current_context.value, phrase)
        if self.recorder:
            self.recorder.log("FILLER", "play", context=self.current_context.value)
        try:
            await self.synthesizer.synthesize_stream(phrase, self._forward(generation))
            self.played.append(phrase)
        except Exception as exc:
            logger.warning("filler.tts_error %s", exc, exc_info=True)
        finally:
            if generation == self._generation:
                self.state = FillerState.IDLE
        return phrase

    def _forward(self, generation: int) -> AudioChunkCallback:
        async def send(chunk: bytes) -> None:
            if generation == self._generation:
                await self.on_audio(chunk)

        return send
