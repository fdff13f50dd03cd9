from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import logging
from pydantic import ValidationError

from voice_agent.logging.flight_recorder import FlightRecorder
from voice_agent.models.realtime import (
    ConnectedEvent,
    DtmfEvent,
    MarkEvent,
    MediaEvent,
    StartEvent,
    StopEvent,
    Transcript,
    clear_message,
    mark_message,
    media_message,
    parse_stream_event,
)
from voice_agent.services.agent import APOLOGY_TEXT, ConversationAgent, build_greeting
from voice_agent.services.filler import FillerContext, FillerManager
from voice_agent.services.session import SessionRegistry
from voice_agent.services.stt import RecognizerCallbacks, RecognizerConnectError, RecognizerFactory, SpeechRecognizer
from voice_agent.services.tts import SpeechSynthesizer

logger = logging.getLogger(__name__)

SendJson = Callable[[Dict[str, Any]], Awaitable[None]]

_TOUCH_INTERVAL_S = 5.0


class HandlerState(str, Enum):
    AWAITING_START = "awaiting_start"
    STREAMING = "streaming"
    STOPPED = "stopped"


class MediaStreamHandler:
    """Drives one Twilio media stream from ``start`` to cleanup.

    Inbound media goes straight to the recognizer. Final transcripts are
    queued from the recognizer thread and consumed in order by a single pump
    task, which starts one turn task per utterance. A final transcript that
    arrives while a turn is running interrupts it: the caller's playback is
    cleared, the turn number is superseded and the old task is cancelled.
    Anything the old turn still produces is dropped. The caller's utterance
    itself goes into history before its turn starts.
    """

    def __init__(
        self,
        send_json: SendJson,
        registry: SessionRegistry,
        agent: ConversationAgent,
        synthesizer: SpeechSynthesizer,
        recognizer_factory: RecognizerFactory,
        recorder: Optional[FlightRecorder] = None,
        filler_initial_delay_ms: Optional[int] = None,
        filler_repeat_interval_ms: Optional[int] = None,
    ) -> None:
        self._send_json = send_json
        self.registry = registry
        self.agent = agent
        self.synthesizer = synthesizer
        self.recognizer_factory = recognizer_factory
        self.recorder = recorder or FlightRecorder()
        self.filler_initial_delay_ms = filler_initial_delay_ms
        self.filler_repeat_interval_ms = filler_repeat_interval_ms

        self.state = HandlerState.AWAITING_START
        self.stream_sid: Optional[str] = None
        self.call_sid: Optional[str] = None
        self.filler: Optional[FillerManager] = None
        self.recognizer: Optional[SpeechRecognizer] = None
        self.mark_counter = 0

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._transcripts: "asyncio.Queue[Optional[Transcript]]" = asyncio.Queue()
        self._send_lock = asyncio.Lock()
        self._pump_task: Optional[asyncio.Task] = None
        self._turn_task: Optional[asyncio.Task] = None
        self._greeting_task: Optional[asyncio.Task] = None
        self._closed = False
        self._cleaned_up = False
        self._last_touch = 0.0

    # inbound

    async def handle_message(self, raw: str) -> None:
        try:
            event = parse_stream_event(raw)
        except ValidationError as exc:
            logger.warning("media_stream.bad_frame errors=%d", exc.error_count())
            self.recorder.log("WS", "bad_frame", error=str(exc.errors()[0]["msg"]) if exc.errors() else "")
            return

        if isinstance(event, MediaEvent):
            await self._on_media(event)
        elif isinstance(event, StartEvent):
            await self._on_start(event)
        elif isinstance(event, StopEvent):
            await self._on_stop(event)
        elif isinstance(event, ConnectedEvent):
            logger.info("media_stream.connected protocol=%s", event.protocol)
        elif isinstance(event, MarkEvent):
            logger.info("media_stream.mark stream_sid=%s name=%s", self.stream_sid, event.mark.name)
        elif isinstance(event, DtmfEvent):
            logger.info("media_stream.dtmf stream_sid=%s digit=%s", self.stream_sid, event.dtmf.digit)

    async def _on_start(self, event: StartEvent) -> None:
        if self.state is not HandlerState.AWAITING_START:
            logger.warning("media_stream.duplicate_start state=%s", self.state.value)
            return

        self.state = HandlerState.STREAMING
        self._loop = asyncio.get_running_loop()
        self.stream_sid = event.start.stream_sid or event.stream_sid
        self.call_sid = event.start.call_sid
        self.recorder.call_id = self.call_sid or self.stream_sid
        logger.info("media_stream.start stream_sid=%s call_sid=%s", self.stream_sid, self.call_sid)

        await self.registry.create(self.stream_sid, self.call_sid, event.start.account_sid)
        self.recorder.log("SESSION", "created", active_sessions=len(self.registry))

        self.filler = FillerManager(
            self.synthesizer,
            self._send_audio,
            initial_delay_ms=self.filler_initial_delay_ms,
            repeat_interval_ms=self.filler_repeat_interval_ms,
            recorder=self.recorder,
        )
        self._pump_task = asyncio.create_task(self._pump())

        self.recognizer = self.recognizer_factory(self.recorder)
        try:
            await self.recognizer.connect(
                RecognizerCallbacks(
                    on_transcript=self._on_transcript,
                    on_error=self._on_recognizer_error,
                    on_close=self._on_recognizer_close,
                )
            )
        except RecognizerConnectError as exc:
            logger.error("media_stream.recognizer_connect_failed stream_sid=%s error=%s", self.stream_sid, exc)
            self.recorder.log("ASR", "connect_failed", error=str(exc))
            await self.cleanup()
            return

        self._greeting_task = asyncio.create_task(self._greet())

    async def _on_media(self, event: MediaEvent) -> None:
        if self.state is not HandlerState.STREAMING or self.recognizer is None:
            return
        try:
            audio = event.audio()
        except ValueError:
            logger.warning("media_stream.bad_payload stream_sid=%s", self.stream_sid)
            return
        self.recognizer.send(audio)

        now = time.monotonic()
        if now - self._last_touch > _TOUCH_INTERVAL_S:
            self._last_touch = now
            await self.registry.touch(self.stream_sid)

    async def _on_stop(self, event: StopEvent) -> None:
        logger.info("media_stream.stop stream_sid=%s", self.stream_sid)
        self.state = HandlerState.STOPPED
        await self.cleanup()

    # recognizer callbacks, possibly on a provider thread

    def _on_transcript(self, transcript: Transcript) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or self._cleaned_up:
            return
        loop.call_soon_threadsafe(self._transcripts.put_nowait, transcript)

    def _on_recognizer_error(self, error: Exception) -> None:
        logger.warning("media_stream.recognizer_error stream_sid=%s error=%s", self.stream_sid, error)

    def _on_recognizer_close(self) -> None:
        logger.info("media_stream.recognizer_closed stream_sid=%s", self.stream_sid)

    # turn handling

    async def _pump(self) -> None:
        while True:
            transcript = await self._transcripts.get()
            if transcript is None:
                return
            text = transcript.text.strip()
            if not text:
                continue
            if not transcript.is_final:
                logger.debug("media_stream.interim text=%s", text)
                continue
            self.recorder.log("ASR", "final", chars=len(text), confidence=transcript.confidence)
            await self._on_final_transcript(text)

    async def _on_final_transcript(self, text: str) -> None:
        turn_running = self._turn_task is not None and not self._turn_task.done()
        greeting_running = self._greeting_task is not None and not self._greeting_task.done()
        if turn_running or greeting_running:
            logger.info("media_stream.barge_in stream_sid=%s", self.stream_sid)
            self.recorder.log("WS", "barge_in", during_turn=turn_running)
            await self._send(clear_message(self.stream_sid))
            if self.filler:
                self.filler.stop()
            if turn_running:
                await self.registry.supersede_turn(self.stream_sid)
                await _cancel_and_wait(self._turn_task)
            if greeting_running:
                await _cancel_and_wait(self._greeting_task)

        session = await self.registry.get(self.stream_sid)
        history = session.history if session else []
        # committed now, even if the reply to it is later superseded
        await self.registry.add_message(self.stream_sid, "user", text)
        self._turn_task = asyncio.create_task(self._process_utterance(text, history))

    async def _process_utterance(self, text: str, history: List[Dict[str, Any]]) -> None:
        turn_seq = await self.registry.begin_turn(self.stream_sid)
        if turn_seq is None:
            logger.warning("media_stream.turn_rejected stream_sid=%s", self.stream_sid)
            return

        filler = self.filler
        try:
            filler.start(FillerContext.THINKING)
            result = await self.agent.run(
                self.agent.system_prompt(),
                history,
                text,
                on_tool_call=lambda call: filler.start(FillerContext.SEARCHING),
                recorder=self.recorder,
            )
            filler.stop()

            if not await self.registry.is_current_turn(self.stream_sid, turn_seq):
                logger.info("media_stream.stale_turn_dropped stream_sid=%s turn_seq=%d", self.stream_sid, turn_seq)
                return
            if not result.failed:
                # result.messages[0] is the user message, already in history
                committed = await self.registry.extend_history(
                    self.stream_sid, result.messages[1:], turn_seq=turn_seq
                )
                if not committed:
                    return

            await self._speak(result.text, turn_seq)
        except Exception as exc:
            logger.error("media_stream.turn_error stream_sid=%s error=%s", self.stream_sid, exc, exc_info=True)
            filler.stop()
            if await self.registry.is_current_turn(self.stream_sid, turn_seq):
                try:
                    await self._speak(APOLOGY_TEXT, turn_seq)
                except Exception:
                    logger.exception("media_stream.apology_failed stream_sid=%s", self.stream_sid)
        finally:
            await self.registry.end_turn(self.stream_sid, turn_seq)

    async def _speak(self, text: str, turn_seq: int) -> None:
        async def send_frame(frame: bytes) -> None:
            if await self.registry.is_current_turn(self.stream_sid, turn_seq):
                await self._send_audio(frame)

        with self.recorder.stage("TTS", chars=len(text)):
            await self.synthesizer.synthesize_stream(text, send_frame)

        if await self.registry.is_current_turn(self.stream_sid, turn_seq):
            self.mark_counter += 1
            await self._send(mark_message(self.stream_sid, f"response-{self.mark_counter}"))

    async def _greet(self) -> None:
        text = build_greeting(self.agent.repository.get_facility())
        try:
            with self.recorder.stage("TTS", chars=len(text), greeting=True):
                await self.synthesizer.synthesize_stream(text, self._send_audio)
        except Exception as exc:
            logger.warning("media_stream.greeting_failed stream_sid=%s error=%s", self.stream_sid, exc, exc_info=True)

    # outbound

    async def _send_audio(self, frame: bytes) -> None:
        await self._send(media_message(self.stream_sid, frame))

    async def _send(self, message: Dict[str, Any]) -> None:
        async with self._send_lock:
            if self._closed or not self.stream_sid:
                return
            try:
                await self._send_json(message)
            except Exception as exc:
                logger.warning("media_stream.send_failed stream_sid=%s error=%s", self.stream_sid, exc)
                self._closed = True

    # teardown

    async def cleanup(self) -> None:
        """Release everything this call holds. Safe to call more than once."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        self.state = HandlerState.STOPPED
        logger.info("media_stream.cleanup stream_sid=%s", self.stream_sid)

        if self.recognizer is not None:
            try:
                await self.recognizer.close()
            except Exception:
                logger.exception("media_stream.recognizer_close_failed stream_sid=%s", self.stream_sid)

        self._transcripts.put_nowait(None)
        # the pump can still start a turn until it is gone
        await _cancel_and_wait(self._pump_task)
        await _cancel_and_wait(self._turn_task)
        await _cancel_and_wait(self._greeting_task)

        if self.filler is not None:
            self.filler.reset()
        if self.stream_sid:
            await self.registry.delete(self.stream_sid)
            self.recorder.log("SESSION", "deleted", active_sessions=len(self.registry))
        async with self._send_lock:
            self._closed = True
        logger.info("media_stream.call_summary stream_sid=%s summary=%s", self.stream_sid, self.recorder.summary())


async def _cancel_and_wait(task: Optional[asyncio.Task]) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("media_stream.task_failed")
