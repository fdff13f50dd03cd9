from __future__ import annotations

import asyncio
import json
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import logging
from deepgram import DeepgramClient as SDKDeepgramClient, LiveOptions, LiveTranscriptionEvents

from voice_agent.logging.flight_recorder import FlightRecorder
from voice_agent.models.realtime import Transcript

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10.0
KEEPALIVE_INTERVAL_S = 8.0


class RecognizerConnectError(RuntimeError):
    pass


@dataclass
class RecognizerCallbacks:
    """Set once at connect. May be invoked from a provider thread."""

    on_transcript: Callable[[Transcript], None]
    on_error: Callable[[Exception], None]
    on_close: Callable[[], None]


class SpeechRecognizer(Protocol):
    async def connect(self, callbacks: RecognizerCallbacks) -> None: ...

    def send(self, chunk: bytes) -> None: ...

    async def close(self) -> None: ...


RecognizerFactory = Callable[[FlightRecorder], SpeechRecognizer]


class DeepgramRecognizer:
    """One live Deepgram stream per call, 8 kHz mu-law in."""

    def __init__(
        self,
        client: Optional[SDKDeepgramClient],
        recorder: FlightRecorder,
        model: Optional[str] = None,
        language: Optional[str] = None,
        connect_timeout_s: float = CONNECT_TIMEOUT_S,
    ) -> None:
        self._client = client
        self.recorder = recorder
        self.model = model or os.getenv("DEEPGRAM_MODEL", "nova-2")
        self.language = language or os.getenv("DEEPGRAM_LANGUAGE", "en")
        self.connect_timeout_s = connect_timeout_s
        self._connection = None
        self._callbacks: Optional[RecognizerCallbacks] = None
        self._is_connected = False
        self._keepalive_task: Optional[asyncio.Task] = None
        self._send_lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    def _options(self) -> LiveOptions:
        return LiveOptions(
            model=self.model,
            language=self.language,
            encoding="mulaw",
            sample_rate=8000,
            channels=1,
            interim_results=True,
            utterance_end_ms="1000",
            vad_events=True,
            smart_format=True,
        )

    async def connect(self, callbacks: RecognizerCallbacks) -> None:
        self._callbacks = callbacks
        if not self._client:
            logger.warning("stt.no_api_key transcription disabled")
            self.recorder.log("ASR", "no_deepgram_client_available")
            return

        loop = asyncio.get_running_loop()
        opened: asyncio.Future = loop.create_future()

        def _resolve(exc: Optional[BaseException] = None) -> None:
            if opened.done():
                return
            if exc is None:
                opened.set_result(True)
            else:
                opened.set_exception(exc)

        def handle_open(_conn: Any, _open: Any, **kwargs: Any) -> None:
            loop.call_soon_threadsafe(_resolve)

        def handle_transcript(_conn: Any, result: Any, **kwargs: Any) -> None:
            channel = getattr(result, "channel", None)
            if not channel or not channel.alternatives:
                return
            alternative = channel.alternatives[0]
            text = (alternative.transcript or "").strip()
            if not text:
                return
            is_final = bool(getattr(result, "is_final", False) or getattr(result, "speech_final", False))
            callbacks.on_transcript(
                Transcript(text=text, is_final=is_final, confidence=alternative.confidence or 0.0)
            )

        def handle_error(_conn: Any, error: Any, **kwargs: Any) -> None:
            exc = error if isinstance(error, Exception) else RuntimeError(str(error))
            if not opened.done():
                loop.call_soon_threadsafe(_resolve, RecognizerConnectError(str(error)))
                return
            callbacks.on_error(exc)

        def handle_close(_conn: Any, _close: Any, **kwargs: Any) -> None:
            if not opened.done():
                loop.call_soon_threadsafe(_resolve, RecognizerConnectError("closed before open"))
            was_connected = self._is_connected
            self._is_connected = False
            if was_connected:
                callbacks.on_close()

        connection = self._client.listen.websocket.v("1")
        connection.on(LiveTranscriptionEvents.Open, handle_open)
        connection.on(LiveTranscriptionEvents.Transcript, handle_transcript)
        connection.on(LiveTranscriptionEvents.Error, handle_error)
        connection.on(LiveTranscriptionEvents.Close, handle_close)

        try:
            with self.recorder.stage("ASR", operation="connect", model=self.model):
                started = await asyncio.to_thread(connection.start, self._options())
                if started is False:
                    raise RecognizerConnectError("deepgram refused the live connection")
                await asyncio.wait_for(opened, timeout=self.connect_timeout_s)
        except asyncio.TimeoutError as exc:
            await asyncio.to_thread(self._finish, connection)
            raise RecognizerConnectError(f"no open event within {self.connect_timeout_s}s") from exc
        except RecognizerConnectError:
            await asyncio.to_thread(self._finish, connection)
            raise
        except Exception as exc:
            await asyncio.to_thread(self._finish, connection)
            raise RecognizerConnectError(str(exc)) from exc

        self._connection = connection
        self._is_connected = True
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        self.recorder.log("ASR", "connected", model=self.model, language=self.language)

    async def _keepalive_loop(self) -> None:
        while self._is_connected and self._connection:
            await asyncio.sleep(KEEPALIVE_INTERVAL_S)
            if not (self._is_connected and self._connection):
                break
            try:
                with self._send_lock:
                    self._connection.send(json.dumps({"type": "KeepAlive"}))
            except Exception as exc:
                logger.warning("stt.keepalive_failed %s", exc)
                break

    def send(self, chunk: bytes) -> None:
        if not self._is_connected or not self._connection or not chunk:
            return
        try:
            with self._send_lock:
                self._connection.send(chunk)
        except Exception as exc:
            logger.warning("stt.send_failed %s", exc)
            self.recorder.log("ASR", "streaming_send_error", error=str(exc))
            self._is_connected = False
            if self._callbacks:
                self._callbacks.on_error(exc)

    @staticmethod
    def _finish(connection: Any) -> None:
        try:
            connection.finish()
        except Exception as exc:
            logger.warning("stt.finish_failed %s", exc)

    async def close(self) -> None:
        if self._keepalive_task and not self._keepalive_task.done():
            self._keepalive_task.cancel()
        self._keepalive_task = None
        connection, self._connection = self._connection, None
        self._is_connected = False
        if connection is not None:
            await asyncio.to_thread(self._finish, connection)
            self.recorder.log("ASR", "closed")


class DeepgramRecognizerFactory:
    """Holds the shared SDK client and builds a recognizer per call."""

    def __init__(self, api_key: Optional[str] = None) -> None:
        self.api_key = api_key or os.getenv("DEEPGRAM_API_KEY")
        self._client: Optional[SDKDeepgramClient] = SDKDeepgramClient(self.api_key) if self.api_key else None

    def __call__(self, recorder: FlightRecorder) -> DeepgramRecognizer:
        return DeepgramRecognizer(self._client, recorder)
