from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import logging
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

_STAGE_ORDER = [
    "WS",
    "SESSION",
    "ASR",
    "PLAN",
    "TOOL",
    "FILLER",
    "TTS",
]

_REDACTED_KEYS = {"phone", "name", "caller_name", "caller_phone"}


@dataclass
class StageEvent:
    stage: str
    message: str
    elapsed_ms: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class FlightRecorder:
    """Per-call timeline of pipeline stages. Caller identity is redacted before logging."""

    def __init__(self, call_id: Optional[str] = None) -> None:
        self.call_id = call_id
        self.events: List[StageEvent] = []
        self.start_time = time.perf_counter()

    @contextmanager
    def stage(self, stage: str, **metadata: Any):
        if stage not in _STAGE_ORDER:
            logger.warning("flight_recorder.unknown_stage stage=%s", stage)
        stage_start = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - stage_start) * 1000
            total_ms = (time.perf_counter() - self.start_time) * 1000
            event = StageEvent(
                stage=stage,
                message=f"{stage} completed",
                elapsed_ms=elapsed_ms,
                metadata={"total_ms": round(total_ms, 2), **_redact(metadata)},
            )
            self.events.append(event)
            redacted = _redact(metadata)
            logger.info(
                "flight_recorder.stage call_id=%s stage=%s elapsed_ms=%.2f total_ms=%.2f metadata=%s",
                self.call_id,
                stage,
                round(elapsed_ms, 2),
                round(total_ms, 2),
                redacted,
            )

    def log(self, stage: str, message: str, **metadata: Any) -> None:
        if stage not in _STAGE_ORDER:
            logger.warning("flight_recorder.unknown_stage stage=%s", stage)
        total_ms = (time.perf_counter() - self.start_time) * 1000
        event = StageEvent(
            stage=stage,
            message=message,
            elapsed_ms=0,
            metadata={"total_ms": round(total_ms, 2), **_redact(metadata)},
        )
        self.events.append(event)
        redacted = _redact(metadata)
        logger.info(
            "flight_recorder.log call_id=%s stage=%s message=%s total_ms=%.2f metadata=%s",
            self.call_id,
            stage,
            message,
            round(total_ms, 2),
            redacted,
        )

    def summary(self) -> Dict[str, Any]:
        """Event count and time spent per stage, in pipeline order."""
        stages: Dict[str, Dict[str, Any]] = {}
        for event in sorted(self.events, key=lambda e: _stage_rank(e.stage)):
            entry = stages.setdefault(event.stage, {"events": 0, "elapsed_ms": 0.0})
            entry["events"] += 1
            entry["elapsed_ms"] = round(entry["elapsed_ms"] + event.elapsed_ms, 2)
        return {
            "call_id": self.call_id,
            "total_ms": round((time.perf_counter() - self.start_time) * 1000, 2),
            "stages": stages,
        }


def _stage_rank(stage: str) -> int:
    return _STAGE_ORDER.index(stage) if stage in _STAGE_ORDER else len(_STAGE_ORDER)


def _redact(payload: Dict[str, Any]) -> Dict[str, Any]:
    redacted = {}
    for key, value in payload.items():
        if key in _REDACTED_KEYS and value:
            redacted[key] = "***"
        else:
            redacted[key] = value
    return redacted


class FlightRecorderMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.flight_recorder = FlightRecorder()
        response = await call_next(request)
        return response


def register_log_middleware(app: FastAPI) -> None:
    app.add_middleware(FlightRecorderMiddleware)
