from __future__ import annotations

import asyncio
import copy
import os
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import logging

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT_S = 30 * 60
DEFAULT_SWEEP_INTERVAL_S = 5 * 60


@dataclass
class CallSession:
    stream_id: str
    call_id: str
    account_id: str
    start_time: float
    last_activity_time: float
    history: List[Dict[str, Any]] = field(default_factory=list)
    is_processing: bool = False
    turn_seq: int = 0


class SessionRegistry:
    """Owns every live :class:`CallSession`.

    Readers get copies. Mutation goes through the methods below, each of
    which holds the registry lock for its whole body, so turn ownership
    checks and history appends cannot interleave.

    Turn ownership: ``begin_turn`` hands out the next sequence number and
    marks the session busy. ``supersede_turn`` (barge-in) bumps the number
    without starting a turn, which makes every holder of the old number
    stale. Work done under a stale number must be discarded by its owner.
    """

    def __init__(
        self,
        idle_timeout_s: Optional[float] = None,
        sweep_interval_s: Optional[float] = None,
    ) -> None:
        self.idle_timeout_s = float(
            idle_timeout_s if idle_timeout_s is not None else os.getenv("SESSION_IDLE_TIMEOUT_S", DEFAULT_IDLE_TIMEOUT_S)
        )
        self.sweep_interval_s = float(
            sweep_interval_s
            if sweep_interval_s is not None
            else os.getenv("SESSION_SWEEP_INTERVAL_S", DEFAULT_SWEEP_INTERVAL_S)
        )
        self._sessions: Dict[str, CallSession] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._sessions)

    async def create(self, stream_id: str, call_id: str = "", account_id: str = "") -> CallSession:
        now = time.time()
        session = CallSession(
            stream_id=stream_id,
            call_id=call_id,
            account_id=account_id,
            start_time=now,
            last_activity_time=now,
        )
        async with self._lock:
            if stream_id in self._sessions:
                logger.warning("session.replaced stream_id=%s", stream_id)
            self._sessions[stream_id] = session
            snapshot = copy.deepcopy(session)
        logger.info("session.created stream_id=%s call_id=%s", stream_id, call_id)
        return snapshot

    async def get(self, stream_id: str) -> Optional[CallSession]:
        async with self._lock:
            session = self._sessions.get(stream_id)
            return copy.deepcopy(session) if session else None

    async def add_message(self, stream_id: str, role: str, text: str) -> bool:
        return await self.extend_history(stream_id, [{"role": role, "content": text}])

    async def extend_history(
        self,
        stream_id: str,
        messages: List[Dict[str, Any]],
        turn_seq: Optional[int] = None,
    ) -> bool:
        """Append ``messages``. With ``turn_seq``, only while that turn is still current."""
        async with self._lock:
            session = self._sessions.get(stream_id)
            if session is None:
                return False
            if turn_seq is not None and session.turn_seq != turn_seq:
                return False
            session.history.extend(copy.deepcopy(messages))
            session.last_activity_time = time.time()
            return True

    async def update(self, stream_id: str, **fields: Any) -> bool:
        async with self._lock:
            session = self._sessions.get(stream_id)
            if session is None:
                return False
            for name, value in fields.items():
                if name in {"stream_id", "history"} or not hasattr(session, name):
                    raise AttributeError(f"CallSession.{name} cannot be updated")
                setattr(session, name, value)
            if "last_activity_time" not in fields:
                session.last_activity_time = time.time()
            return True

    async def touch(self, stream_id: str) -> None:
        async with self._lock:
            session = self._sessions.get(stream_id)
            if session is not None:
                session.last_activity_time = time.time()

    async def begin_turn(self, stream_id: str) -> Optional[int]:
        """Claim the in-flight flag. Returns the turn number, or None if busy or gone."""
        async with self._lock:
            session = self._sessions.get(stream_id)
            if session is None or session.is_processing:
                return None
            session.turn_seq += 1
            session.is_processing = True
            session.last_activity_time = time.time()
            return session.turn_seq

    async def end_turn(self, stream_id: str, turn_seq: int) -> None:
        async with self._lock:
            session = self._sessions.get(stream_id)
            if session is not None and session.turn_seq == turn_seq:
                session.is_processing = False

    async def is_current_turn(self, stream_id: str, turn_seq: int) -> bool:
        async with self._lock:
            session = self._sessions.get(stream_id)
            return session is not None and session.turn_seq == turn_seq

    async def supersede_turn(self, stream_id: str) -> Optional[int]:
        async with self._lock:
            session = self._sessions.get(stream_id)
            if session is None:
                return None
            session.turn_seq += 1
            session.is_processing = False
            logger.info("session.turn_superseded stream_id=%s turn_seq=%d", stream_id, session.turn_seq)
            return session.turn_seq

    async def delete(self, stream_id: str) -> bool:
        async with self._lock:
            removed = self._sessions.pop(stream_id, None)
        if removed is not None:
            logger.info(
                "session.deleted stream_id=%s duration_s=%.1f messages=%d",
                stream_id,
                time.time() - removed.start_time,
                len(removed.history),
            )
        return removed is not None

    async def evict_idle(self, now: Optional[float] = None) -> List[str]:
        now = time.time() if now is None else now
        async with self._lock:
            stale = [
                stream_id
                for stream_id, session in self._sessions.items()
                if now - session.last_activity_time > self.idle_timeout_s
            ]
            for stream_id in stale:
                del self._sessions[stream_id]
        for stream_id in stale:
            logger.info("session.evicted stream_id=%s", stream_id)
        return stale

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                await self.evict_idle()
            except Exception:
                logger.exception("session.sweep_error")

    def start(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "session.sweep_started interval_s=%s idle_timeout_s=%s",
                self.sweep_interval_s,
                self.idle_timeout_s,
            )

    async def shutdown(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        async with self._lock:
            remaining = len(self._sessions)
            self._sessions.clear()
        logger.info("session.shutdown remaining=%d", remaining)
