"""Sessions warmed up ahead of demand."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..errors import ConductorError
from .manager import SessionStore
from .models import CommandOptions, Session

logger = logging.getLogger(__name__)

DEFAULT_WARMUP_PROMPT = "Hello! Please respond with 'Session ready' to confirm initialization."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrewarmState(str, Enum):
    WARMING = "WARMING"
    READY = "READY"


@dataclass(slots=True)
class PrewarmedSession:
    session_id: str
    created_at: datetime
    state: PrewarmState = PrewarmState.WARMING
    continuation_token: str | None = None

    def to_dict(self, now: datetime) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "continuation_token": self.continuation_token,
            "created_at": self.created_at.isoformat(),
            "age_s": round((now - self.created_at).total_seconds(), 3),
        }


class PrewarmPool:
    """Keeps ``pool_size`` sessions initialised with a trivial prompt.

    A claimed session leaves the pool with its continuation token, so the
    caller's first real prompt resumes an already started CLI conversation.
    The pool is refilled in the background after each claim; ready sessions
    older than ``max_age`` are killed and replaced by the maintenance loop.
    """

    def __init__(
        self,
        sessions: SessionStore,
        *,
        pool_size: int = 0,
        max_age: timedelta = timedelta(minutes=5),
        maintenance_interval: float = 60.0,
        warmup_prompt: str = DEFAULT_WARMUP_PROMPT,
        warmup_timeout: float = 30.0,
        working_directory: str | Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._sessions = sessions
        self._pool_size = pool_size
        self._max_age = max_age
        self._maintenance_interval = maintenance_interval
        self._warmup_prompt = warmup_prompt
        self._warmup_timeout = warmup_timeout
        self._working_directory = working_directory
        self._clock = clock
        self._entries: dict[str, PrewarmedSession] = {}
        self._claimed = 0
        self._failed = 0
        self._maintenance_task: asyncio.Task[None] | None = None
        self._refills: set[asyncio.Task[int]] = set()

    @property
    def enabled(self) -> bool:
        return self._pool_size > 0

    def _ready(self) -> list[PrewarmedSession]:
        ready = [entry for entry in self._entries.values() if entry.state is PrewarmState.READY]
        return sorted(ready, key=lambda entry: entry.created_at)

    async def warm_one(self) -> PrewarmedSession | None:
        session = self._sessions.create_session(self._working_directory, name="pre-warmed")
        entry = PrewarmedSession(session_id=session.id, created_at=self._clock())
        self._entries[session.id] = entry
        logger.info("Warming session", extra={"session_id": session.id})
        try:
            result = await self._sessions.execute_command(
                self._warmup_prompt,
                session_id=session.id,
                options=CommandOptions(timeout=self._warmup_timeout),
            )
        except ConductorError as exc:
            self._entries.pop(session.id, None)
            self._failed += 1
            logger.error("Failed to warm session", extra={"session_id": session.id, "error": str(exc)})
            await self._sessions.kill_session(session.id)
            return None

        entry.state = PrewarmState.READY
        entry.continuation_token = result.continuation_token
        logger.info(
            "Pre-warmed session ready",
            extra={"session_id": session.id, "resumable": result.continuation_token is not None},
        )
        return entry

    async def fill(self) -> int:
        """Warm enough sessions to reach the pool size; returns how many became ready."""

        needed = self._pool_size - len(self._entries)
        if needed <= 0:
            return 0
        warmed = await asyncio.gather(*(self.warm_one() for _ in range(needed)))
        return sum(1 for entry in warmed if entry is not None)

    async def claim(self) -> Session | None:
        """Hand out the oldest ready session, or None when none is ready."""

        for entry in self._ready():
            del self._entries[entry.session_id]
            session = self._sessions.get_session(entry.session_id)
            if session is None:
                continue
            session.metadata.name = None
            self._claimed += 1
            logger.info("Claimed pre-warmed session", extra={"session_id": session.id})
            self._schedule_refill()
            return session
        logger.debug("No pre-warmed session available")
        return None

    def _schedule_refill(self) -> None:
        task = asyncio.get_running_loop().create_task(self.fill())
        self._refills.add(task)
        task.add_done_callback(self._refills.discard)

    async def expire(self) -> int:
        now = self._clock()
        stale = [entry for entry in self._ready() if now - entry.created_at > self._max_age]
        for entry in stale:
            self._entries.pop(entry.session_id, None)
            await self._sessions.kill_session(entry.session_id)
        if stale:
            logger.info("Expired pre-warmed sessions", extra={"count": len(stale)})
        return len(stale)

    async def maintain(self) -> None:
        await self.expire()
        await self.fill()

    def start(self) -> None:
        """Start filling and maintaining the pool on the running event loop."""

        if not self.enabled:
            return
        if self._maintenance_task is not None and not self._maintenance_task.done():
            logger.warning("Pre-warm maintenance is already running")
            return
        self._maintenance_task = asyncio.get_running_loop().create_task(self._maintenance_loop())

    async def stop(self) -> None:
        """Stop background warming and kill every unclaimed pooled session."""

        tasks = list(self._refills)
        if self._maintenance_task is not None:
            tasks.append(self._maintenance_task)
            self._maintenance_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for session_id in list(self._entries):
            await self._sessions.kill_session(session_id)
        self._entries.clear()

    async def _maintenance_loop(self) -> None:
        while True:
            await self.maintain()
            await asyncio.sleep(self._maintenance_interval)

    def status(self) -> dict[str, Any]:
        ready = self._ready()
        warming = [entry for entry in self._entries.values() if entry.state is PrewarmState.WARMING]
        if ready:
            state, session_id = "READY", ready[0].session_id
        elif warming:
            state, session_id = "WARMING", warming[0].session_id
        else:
            state, session_id = ("NONE" if self.enabled else "DISABLED"), None
        return {"enabled": self.enabled, "available": bool(ready), "state": state, "session_id": session_id}

    def metrics(self) -> dict[str, Any]:
        now = self._clock()
        entries = sorted(self._entries.values(), key=lambda entry: entry.created_at)
        ready = sum(1 for entry in entries if entry.state is PrewarmState.READY)
        return {
            "configured": {
                "pool_size": self._pool_size,
                "max_age_s": self._max_age.total_seconds(),
                "maintenance_interval_s": self._maintenance_interval,
                "warmup_timeout_s": self._warmup_timeout,
            },
            "current": {
                "total": len(entries),
                "ready": ready,
                "warming": len(entries) - ready,
                "claimed": self._claimed,
                "failed": self._failed,
            },
            "sessions": [entry.to_dict(now) for entry in entries],
        }


__all__ = ["DEFAULT_WARMUP_PROMPT", "PrewarmPool", "PrewarmState", "PrewarmedSession"]
