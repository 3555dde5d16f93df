"""Server-Sent Events live stream of dashboard snapshots.

Each subscriber gets its own ``LiveStreamSession`` running an independent
async loop:

    CONNECTING ──events() starts──▶ OPEN ──disconnect / max duration──▶ CLOSED

On open the session sends ``connected`` then one ``stats`` event. Every
``interval`` seconds it sends a fresh ``stats`` event plus an ``alerts`` event
when there are unresolved alerts. A tick whose snapshot fails sends ``error``
instead and the loop carries on. Disconnect and the duration ceiling are
checked before every tick; nothing is sent once the session is CLOSED.
"""

import asyncio
import json
import logging
import threading
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from uuid import uuid4

from src.observability.metrics import STREAM_EVENTS_TOTAL, STREAM_SESSIONS
from src.observability.store import MetricsStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_DURATION_SECONDS = 300.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class StreamState(StrEnum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class SSEEvent:
    """One named Server-Sent Event with a JSON payload."""

    event: str
    data: Any

    def serialize(self) -> str:
        """Serialize to the SSE wire format (terminated by a blank line)."""
        lines = [f"event: {self.event}"]
        for line in json.dumps(self.data).split("\n"):
            lines.append(f"data: {line}")
        return "\n".join(lines) + "\n\n"


class LiveStreamSession:
    """Periodic snapshot pusher for a single subscriber.

    Args:
        store: Store to snapshot on every tick.
        interval: Seconds between periodic ticks.
        max_duration: Hard ceiling on session length, measured from open.
        is_disconnected: Async callable polled before each tick; True closes the session.
        clock: Monotonic seconds. Injected by tests together with ``sleep``.
        sleep: Awaitable sleep used between ticks.
        on_open / on_close: Hooks called once on entering OPEN and CLOSED.
    """

    def __init__(
        self,
        store: MetricsStore,
        *,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        max_duration: float = DEFAULT_MAX_DURATION_SECONDS,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_open: Callable[["LiveStreamSession"], None] | None = None,
        on_close: Callable[["LiveStreamSession"], None] | None = None,
    ) -> None:
        if interval <= 0:
            msg = f"interval must be positive, got {interval}"
            raise ValueError(msg)

        self.id = uuid4().hex[:8]
        self.state = StreamState.CONNECTING
        self.close_reason: str | None = None

        self._store = store
        self._interval = interval
        self._max_duration = max_duration
        self._is_disconnected = is_disconnected
        self._clock = clock
        self._sleep = sleep
        self._on_open = on_open
        self._on_close = on_close
        self._cancelled = False

    def cancel(self) -> None:
        """Request the session to close before its next tick."""
        self._cancelled = True

    async def events(self) -> AsyncIterator[SSEEvent]:
        """Run the session, yielding events until it closes."""
        if self.state is not StreamState.CONNECTING:
            msg = f"stream session {self.id} already {self.state.value}"
            raise RuntimeError(msg)

        self.state = StreamState.OPEN
        opened_at = self._clock()
        deadline = opened_at + self._max_duration
        if self._on_open is not None:
            self._on_open(self)
        logger.info("Live stream %s opened", self.id)

        try:
            yield self._emit(
                SSEEvent(
                    "connected",
                    {
                        "message": "Dashboard live stream connected",
                        "session_id": self.id,
                        "timestamp": self._store.now().isoformat(),
                    },
                )
            )
            for event in self._snapshot_events(include_alerts=False):
                yield event

            ticks = 0
            while True:
                now = self._clock()
                if now >= deadline:
                    self.close_reason = "timeout"
                    break
                ticks += 1
                next_tick = opened_at + ticks * self._interval
                await self._sleep(max(0.0, min(next_tick, deadline) - now))

                if await self._should_close(deadline):
                    break
                for event in self._snapshot_events(include_alerts=True):
                    yield event
        finally:
            self._close()

    async def stream(self) -> AsyncIterator[str]:
        """``events()`` serialized for a streaming HTTP response."""
        async for event in self.events():
            yield event.serialize()

    async def _should_close(self, deadline: float) -> bool:
        """Cancellation check run before every tick body."""
        if self._cancelled:
            self.close_reason = "cancelled"
            return True
        if self._clock() >= deadline:
            self.close_reason = "timeout"
            logger.info("Live stream %s reached its %.0fs limit", self.id, self._max_duration)
            return True
        if self._is_disconnected is not None:
            try:
                if await self._is_disconnected():
                    self.close_reason = "disconnected"
                    return True
            except Exception:
                logger.debug("Live stream %s: disconnect check failed", self.id, exc_info=True)
        return False

    def _snapshot_events(self, *, include_alerts: bool) -> list[SSEEvent]:
        try:
            stats = self._store.snapshot()
            events = [SSEEvent("stats", stats.model_dump(mode="json"))]
            if include_alerts and stats.alerts:
                events.append(SSEEvent("alerts", [a.model_dump(mode="json") for a in stats.alerts]))
        except Exception:
            logger.exception("Live stream %s: failed to build update", self.id)
            events = [SSEEvent("error", {"message": "Failed to update dashboard data"})]
        return [self._emit(e) for e in events]

    @staticmethod
    def _emit(event: SSEEvent) -> SSEEvent:
        STREAM_EVENTS_TOTAL.labels(event=event.event).inc()
        return event

    def _close(self) -> None:
        if self.state is StreamState.CLOSED:
            return
        self.state = StreamState.CLOSED
        if self.close_reason is None:
            self.close_reason = "disconnected"
        logger.info("Live stream %s closed (%s)", self.id, self.close_reason)
        if self._on_close is not None:
            self._on_close(self)


class LiveStreamPublisher:
    """Creates stream sessions and tracks how many are open."""

    def __init__(
        self,
        store: MetricsStore,
        *,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        max_duration: float = DEFAULT_MAX_DURATION_SECONDS,
    ) -> None:
        self.store = store
        self.interval = interval
        self.max_duration = max_duration
        self._open: set[str] = set()
        self._lock = threading.Lock()

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return len(self._open)

    def open_session(
        self,
        is_disconnected: Callable[[], Awaitable[bool]] | None = None,
        **kwargs: Any,
    ) -> LiveStreamSession:
        return LiveStreamSession(
            self.store,
            interval=self.interval,
            max_duration=self.max_duration,
            is_disconnected=is_disconnected,
            on_open=self._register,
            on_close=self._unregister,
            **kwargs,
        )

    def _register(self, session: LiveStreamSession) -> None:
        with self._lock:
            self._open.add(session.id)
        STREAM_SESSIONS.inc()

    def _unregister(self, session: LiveStreamSession) -> None:
        with self._lock:
            self._open.discard(session.id)
        STREAM_SESSIONS.dec()
