"""Session-level serialization, state timers and cancellation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from agentrt.orchestrator.engine import StateMachineEngine, TurnResult
from agentrt.orchestrator.interpreter import TIMEOUT_EVENT, Event

logger = logging.getLogger(__name__)

TimeoutCallback = Callable[[TurnResult], Awaitable[None]]


class SessionManager:
    """Front door for events.

    Events for one session run strictly one at a time in arrival order;
    different sessions run concurrently. After each turn a timer is armed
    for the dwell limit of the state the session is waiting in.
    """

    def __init__(
        self,
        engine: StateMachineEngine,
        *,
        on_timeout: TimeoutCallback | None = None,
    ) -> None:
        self.engine = engine
        self.on_timeout = on_timeout
        # A session keeps its lock only while a turn holds or awaits it.
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiting: dict[str, int] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._inflight: dict[str, asyncio.Task[TurnResult]] = {}
        self._background: set[asyncio.Task[None]] = set()

    async def submit(self, session_id: str, event: Event) -> TurnResult:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._waiting[session_id] = self._waiting.get(session_id, 0) + 1
        try:
            async with lock:
                self._disarm(session_id)
                task = asyncio.ensure_future(self.engine.process(session_id, event))
                self._inflight[session_id] = task
                try:
                    result = await task
                finally:
                    self._inflight.pop(session_id, None)
                self._arm(session_id, result)
                return result
        finally:
            self._release(session_id)

    def _release(self, session_id: str) -> None:
        remaining = self._waiting[session_id] - 1
        if remaining:
            self._waiting[session_id] = remaining
            return
        del self._waiting[session_id]
        self._locks.pop(session_id, None)

    async def send(self, session_id: str, text: str) -> TurnResult:
        return await self.submit(session_id, Event.input(text))

    def cancel(self, session_id: str) -> bool:
        """Abandon the session's in-flight turn; stored state stays at its last save."""
        self._disarm(session_id)
        task = self._inflight.get(session_id)
        if task is None or task.done():
            return False
        logger.info("Cancelling in-flight turn for session %s", session_id)
        task.cancel()
        return True

    def pending_timeout(self, session_id: str) -> bool:
        return session_id in self._timers

    def active_sessions(self) -> list[str]:
        """Sessions with a turn running or queued."""
        return sorted(self._locks)

    def _disarm(self, session_id: str) -> None:
        handle = self._timers.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def _arm(self, session_id: str, result: TurnResult) -> None:
        if result.terminated or result.timeout is None or result.state is None:
            return
        loop = asyncio.get_running_loop()
        state = result.state
        self._timers[session_id] = loop.call_later(
            result.timeout, self._spawn_timeout, session_id, state
        )

    def _spawn_timeout(self, session_id: str, state: str) -> None:
        self._timers.pop(session_id, None)
        task = asyncio.ensure_future(self._fire(session_id, state))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _fire(self, session_id: str, state: str) -> None:
        try:
            result = await self.submit(
                session_id, Event(TIMEOUT_EVENT, payload={"state": state})
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timeout turn failed for session=%s state=%s", session_id, state)
            return
        if self.on_timeout is not None:
            await self.on_timeout(result)

    async def close(self) -> None:
        for session_id in list(self._timers):
            self._disarm(session_id)
        for task in list(self._inflight.values()):
            task.cancel()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
