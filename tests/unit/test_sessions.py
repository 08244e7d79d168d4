import asyncio
from typing import Any

import pytest

from agentrt.agents.loader import load
from agentrt.orchestrator import SessionManager, StateMachineEngine, TurnResult
from agentrt.providers.scripted import ScriptedReasoner
from agentrt.tools.registry import CapabilityRegistry

WAITING = """
version 1
agent waiting {
  templates {
    waited = "waited in {event.state}"
    noted = "noted"
  }
  states {
    initial state ask {
      transitions [gone]
      timeout 50ms
      on input { say noted }
      on timeout {
        say waited
        transition_to gone
      }
    }
    final state gone { }
  }
}
"""

WORKER = """
version 1
agent worker {
  resources { work = "svc.work" }
  states {
    initial state busy {
      on input { call work(item = input) }
    }
  }
}
"""


def _waiting_engine() -> StateMachineEngine:
    return StateMachineEngine(
        load(WAITING), reasoner=ScriptedReasoner(), registry=CapabilityRegistry()
    )


class _Tracker:
    def __init__(self, delay: float = 0.02) -> None:
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.items: list[Any] = []
        self.release = asyncio.Event()

    async def work(self, args: list[Any], kwargs: dict[str, Any]) -> None:
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.items.append(kwargs["item"])
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

    async def block(self, args: list[Any], kwargs: dict[str, Any]) -> None:
        await self.release.wait()


def _worker_engine(handler) -> StateMachineEngine:
    registry = CapabilityRegistry()
    registry.register("svc.work", handler)
    return StateMachineEngine(load(WORKER), reasoner=ScriptedReasoner(), registry=registry)


@pytest.mark.asyncio
async def test_timer_fires_timeout_turn() -> None:
    fired = asyncio.Event()
    results: list[TurnResult] = []

    async def on_timeout(result: TurnResult) -> None:
        results.append(result)
        fired.set()

    manager = SessionManager(_waiting_engine(), on_timeout=on_timeout)
    first = await manager.send("s1", "hello")
    assert first.timeout == pytest.approx(0.05)
    assert manager.pending_timeout("s1")

    await asyncio.wait_for(fired.wait(), timeout=2)

    assert results[0].outputs == ["waited in ask"]
    assert results[0].terminated is True
    assert manager.active_sessions() == []
    assert not manager.pending_timeout("s1")
    await manager.close()


def _recording_manager() -> tuple[SessionManager, list[TurnResult]]:
    results: list[TurnResult] = []

    async def on_timeout(result: TurnResult) -> None:
        results.append(result)

    return SessionManager(_waiting_engine(), on_timeout=on_timeout), results


@pytest.mark.asyncio
async def test_new_event_rearms_and_cancel_disarms() -> None:
    manager, fired = _recording_manager()
    await manager.send("s1", "hello")
    result = await manager.send("s1", "again")
    assert result.outputs == ["noted"]
    assert manager.pending_timeout("s1")

    assert manager.cancel("s1") is False
    assert not manager.pending_timeout("s1")
    await asyncio.sleep(0.1)
    assert fired == []
    await manager.close()


@pytest.mark.asyncio
async def test_close_disarms_timers() -> None:
    manager, fired = _recording_manager()
    await manager.send("a", "hello")
    await manager.send("b", "hello")
    await manager.close()
    assert not manager.pending_timeout("a")
    assert not manager.pending_timeout("b")
    await asyncio.sleep(0.1)
    assert fired == []


@pytest.mark.asyncio
async def test_events_for_one_session_run_in_order() -> None:
    tracker = _Tracker()
    manager = SessionManager(_worker_engine(tracker.work))
    results = await asyncio.gather(*(manager.send("s1", item) for item in ["a", "b", "c"]))
    assert tracker.items == ["a", "b", "c"]
    assert tracker.peak == 1
    assert [r.version for r in results] == [1, 2, 3]
    assert manager.active_sessions() == []


@pytest.mark.asyncio
async def test_different_sessions_run_concurrently() -> None:
    tracker = _Tracker()
    manager = SessionManager(_worker_engine(tracker.work))
    await asyncio.gather(*(manager.send(sid, sid) for sid in ["a", "b", "c"]))
    assert tracker.peak >= 2
    assert sorted(tracker.items) == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_cancel_abandons_in_flight_turn() -> None:
    tracker = _Tracker()
    engine = _worker_engine(tracker.block)
    manager = SessionManager(engine)
    pending = asyncio.ensure_future(manager.send("s1", "x"))
    await asyncio.sleep(0.01)

    assert manager.cancel("s1") is True
    with pytest.raises(asyncio.CancelledError):
        await pending
    assert engine.store.load("s1") is None


@pytest.mark.asyncio
async def test_finished_sessions_release_their_locks() -> None:
    manager = SessionManager(_worker_engine(_Tracker(delay=0).work))
    for index in range(50):
        await manager.send(f"s{index}", "x")
    assert manager.active_sessions() == []

    tracker = _Tracker()
    busy = SessionManager(_worker_engine(tracker.work))
    pending = asyncio.ensure_future(busy.send("s1", "a"))
    await asyncio.sleep(0)
    assert busy.active_sessions() == ["s1"]
    await pending
    assert busy.active_sessions() == []
