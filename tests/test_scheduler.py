"""Tests for the per-target retry/timeout controller and the scheduler."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from observatory.events.bus import BroadcastBus, ConnectedMessage, ObservationMessage
from observatory.health.models import (
    CheckOutcome,
    FilesystemSpace,
    HttpProbe,
    ProbeSpec,
    Status,
    TargetDescriptor,
)
from observatory.health.scheduler import (
    ControllerState,
    HealthScheduler,
    TargetController,
    Ticker,
)
from observatory.health.store import ObservationStore, StoreError

HEALTHY = CheckOutcome(Status.HEALTHY, "")
UNHEALTHY = CheckOutcome(Status.UNHEALTHY, "Status code: 500")
DEGRADED = CheckOutcome(Status.DEGRADED, "Disk space usage: 75%")
TIMEOUT = "timeout"


class FakeTicker:
    """Counts ticks without sleeping."""

    def __init__(self) -> None:
        self.ticks = 0

    async def tick(self) -> None:
        self.ticks += 1


class ScriptedProbe:
    """Returns the scripted outcomes in order, repeating the last one."""

    def __init__(self, *script: CheckOutcome | str) -> None:
        self.script = script
        self.calls: list[ProbeSpec] = []

    async def __call__(self, probe: ProbeSpec) -> CheckOutcome:
        self.calls.append(probe)
        item = self.script[min(len(self.calls), len(self.script)) - 1]
        if item == TIMEOUT:
            await asyncio.sleep(10)
        return item


def _target(retries: int = 2, timeout: float = 5, interval: float = 5) -> TargetDescriptor:
    return TargetDescriptor(
        id="web", name="Web", interval=interval, retries=retries, timeout=timeout,
        probe=HttpProbe(url="https://ok.example"),
    )


def _controller(target: TargetDescriptor, probe, store=None, bus=None, **kw) -> TargetController:
    return TargetController(
        target, store or MagicMock(), bus or BroadcastBus(), probe=probe, **kw,
    )


# ── run_cycle state machine ──────────────────────────────────────────────────


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_healthy_first_attempt(self) -> None:
        probe = ScriptedProbe(HEALTHY)
        ticker = FakeTicker()
        obs = await _controller(_target(retries=2), probe).run_cycle(ticker)

        assert obs.observed_status.status == Status.HEALTHY
        assert obs.observed_status.retries == 0
        assert len(probe.calls) == 1
        assert ticker.ticks == 0

    @pytest.mark.asyncio
    async def test_always_failing_consumes_all_retries(self) -> None:
        probe = ScriptedProbe(UNHEALTHY)
        ticker = FakeTicker()
        obs = await _controller(_target(retries=2), probe).run_cycle(ticker)

        assert obs.observed_status.status == Status.UNHEALTHY
        assert obs.observed_status.description == "Status code: 500"
        assert obs.observed_status.retries == 2
        assert len(probe.calls) == 3
        # Retries are gated on ticks, not immediate
        assert ticker.ticks == 2

    @pytest.mark.asyncio
    async def test_zero_retries_single_attempt(self) -> None:
        probe = ScriptedProbe(UNHEALTHY)
        ticker = FakeTicker()
        obs = await _controller(_target(retries=0), probe).run_cycle(ticker)

        assert obs.observed_status.retries == 0
        assert len(probe.calls) == 1
        assert ticker.ticks == 0

    @pytest.mark.asyncio
    async def test_first_healthy_attempt_ends_cycle(self) -> None:
        probe = ScriptedProbe(UNHEALTHY, HEALTHY, UNHEALTHY)
        ticker = FakeTicker()
        obs = await _controller(_target(retries=3), probe).run_cycle(ticker)

        assert obs.observed_status.status == Status.HEALTHY
        assert obs.observed_status.retries == 1
        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_degraded_is_retried_and_kept_when_exhausted(self) -> None:
        target = replace(_target(retries=1), probe=FilesystemSpace(path="/"))
        probe = ScriptedProbe(DEGRADED)
        obs = await _controller(target, probe).run_cycle(FakeTicker())

        assert obs.observed_status.status == Status.DEGRADED
        assert obs.observed_status.description == "Disk space usage: 75%"
        assert obs.observed_status.retries == 1
        assert len(probe.calls) == 2

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_to_timeout_outcome(self) -> None:
        probe = ScriptedProbe(TIMEOUT)
        ticker = FakeTicker()
        obs = await _controller(_target(retries=1, timeout=0.05), probe).run_cycle(ticker)

        assert obs.observed_status.status == Status.UNHEALTHY
        assert obs.observed_status.description == "Timeout"
        assert obs.observed_status.retries == 1
        assert len(probe.calls) == 2
        assert ticker.ticks == 1

    @pytest.mark.asyncio
    async def test_timeout_then_failure_reports_last_outcome(self) -> None:
        probe = ScriptedProbe(TIMEOUT, UNHEALTHY)
        obs = await _controller(_target(retries=1, timeout=0.05), probe).run_cycle(FakeTicker())

        assert obs.observed_status.description == "Status code: 500"
        assert obs.observed_status.retries == 1

    @pytest.mark.asyncio
    async def test_timeout_then_healthy(self) -> None:
        probe = ScriptedProbe(TIMEOUT, HEALTHY)
        obs = await _controller(_target(retries=2, timeout=0.05), probe).run_cycle(FakeTicker())

        assert obs.observed_status.status == Status.HEALTHY
        assert obs.observed_status.retries == 1

    @pytest.mark.asyncio
    async def test_snapshot_and_state(self) -> None:
        target = _target()
        controller = _controller(target, ScriptedProbe(HEALTHY))
        obs = await controller.run_cycle(FakeTicker())

        assert obs.target == target
        assert obs.observed_status.timestamp.tzinfo is not None
        assert controller.status.state == ControllerState.DONE
        assert controller.status.attempt == 1

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self) -> None:
        controller = _controller(_target(), ScriptedProbe(HEALTHY))
        frozen = datetime(2025, 1, 1, tzinfo=timezone.utc)
        with patch("observatory.health.scheduler.datetime") as mock_dt:
            mock_dt.now.return_value = frozen
            first = await controller.run_cycle(FakeTicker())
            second = await controller.run_cycle(FakeTicker())

        assert second.observed_status.timestamp > first.observed_status.timestamp


# ── run loop: persistence + publishing ───────────────────────────────────────


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


class TestControllerRun:
    @pytest.mark.asyncio
    async def test_appends_then_publishes_in_order(self, store: ObservationStore) -> None:
        target = _target(retries=0, interval=0.01)
        store.upsert_target(target)
        bus = BroadcastBus()
        sub = bus.subscribe()
        controller = _controller(target, ScriptedProbe(HEALTHY), store=store, bus=bus)

        task = asyncio.create_task(controller.run())
        await _wait_for(lambda: controller.status.cycles >= 3)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert isinstance(await sub.recv(), ConnectedMessage)
        published = []
        for _ in range(3):
            msg = await sub.recv()
            assert isinstance(msg, ObservationMessage)
            published.append(msg.observation.observed_status.timestamp)
        assert published == sorted(published)

        history = store.get_history("web")
        assert len(history) >= 3
        assert all(o.observed_status.retries == 0 for o in history)

    @pytest.mark.asyncio
    async def test_persist_failure_marks_controller_failed(self) -> None:
        store = MagicMock()
        store.append.side_effect = StoreError("disk I/O error")
        bus = BroadcastBus()
        sub = bus.subscribe()
        controller = _controller(
            _target(retries=0, interval=0.01), ScriptedProbe(HEALTHY),
            store=store, bus=bus, persist_attempts=2,
        )

        with patch("observatory.health.scheduler._PERSIST_BACKOFF", 0.0):
            await asyncio.wait_for(controller.run(), 2.0)

        assert controller.status.state == ControllerState.FAILED
        assert not controller.status.alive
        assert "disk I/O error" in controller.status.error
        assert store.append.call_count == 2
        # Nothing published for the lost observation
        await sub.recv()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(sub.recv(), 0.05)

    @pytest.mark.asyncio
    async def test_transient_persist_failure_is_retried(self) -> None:
        calls = []

        def flaky_append(observation) -> None:
            calls.append(observation)
            if len(calls) == 1:
                raise StoreError("database is locked")

        store = MagicMock()
        store.append.side_effect = flaky_append
        bus = BroadcastBus()
        sub = bus.subscribe()
        await sub.recv()
        controller = _controller(
            _target(retries=0, interval=0.01), ScriptedProbe(HEALTHY), store=store, bus=bus,
        )

        with patch("observatory.health.scheduler._PERSIST_BACKOFF", 0.0):
            task = asyncio.create_task(controller.run())
            msg = await asyncio.wait_for(sub.recv(), 2.0)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        assert isinstance(msg, ObservationMessage)
        assert controller.status.alive


# ── Ticker ───────────────────────────────────────────────────────────────────


class TestTicker:
    @pytest.mark.asyncio
    async def test_first_tick_immediate_then_periodic(self) -> None:
        loop = asyncio.get_running_loop()
        ticker = Ticker(0.05)
        start = loop.time()
        await ticker.tick()
        assert loop.time() - start < 0.04
        await ticker.tick()
        assert loop.time() - start >= 0.045

    @pytest.mark.asyncio
    async def test_missed_ticks_not_made_up(self) -> None:
        loop = asyncio.get_running_loop()
        ticker = Ticker(0.05)
        await ticker.tick()
        await asyncio.sleep(0.2)  # overrun several periods
        await ticker.tick()  # late tick fires immediately
        late = loop.time()
        await ticker.tick()
        assert loop.time() - late >= 0.045


# ── HealthScheduler ──────────────────────────────────────────────────────────


class TestHealthScheduler:
    @pytest.mark.asyncio
    async def test_one_controller_per_target(self, store: ObservationStore) -> None:
        targets = [
            replace(_target(retries=0, interval=0.01), id=f"t{i}", name=f"T{i}")
            for i in range(3)
        ]
        for t in targets:
            store.upsert_target(t)
        scheduler = HealthScheduler(targets, store, BroadcastBus(), probe=ScriptedProbe(HEALTHY))

        await scheduler.start()
        await _wait_for(lambda: all(c.status.cycles >= 1 for c in scheduler.controllers))
        await scheduler.stop()

        assert len(scheduler.controllers) == 3
        assert scheduler.failed == []
        status = {s["target_id"]: s for s in scheduler.status()}
        assert set(status) == {"t0", "t1", "t2"}
        assert all(s["alive"] and s["last_status"] == "Healthy" for s in status.values())
        for t in targets:
            assert store.get_latest(t.id) is not None

    @pytest.mark.asyncio
    async def test_no_targets_is_idle(self, store: ObservationStore) -> None:
        scheduler = HealthScheduler([], store, BroadcastBus())
        await scheduler.start()
        assert scheduler.status() == []
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_crashed_controller_is_reported(self, store: ObservationStore) -> None:
        async def broken_probe(probe: ProbeSpec) -> CheckOutcome:
            raise RuntimeError("probe exploded")

        target = _target(retries=0, interval=0.01)
        store.upsert_target(target)
        scheduler = HealthScheduler([target], store, BroadcastBus(), probe=broken_probe)

        await scheduler.start()
        await _wait_for(lambda: bool(scheduler.failed))
        await scheduler.stop()

        [failed] = scheduler.failed
        assert failed.target_id == "web"
        assert "probe exploded" in failed.error
