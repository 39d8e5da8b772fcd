"""Per-target check scheduling — one controller task per target.

Each controller turns probe attempts into exactly one observation per
cycle. A cycle starts on a tick; a failed or timed-out attempt consumes
one retry and waits for the next tick before trying again; the first
healthy attempt, or running out of retries, finalizes the cycle. The
finalized observation is appended to the store and then published on the
bus.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from observatory.events.bus import BroadcastBus, ObservationMessage

from .engine import execute_check
from .models import (
    CheckOutcome,
    Observation,
    ObservedStatus,
    ProbeSpec,
    Status,
    TargetDescriptor,
)
from .store import ObservationStore, StoreError, format_timestamp

logger = logging.getLogger(__name__)

Probe = Callable[[ProbeSpec], Awaitable[CheckOutcome]]

TIMEOUT_DESCRIPTION = "Timeout"

# Bounded retry of a failed append
DEFAULT_PERSIST_ATTEMPTS = 3
_PERSIST_BACKOFF = 1.0  # seconds, doubled per attempt


class Ticker:
    """Fixed-period timer. The first tick fires immediately.

    Missed ticks are not made up: if a tick is consumed a full period or more
    late, the next one is scheduled a period after the late one.
    """

    def __init__(self, period: float) -> None:
        self.period = period
        self._next: float | None = None

    async def tick(self) -> None:
        loop = asyncio.get_running_loop()
        if self._next is None:
            self._next = loop.time()
        scheduled = self._next
        delay = scheduled - loop.time()
        if delay > 0:
            await asyncio.sleep(delay)
        now = loop.time()
        if now - scheduled >= self.period:
            self._next = now + self.period
        else:
            self._next = scheduled + self.period


class ControllerState(str, Enum):
    WAITING = "waiting"
    ATTEMPTING = "attempting"
    DONE = "done"
    FAILED = "failed"


class ControllerStatus:
    """Liveness record of one controller, exposed to the health endpoint."""

    def __init__(self, target_id: str) -> None:
        self.target_id = target_id
        self.state = ControllerState.WAITING
        self.attempt: int = 0  # attempts already made in the current cycle
        self.cycles: int = 0
        self.last_observation_at: str | None = None
        self.last_status: str | None = None
        self.error: str | None = None

    @property
    def alive(self) -> bool:
        return self.state is not ControllerState.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "alive": self.alive,
            "state": self.state.value,
            "attempt": self.attempt,
            "cycles": self.cycles,
            "last_observation_at": self.last_observation_at,
            "last_status": self.last_status,
            "error": self.error,
        }


class TargetController:
    """Retry/timeout state machine for a single target."""

    def __init__(
        self,
        target: TargetDescriptor,
        store: ObservationStore,
        bus: BroadcastBus,
        probe: Probe = execute_check,
        persist_attempts: int = DEFAULT_PERSIST_ATTEMPTS,
    ) -> None:
        self.target = target
        self.store = store
        self.bus = bus
        self.probe = probe
        self.persist_attempts = max(1, persist_attempts)
        self.status = ControllerStatus(target.id)
        self._last_timestamp: datetime | None = None

    async def run(self) -> None:
        """Run cycles until cancelled or until persistence gives up."""
        ticker = Ticker(self.target.interval)
        try:
            while True:
                self.status.state = ControllerState.WAITING
                await ticker.tick()
                observation = await self.run_cycle(ticker)
                await self._persist(observation)
        except StoreError as e:
            self.status.state = ControllerState.FAILED
            self.status.error = str(e)
            logger.error("Controller for %s stopped: %s", self.target.id, e)
        except Exception as e:
            self.status.state = ControllerState.FAILED
            self.status.error = f"{type(e).__name__}: {e}"
            logger.exception("Controller for %s crashed", self.target.id)

    async def run_cycle(self, ticker: Ticker) -> Observation:
        """One cycle: attempts, tick-gated retries, then a finalized observation."""
        attempts_left = self.target.retries
        retries_used = 0
        self.status.attempt = 0

        while True:
            self.status.state = ControllerState.ATTEMPTING
            outcome = await self._attempt()
            self.status.attempt += 1

            if outcome is not None and outcome.status is Status.HEALTHY:
                break
            if attempts_left == 0:
                if outcome is None:
                    outcome = CheckOutcome(Status.UNHEALTHY, TIMEOUT_DESCRIPTION)
                break

            attempts_left -= 1
            retries_used += 1
            logger.debug(
                "Check %s attempt %d: %s, retrying on next tick",
                self.target.id, self.status.attempt,
                outcome.status.value if outcome else TIMEOUT_DESCRIPTION,
            )
            self.status.state = ControllerState.WAITING
            await ticker.tick()

        self.status.state = ControllerState.DONE
        return Observation(
            target=self.target,
            observed_status=ObservedStatus(
                timestamp=self._next_timestamp(),
                status=outcome.status,
                description=outcome.description,
                retries=retries_used,
            ),
        )

    async def _attempt(self) -> CheckOutcome | None:
        """One probe attempt under the target's deadline. None means timeout."""
        try:
            return await asyncio.wait_for(self.probe(self.target.probe), self.target.timeout)
        except asyncio.TimeoutError:
            return None

    def _next_timestamp(self) -> datetime:
        """Current UTC time, forced strictly after the previous observation's."""
        ts = datetime.now(timezone.utc)
        if self._last_timestamp is not None and ts <= self._last_timestamp:
            ts = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = ts
        return ts

    async def _persist(self, observation: Observation) -> None:
        """Append with bounded retry, then publish. Raises StoreError when exhausted."""
        delay = _PERSIST_BACKOFF
        for attempt in range(1, self.persist_attempts + 1):
            try:
                await asyncio.to_thread(self.store.append, observation)
                break
            except StoreError as e:
                if attempt == self.persist_attempts:
                    raise
                logger.warning(
                    "Append for %s failed (attempt %d/%d): %s",
                    self.target.id, attempt, self.persist_attempts, e,
                )
                await asyncio.sleep(min(delay, self.target.interval))
                delay *= 2

        observed = observation.observed_status
        self.status.cycles += 1
        self.status.last_observation_at = format_timestamp(observed.timestamp)
        self.status.last_status = observed.status.value
        logger.debug(
            "Check %s: %s (retries=%d) %s",
            self.target.id, observed.status.value, observed.retries, observed.description[:120],
        )
        self.bus.publish(ObservationMessage(observation))


class HealthScheduler:
    """Spawns one controller task per target and reports their liveness.

    Lifecycle:
        scheduler = HealthScheduler(targets, store, bus)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        targets: list[TargetDescriptor],
        store: ObservationStore,
        bus: BroadcastBus,
        probe: Probe = execute_check,
        persist_attempts: int = DEFAULT_PERSIST_ATTEMPTS,
    ) -> None:
        self.controllers = [
            TargetController(t, store, bus, probe=probe, persist_attempts=persist_attempts)
            for t in targets
        ]
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    async def start(self) -> None:
        """Start one task per controller."""
        if self._running:
            return
        self._running = True

        if not self.controllers:
            logger.info("No targets configured — scheduler idle")
            return

        for controller in self.controllers:
            task = asyncio.create_task(
                controller.run(), name=f"controller-{controller.target.id}",
            )
            self._tasks.append(task)

        logger.info("Health scheduler started: %d targets", len(self.controllers))

    async def stop(self) -> None:
        """Cancel every controller task."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Health scheduler stopped")

    @property
    def failed(self) -> list[ControllerStatus]:
        return [c.status for c in self.controllers if not c.status.alive]

    def status(self) -> list[dict[str, Any]]:
        return [c.status.to_dict() for c in self.controllers]
