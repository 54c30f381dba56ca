"""
Fixed-concurrency virtual-user scheduler.

Each virtual user is one asyncio task looping select -> dispatch -> wait
until the run deadline passes or the scheduler is stopped. The deadline is
computed once when the run starts and every user reads the same value.
In-flight requests are never cancelled; a user only checks the deadline
before starting its next iteration.
"""

import asyncio
import logging
import random
import time
from enum import Enum
from typing import Callable, Optional

import aiohttp

from shadowload.routes import RouteCatalog, RouteWeights

logger = logging.getLogger(__name__)


class UserState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class VirtualUser:
    """One simulated client. Owns its random source, shares everything else."""

    def __init__(self, user_id: int, scheduler: "VirtualUserScheduler", rng: random.Random):
        self.user_id = user_id
        self.scheduler = scheduler
        self.rng = rng
        self.state = UserState.IDLE
        self.iterations = 0
        self.last_iteration_started: float = 0.0

    async def run(self, start_delay: float = 0.0):
        s = self.scheduler
        self.state = UserState.RUNNING
        try:
            if start_delay > 0:
                await s.idle(start_delay)
            while s.should_continue():
                self.last_iteration_started = time.monotonic()
                await self.iterate()
                self.iterations += 1
                if s.think_time > 0 and s.should_continue():
                    await s.idle(s.think_time)
        finally:
            self.state = UserState.STOPPED

    async def iterate(self):
        s = self.scheduler
        route = s.weights.choose(self.rng)
        params = s.catalog.generate_params(route, self.rng)
        try:
            await s.executors[route].execute(s.session, s.base_url, params)
        except asyncio.CancelledError:
            raise
        except Exception:
            # Executors contain request failures; anything here is a bug
            logger.exception("Virtual user %d: unexpected error on %s", self.user_id, route.value)


class VirtualUserScheduler:
    """
    Runs ``virtual_users`` concurrent users for ``duration`` seconds.

    ``stop()`` makes every user finish its current iteration and exit;
    think-time sleeps are cut short. ``run()`` returns once all users are
    STOPPED.
    """

    def __init__(self, *, session: aiohttp.ClientSession, base_url: str,
                 executors: dict, catalog: RouteCatalog, weights: RouteWeights,
                 virtual_users: int, duration: float, think_time: float = 0.0,
                 ramp_up: float = 0.0, seed: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        if virtual_users <= 0:
            raise ValueError(f"virtual_users must be > 0, got {virtual_users}")
        if duration < 0 or think_time < 0 or ramp_up < 0:
            raise ValueError("duration, think_time and ramp_up must be >= 0")
        missing = set(weights.routes) - set(executors)
        if missing:
            raise ValueError(f"No executor for routes: {sorted(r.value for r in missing)}")

        self.session = session
        self.base_url = base_url
        self.executors = executors
        self.catalog = catalog
        self.weights = weights
        self.duration = duration
        self.think_time = think_time
        self.ramp_up = ramp_up
        self.clock = clock

        seeder = random.Random(seed)
        self.users = [
            VirtualUser(i, self, random.Random(seeder.getrandbits(64)))
            for i in range(virtual_users)
        ]

        self.deadline: Optional[float] = None
        self.stopped_at: Optional[float] = None
        self.stop_reason: Optional[str] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def stop_event(self) -> asyncio.Event:
        # Created lazily so it binds to the loop that runs the scheduler
        if self._stop_event is None:
            self._stop_event = asyncio.Event()
        return self._stop_event

    @property
    def iterations(self) -> int:
        return sum(u.iterations for u in self.users)

    @property
    def running(self) -> int:
        return sum(1 for u in self.users if u.state is UserState.RUNNING)

    def states(self) -> list:
        return [u.state for u in self.users]

    def should_continue(self) -> bool:
        if self.stop_event.is_set():
            return False
        return self.deadline is not None and self.clock() < self.deadline

    def remaining(self) -> float:
        if self.deadline is None:
            return self.duration
        return max(0.0, self.deadline - self.clock())

    async def idle(self, seconds: float):
        """Sleep up to ``seconds``, waking early on stop or at the deadline."""
        timeout = min(seconds, self.remaining())
        if timeout <= 0:
            return
        try:
            await asyncio.wait_for(self.stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    def stop(self, reason: str = "stopped"):
        if self.stop_event.is_set():
            return
        self.stopped_at = self.clock()
        self.stop_reason = reason
        logger.info("Stopping virtual users: %s", reason)
        self.stop_event.set()

    async def run(self):
        count = len(self.users)
        self.deadline = self.clock() + self.duration
        step = self.ramp_up / count if self.ramp_up > 0 else 0.0
        logger.info("Starting %d virtual users for %.1fs (think time %.3fs, ramp-up %.1fs)",
                    count, self.duration, self.think_time, self.ramp_up)

        tasks = [
            asyncio.create_task(user.run(start_delay=i * step), name=f"vu-{user.user_id}")
            for i, user in enumerate(self.users)
        ]
        timer = asyncio.create_task(self._deadline_timer())
        try:
            await asyncio.gather(*tasks)
        finally:
            timer.cancel()
            for task in tasks:
                if not task.done():
                    task.cancel()

        if self.stop_reason is None:
            self.stop_reason = "duration elapsed"
        logger.info("All %d virtual users stopped after %d iterations (%s)",
                    count, self.iterations, self.stop_reason)

    async def _deadline_timer(self):
        # Wakes any user parked in think time the moment the deadline passes
        await self.idle(self.remaining())
        if not self.stop_event.is_set():
            self.stop_event.set()
