"""Background workers: the dispatch loop and the review loop.

They run as separate asyncio tasks so a slow review never delays dispatch,
and both stop on a shared ``asyncio.Event``.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from .orchestrator import Orchestrator
from .recommendations import Recommendation, expire_stale
from .review import ReviewEngine
from .store import Store
from .types import utcnow

logger = logging.getLogger(__name__)


class Worker:
    """Periodic loop base class."""

    name = "worker"

    def __init__(self, interval: float, stop: asyncio.Event | None = None) -> None:
        self.interval = interval
        self.stop = stop or asyncio.Event()
        self.iterations = 0

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.stop.set)
            except (NotImplementedError, RuntimeError):
                # Not available off the main thread or on some platforms.
                return

    async def step(self) -> None:
        """Override in subclasses to do one unit of work."""
        raise NotImplementedError

    async def run_forever(self) -> None:
        logger.info("%s started (every %.1fs)", self.name, self.interval)
        while not self.stop.is_set():
            try:
                await self.step()
            except Exception as exc:
                logger.exception("%s iteration failed: %s", self.name, exc)
            self.iterations += 1
            try:
                await asyncio.wait_for(self.stop.wait(), timeout=self.interval)
            except TimeoutError:
                pass
        await self.shutdown()
        logger.info("%s stopped after %d iterations", self.name, self.iterations)

    async def shutdown(self) -> None:
        return None


class DispatchWorker(Worker):
    name = "dispatch"

    def __init__(self, orchestrator: Orchestrator, stop: asyncio.Event | None = None) -> None:
        super().__init__(orchestrator.tick_interval, stop)
        self.orchestrator = orchestrator

    async def step(self) -> None:
        dispatched = await self.orchestrator.tick()
        if dispatched:
            logger.debug("Dispatched %s", ", ".join(dispatched))

    async def shutdown(self) -> None:
        await self.orchestrator.drain()


class ReviewWorker(Worker):
    """Runs due team reviews, then expires stale recommendations."""

    name = "review"

    def __init__(
        self,
        engine: ReviewEngine,
        store: Store,
        interval: float,
        stop: asyncio.Event | None = None,
        recommendations: list[Recommendation] | None = None,
    ) -> None:
        super().__init__(interval, stop)
        self.engine = engine
        self.store = store
        self.recommendations = recommendations if recommendations is not None else []

    async def step(self) -> None:
        now = utcnow()
        reviews = await self.engine.run_due_reviews(now)
        if reviews:
            logger.info("Completed %d reviews", len(reviews))

        expired = expire_stale(self.recommendations, now)
        result = await self.store.expire_recommendations(now)
        if expired or (result.ok and result.data):
            logger.info("Expired %d recommendations", max(len(expired), result.data or 0))
