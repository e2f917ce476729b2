"""Per-rollout reconciliation workers.

Every registered rollout gets its own asyncio task that ticks at the
rollout's analysis interval. Ticks of different rollouts run concurrently up
to a shared limit; ticks of the same rollout never overlap.
"""
import asyncio
from typing import Dict, List, Optional

from loguru import logger

from src.rollout.core.errors import CollaboratorError, ConfigurationError
from src.rollout.deployment.controller import Controller
from src.rollout.models.schemas import RolloutSpec, RolloutStatus
from src.rollout.monitoring.metrics import TICK_ERRORS


class TargetWorker:
    """Owns the tick loop of one rollout."""

    def __init__(self, spec: RolloutSpec, controller: Controller, pool: asyncio.Semaphore):
        self.spec = spec
        self.controller = controller
        self.pool = pool
        self.status: Optional[RolloutStatus] = None
        self.halted = False
        self.last_error: Optional[str] = None
        self._reapplied = False
        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def key(self) -> str:
        return self.spec.key

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if not self.running:
            self._stop.clear()
            self._task = asyncio.create_task(self._run(), name=f"rollout:{self.key}")

    def update(self, spec: RolloutSpec, reapplied: bool = True) -> None:
        """Swap in a new definition and tick as soon as possible.

        Only a re-applied definition releases a halted worker.
        """
        self.spec = spec
        if reapplied:
            self.halted = False
            self.last_error = None
        self._reapplied = self._reapplied or reapplied
        self.wake()

    def wake(self) -> None:
        self._wake.set()

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the loop, letting an in-flight tick finish within ``timeout``."""
        self._stop.set()
        self._wake.set()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Tick of {self.key} still running after {timeout}s, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while not self._stop.is_set():
            self._wake.clear()
            await self.tick_once()
            try:
                await asyncio.wait_for(self._wake.wait(), self.spec.analysis.interval_seconds)
            except asyncio.TimeoutError:
                pass

    async def tick_once(self) -> bool:
        """Run one tick unless one is already in flight or the worker is halted.

        Returns:
            True if a tick ran (successfully or not)
        """
        if self.halted or self._lock.locked():
            return False

        async with self._lock:
            async with self.pool:
                spec = self.spec
                reapplied = self._reapplied
                self._reapplied = False
                try:
                    self.status = await self.controller.tick(spec, reapplied=reapplied)
                    self.last_error = None
                except ConfigurationError as e:
                    self.halted = True
                    self.last_error = str(e)
                    TICK_ERRORS.labels(name=spec.name, namespace=spec.namespace,
                                       reason="configuration").inc()
                    logger.error(f"Rollout {spec.key} halted, invalid configuration: {e}")
                    await self.controller.mark_misconfigured(spec, e)
                except CollaboratorError as e:
                    self._reapplied = self._reapplied or reapplied
                    self.last_error = str(e)
                    TICK_ERRORS.labels(name=spec.name, namespace=spec.namespace,
                                       reason=type(e).__name__).inc()
                    logger.warning(f"Tick aborted for {spec.key}: {e}")
                except Exception as e:
                    self._reapplied = self._reapplied or reapplied
                    self.last_error = str(e)
                    TICK_ERRORS.labels(name=spec.name, namespace=spec.namespace,
                                       reason="unexpected").inc()
                    logger.exception(f"Unexpected error while reconciling {spec.key}: {e}")
        return True


class Scheduler:
    """Registry of rollout workers sharing one concurrency pool."""

    def __init__(self, controller: Controller, max_concurrency: int = 8):
        self.controller = controller
        self.pool = asyncio.Semaphore(max_concurrency)
        self._workers: Dict[str, TargetWorker] = {}
        self._lock = asyncio.Lock()
        self.started = False

    async def register(self, spec: RolloutSpec, reapplied: bool = True) -> TargetWorker:
        """Add a rollout or replace its definition, then trigger a tick.

        Args:
            spec: Rollout definition
            reapplied: Whether this counts as re-applying the definition, which
                releases a rollout halted in Failed
        """
        async with self._lock:
            worker = self._workers.get(spec.key)
            if worker is None:
                worker = TargetWorker(spec, self.controller, self.pool)
                self._workers[spec.key] = worker
                logger.info(f"Registered rollout {spec.key}")
                if self.started:
                    worker.start()
            else:
                worker.update(spec, reapplied=reapplied)
                logger.info(f"Updated rollout {spec.key}")
        return worker

    async def deregister(self, namespace: str, name: str) -> Optional[RolloutStatus]:
        """Stop ticking a rollout and hand all traffic back to the primary.

        Returns:
            The terminal status, or None if the rollout was not registered
        """
        key = f"{namespace}/{name}"
        async with self._lock:
            worker = self._workers.pop(key, None)
        if worker is None:
            return None

        await worker.stop()
        logger.info(f"Deregistered rollout {key}")
        return await self.controller.finalize(worker.spec)

    def get(self, namespace: str, name: str) -> Optional[TargetWorker]:
        return self._workers.get(f"{namespace}/{name}")

    def workers(self) -> List[TargetWorker]:
        return sorted(self._workers.values(), key=lambda w: w.key)

    async def start(self) -> None:
        async with self._lock:
            self.started = True
            for worker in self._workers.values():
                worker.start()
        logger.info(f"Scheduler started with {len(self._workers)} rollouts")

    async def shutdown(self, grace: float = 30.0) -> None:
        """Stop every worker; in-flight ticks get ``grace`` seconds to finish."""
        async with self._lock:
            self.started = False
            workers = list(self._workers.values())

        if workers:
            await asyncio.gather(*(worker.stop(grace) for worker in workers))
        await self.controller.dispatcher.drain(grace)
        logger.info("Scheduler stopped")
