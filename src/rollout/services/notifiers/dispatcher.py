"""Fire-and-forget fan-out of rollout events to alert providers."""
import asyncio
from typing import Mapping, Optional, Sequence, Set

import pybreaker
from loguru import logger

from src.rollout.core.errors import ConfigurationError
from src.rollout.models.schemas import AlertRef, Event, RolloutSpec
from src.rollout.monitoring.metrics import ALERTS_SENT
from src.rollout.services.base import Notifier


class AlertDispatcher:
    """Sends events to the providers named by a rollout's alerts.

    Delivery runs in background tasks; failures are logged and counted but
    never reach the caller.
    """

    def __init__(self, notifiers: Mapping[str, Notifier], timeout: float = 10.0):
        self.notifiers = dict(notifiers)
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()

    def validate(self, spec: RolloutSpec) -> None:
        for alert in spec.analysis.alerts:
            if alert.provider not in self.notifiers:
                raise ConfigurationError(
                    f"alert {alert.name!r} references unknown provider {alert.provider!r}"
                )

    def send(self, event: Event, alerts: Sequence[AlertRef]) -> None:
        """Schedule delivery of ``event`` to every alert whose severity admits it."""
        for alert in alerts:
            if event.severity.rank < alert.severity.rank:
                continue
            notifier = self.notifiers.get(alert.provider)
            if notifier is None:
                logger.error(f"Alert {alert.name} references unknown provider {alert.provider}")
                continue
            task = asyncio.create_task(self._deliver(alert, notifier, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _deliver(self, alert: AlertRef, notifier: Notifier, event: Event) -> None:
        try:
            await asyncio.wait_for(notifier.post(event), self.timeout)
        except pybreaker.CircuitBreakerError:
            ALERTS_SENT.labels(provider=alert.provider, outcome="skipped").inc()
            logger.warning(f"Alert {alert.name} skipped, circuit open for {alert.provider}")
        except Exception as e:
            ALERTS_SENT.labels(provider=alert.provider, outcome="failed").inc()
            logger.warning(f"Alert {alert.name} delivery via {alert.provider} failed: {e}")
        else:
            ALERTS_SENT.labels(provider=alert.provider, outcome="sent").inc()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries, e.g. at shutdown."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        done, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
