"""HTTP alert providers: Slack incoming webhooks and generic JSON webhooks."""
import asyncio
from typing import Any, Dict, Optional

import httpx
import pybreaker
from loguru import logger

from src.rollout.core.circuit_breaker import notifier_breaker
from src.rollout.models.schemas import Event, Severity
from src.rollout.services.base import Notifier

SLACK_COLORS = {
    Severity.INFO: "#0076D7",
    Severity.WARN: "#FFA500",
    Severity.ERROR: "#FF0000",
}


class WebhookNotifier(Notifier):
    """Posts each event as JSON to a URL, through a circuit breaker."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float = 10.0,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
    ):
        self.name = name
        self.url = url
        self.timeout = timeout
        self.breaker = breaker or notifier_breaker(name)

    def payload(self, event: Event) -> Dict[str, Any]:
        return event.model_dump(mode="json", by_alias=True)

    async def post(self, event: Event) -> None:
        """Deliver in a worker thread; the breaker needs a synchronous call."""
        await asyncio.to_thread(self.breaker.call, self._post_sync, self.payload(event))

    def _post_sync(self, payload: Dict[str, Any]) -> None:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(self.url, json=payload)
            response.raise_for_status()
        logger.debug(f"Alert delivered via {self.name}")


class SlackNotifier(WebhookNotifier):
    """Formats events as Slack attachments."""

    def __init__(
        self,
        name: str,
        url: str,
        channel: Optional[str] = None,
        username: str = "rollout-controller",
        timeout: float = 10.0,
        breaker: Optional[pybreaker.CircuitBreaker] = None,
    ):
        super().__init__(name, url, timeout=timeout, breaker=breaker)
        self.channel = channel
        self.username = username

    def payload(self, event: Event) -> Dict[str, Any]:
        fields = [{"title": "Phase", "value": event.phase.value, "short": True}]
        if event.check:
            fields.append({"title": "Check", "value": event.check, "short": True})

        payload: Dict[str, Any] = {
            "username": self.username,
            "icon_emoji": ":rocket:",
            "attachments": [
                {
                    "color": SLACK_COLORS[event.severity],
                    "author_name": f"{event.name}.{event.namespace}",
                    "text": event.message,
                    "mrkdwn_in": ["text"],
                    "fields": fields,
                    "ts": int(event.timestamp.timestamp()),
                }
            ],
        }
        if self.channel:
            payload["channel"] = self.channel
        return payload
