"""Prometheus metric provider."""
import math
from typing import Optional

import httpx
from loguru import logger

from src.rollout.core.errors import MetricQueryError, NoDataError, ProviderUnavailableError
from src.rollout.services.base import MetricProvider


class PrometheusProvider(MetricProvider):
    """Runs instant PromQL queries over the HTTP API."""

    def __init__(
        self,
        url: str = "http://prometheus:9090",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize provider.

        Args:
            url: Prometheus server URL
            timeout: Request timeout in seconds
            client: Pre-built HTTP client (tests)
        """
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def run_query(self, query: str) -> float:
        """Execute a PromQL query and return the first value.

        Raises:
            ProviderUnavailableError: If Prometheus cannot be reached
            MetricQueryError: If the query is rejected or the value is unusable
            NoDataError: If the result set is empty
        """
        url = f"{self.url}/api/v1/query"
        params = {"query": query}

        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                raise ProviderUnavailableError(
                    f"prometheus returned {e.response.status_code}"
                ) from e
            raise MetricQueryError(
                f"prometheus returned {e.response.status_code}: {e.response.text[:200]}", query
            ) from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"prometheus at {self.url} unreachable: {e}") from e

        data = response.json()

        if data.get("status") != "success":
            raise MetricQueryError(f"prometheus query failed: {data.get('error', data)}", query)

        result = data["data"]["result"]
        result_type = data["data"].get("resultType", "vector")

        if result_type == "scalar":
            value_str = result[1]
        else:
            if not result:
                raise NoDataError(f"no values found for query {query}", query)
            value_str = result[0]["value"][1]

        try:
            value = float(value_str)
        except (ValueError, TypeError):
            raise MetricQueryError(f"invalid metric value {value_str!r}", query) from None

        if math.isnan(value):
            raise NoDataError(f"query {query} returned NaN", query)

        logger.debug(f"Prometheus {query} = {value}")
        return value

    async def is_online(self) -> bool:
        """Run a trivial query to confirm the API answers.

        Raises:
            ProviderUnavailableError: If Prometheus cannot be reached or answers wrongly
        """
        try:
            value = await self.run_query("vector(1)")
        except MetricQueryError as e:
            raise ProviderUnavailableError(f"prometheus is not responding properly: {e}") from e
        if value != 1:
            raise ProviderUnavailableError(f"prometheus is not responding properly, vector(1) = {value}")
        return True

    async def close(self) -> None:
        await self.client.aclose()
