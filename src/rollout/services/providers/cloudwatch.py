"""AWS CloudWatch metric provider.

Queries are JSON lists of ``MetricDataQuery`` objects as accepted by
``GetMetricData``; the first value of the first result is returned.
"""
import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError
from loguru import logger

from src.rollout.core.errors import (
    ConfigurationError,
    MetricQueryError,
    NoDataError,
    ProviderUnavailableError,
)
from src.rollout.models.schemas import parse_duration
from src.rollout.services.base import MetricProvider

MAX_RETRIES = 3
START_DELTA_MULTIPLIER = 10
MAX_DATAPOINTS = 20

THROTTLING_CODES = frozenset({"Throttling", "ThrottlingException", "RequestLimitExceeded"})


def region_from_address(address: str) -> str:
    """``monitoring.us-east-1.amazonaws.com`` -> ``us-east-1``."""
    region = address.split("://", 1)[-1]
    if region.startswith("monitoring."):
        region = region[len("monitoring."):]
    if region.endswith(".amazonaws.com"):
        region = region[: -len(".amazonaws.com")]
    return region


def is_transient(error: ClientError) -> bool:
    """Server side failures and throttling; the query itself may be fine."""
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0
    code = error.response.get("Error", {}).get("Code", "")
    return status >= 500 or code in THROTTLING_CODES


class CloudWatchProvider(MetricProvider):
    """Runs GetMetricData queries over a window of ten metric intervals."""

    def __init__(self, address: str, metric_interval: str = "1m", client: Optional[Any] = None):
        self.address = address
        self.region = region_from_address(address)
        self.start_delta = timedelta(seconds=START_DELTA_MULTIPLIER * parse_duration(metric_interval))
        if client is None:
            endpoint = address if "://" in address else f"https://{address}"
            client = boto3.client(
                "cloudwatch",
                region_name=self.region,
                endpoint_url=endpoint,
                config=Config(retries={"max_attempts": MAX_RETRIES, "mode": "standard"}),
            )
        self.client = client

    async def run_query(self, query: str) -> float:
        try:
            queries = json.loads(query)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"error unmarshaling cloudwatch query: {e}") from e

        end = datetime.now(timezone.utc)
        start = end - self.start_delta
        try:
            response = await asyncio.to_thread(
                self.client.get_metric_data,
                MetricDataQueries=queries,
                StartTime=start,
                EndTime=end,
                MaxDatapoints=MAX_DATAPOINTS,
            )
        except (BotoConnectionError, HTTPClientError) as e:
            raise ProviderUnavailableError(f"cloudwatch at {self.address} unreachable: {e}") from e
        except ClientError as e:
            if is_transient(e):
                raise ProviderUnavailableError(f"cloudwatch unavailable: {e}") from e
            raise MetricQueryError(f"error requesting cloudwatch: {e}", query) from e
        except BotoCoreError as e:
            raise MetricQueryError(f"error requesting cloudwatch: {e}", query) from e

        results = response.get("MetricDataResults") or []
        if not results or not results[0].get("Values"):
            raise NoDataError(f"no values found in response: {results}", query)

        value = float(results[0]["Values"][0])
        logger.debug(f"CloudWatch {results[0].get('Id', '?')} = {value}")
        return value

    async def is_online(self) -> bool:
        """Call GetMetricData with an empty query; a 400 answer means reachable.

        Any other failure (403 for missing ``cloudwatch:GetMetricData``
        permission, connection errors) is raised.
        """
        epoch = datetime.fromtimestamp(0, timezone.utc)
        try:
            await asyncio.to_thread(
                self.client.get_metric_data,
                MetricDataQueries=[],
                StartTime=epoch,
                EndTime=epoch,
            )
        except ClientError as e:
            status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if status != 400:
                raise ProviderUnavailableError(f"unexpected status code from cloudwatch: {status} {e}") from e
        except BotoCoreError as e:
            raise ProviderUnavailableError(f"cloudwatch at {self.address} unreachable: {e}") from e
        return True
