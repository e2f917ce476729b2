"""Metric check evaluation for canary analysis.

Runs every metric check of a rollout against its provider and compares the
observed value with the check's inclusive threshold range.

Example:
    >>> analyzer = MetricAnalyzer({"prometheus": PrometheusProvider(url)})
    >>> result = await analyzer.run(spec)
    >>> if not result.passed:
    >>>     print([check.message for check in result.failed])
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from loguru import logger

from src.rollout.core.errors import CollaboratorTimeout, ConfigurationError, MetricQueryError
from src.rollout.models.schemas import MetricCheck, RolloutSpec, ThresholdRange
from src.rollout.monitoring.metrics import CHECK_FAILURES, CHECK_VALUE
from src.rollout.services.base import MetricProvider


# Builtin queries used when a check omits its own query
BUILTIN_QUERIES = {
    "request-success-rate": (
        'sum(rate(http_requests_total{{namespace="{namespace}",service="{target}",status_code!~"5.."}}[{interval}])) '
        '/ sum(rate(http_requests_total{{namespace="{namespace}",service="{target}"}}[{interval}])) * 100'
    ),
    "request-duration": (
        'histogram_quantile(0.99, sum(rate(http_request_duration_seconds_bucket'
        '{{namespace="{namespace}",service="{target}"}}[{interval}])) by (le)) * 1000'
    ),
}


@dataclass
class CheckResult:
    """Outcome of a single metric check."""
    name: str
    passed: bool
    value: Optional[float] = None
    error: Optional[str] = None  # set when the query itself failed
    bounds: ThresholdRange = field(default_factory=ThresholdRange)

    @property
    def message(self) -> str:
        if self.error is not None:
            return f"metric query {self.name} failed: {self.error}"
        if self.passed:
            return f"metric {self.name} value {self.value:.2f} within range {_fmt_range(self.bounds)}"
        return f"metric {self.name} value {self.value:.2f} outside range {_fmt_range(self.bounds)}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "passed": self.passed,
            "value": self.value,
            "error": self.error,
            "min": self.bounds.min,
            "max": self.bounds.max,
        }


@dataclass
class AnalysisResult:
    """All check results of one tick, in declaration order."""
    results: List[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(result.passed for result in self.results)

    @property
    def failed(self) -> List[CheckResult]:
        return [result for result in self.results if not result.passed]


def _fmt_range(bounds: ThresholdRange) -> str:
    low = "-inf" if bounds.min is None else f"{bounds.min:g}"
    high = "+inf" if bounds.max is None else f"{bounds.max:g}"
    return f"[{low}, {high}]"


def within_range(value: float, bounds: ThresholdRange) -> bool:
    """Inclusive range test; a missing bound is unbounded on that side."""
    if bounds.min is not None and value < bounds.min:
        return False
    if bounds.max is not None and value > bounds.max:
        return False
    return True


def render_query(check: MetricCheck, spec: RolloutSpec) -> str:
    """Fill the check's query template with the rollout's variables.

    Raises:
        ConfigurationError: If the template is missing or malformed
    """
    template = check.query or BUILTIN_QUERIES.get(check.name)
    if template is None:
        raise ConfigurationError(f"metric {check.name!r} has no query and is not a builtin metric")

    try:
        return template.format(
            name=spec.name,
            namespace=spec.namespace,
            target=spec.target_name,
            interval=check.interval,
        )
    except (KeyError, IndexError, ValueError) as e:
        raise ConfigurationError(f"metric {check.name!r} has a malformed query template: {e}") from e


class MetricAnalyzer:
    """Evaluates a rollout's metric checks against their providers."""

    def __init__(self, providers: Mapping[str, MetricProvider], timeout: float = 10.0):
        """Initialize analyzer.

        Args:
            providers: Metric providers by name
            timeout: Per-query deadline in seconds
        """
        self.providers = dict(providers)
        self.timeout = timeout

    def provider_for(self, check: MetricCheck) -> MetricProvider:
        try:
            return self.providers[check.provider]
        except KeyError:
            raise ConfigurationError(
                f"metric {check.name!r} references unknown provider {check.provider!r}"
            ) from None

    def validate(self, spec: RolloutSpec) -> None:
        """Resolve every provider reference and query template up front."""
        for check in spec.analysis.metrics:
            self.provider_for(check)
            render_query(check, spec)

    async def run(self, spec: RolloutSpec) -> AnalysisResult:
        """Evaluate all checks in declaration order.

        Query failures fail only their own check. Timeouts and unreachable
        backends propagate and abort the tick.

        Returns:
            AnalysisResult with one CheckResult per check
        """
        result = AnalysisResult()
        for check in spec.analysis.metrics:
            result.results.append(await self.evaluate(check, spec))

        if result.failed:
            logger.warning(
                f"{len(result.failed)} of {len(result.results)} metric checks failed for {spec.key}"
            )
        return result

    async def evaluate(self, check: MetricCheck, spec: RolloutSpec) -> CheckResult:
        provider = self.provider_for(check)
        query = render_query(check, spec)
        bounds = check.bounds

        try:
            value = await asyncio.wait_for(provider.run_query(query), self.timeout)
        except asyncio.TimeoutError:
            raise CollaboratorTimeout(f"metric query {check.name}", self.timeout) from None
        except MetricQueryError as e:
            logger.warning(f"Metric {check.name} query failed for {spec.key}: {e}")
            CHECK_FAILURES.labels(name=spec.name, namespace=spec.namespace, metric=check.name).inc()
            return CheckResult(name=check.name, passed=False, error=str(e), bounds=bounds)

        CHECK_VALUE.labels(name=spec.name, namespace=spec.namespace, metric=check.name).set(value)
        passed = within_range(value, bounds)
        if passed:
            logger.debug(f"Metric {check.name} for {spec.key}: {value}")
        else:
            CHECK_FAILURES.labels(name=spec.name, namespace=spec.namespace, metric=check.name).inc()
            logger.warning(
                f"Metric {check.name} for {spec.key}: {value} outside {_fmt_range(bounds)}"
            )
        return CheckResult(name=check.name, passed=passed, value=value, bounds=bounds)
