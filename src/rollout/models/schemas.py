"""Rollout definitions and persisted rollout status."""
import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str) -> float:
    """Parse a duration string such as ``30s``, ``1m`` or ``1h30m`` into seconds."""
    text = value.strip()
    if not text:
        raise ValueError("empty duration")

    total = 0.0
    pos = 0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos != len(text) or total <= 0:
        raise ValueError(f"invalid duration: {value!r}")
    return total


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Phase(str, Enum):
    INITIALIZING = "Initializing"
    INITIALIZED = "Initialized"
    WAITING_OR_SKIPPED = "WaitingOrSkipped"
    PROGRESSING = "Progressing"
    WAITING_PROMOTION = "WaitingPromotion"
    PROMOTING = "Promoting"
    FINALISING = "Finalising"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TERMINATED = "Terminated"

    @property
    def is_terminal(self) -> bool:
        return self in (Phase.SUCCEEDED, Phase.FAILED, Phase.TERMINATED)


class WorkloadKind(str, Enum):
    DEPLOYMENT = "Deployment"
    DAEMONSET = "DaemonSet"


class FailurePolicy(str, Enum):
    RETRY = "retry"  # Failed -> Initialized, wait for the next revision
    HALT = "halt"    # Failed is terminal until the definition is re-applied


class Severity(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return {"info": 0, "warn": 1, "error": 2}[self.value]


class StrategyKind(str, Enum):
    WEIGHTED = "weighted"
    ITERATION = "iteration"


class ThresholdRange(_Model):
    min: Optional[float] = None
    max: Optional[float] = None

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError(f"threshold range min {self.min} is greater than max {self.max}")
        return self


class MetricCheck(_Model):
    name: str
    provider: str = "prometheus"
    query: Optional[str] = None
    interval: str = "1m"
    threshold_range: Optional[ThresholdRange] = None
    threshold: Optional[float] = None  # upper bound, inclusive

    @field_validator("interval")
    @classmethod
    def _check_interval(cls, value: str) -> str:
        parse_duration(value)
        return value

    @model_validator(mode="after")
    def _check_threshold(self):
        if self.threshold_range is None and self.threshold is None:
            raise ValueError(f"metric {self.name!r} needs a threshold range or a threshold")
        if self.threshold_range is not None and self.threshold is not None:
            raise ValueError(f"metric {self.name!r} sets both threshold range and threshold")
        return self

    @property
    def bounds(self) -> ThresholdRange:
        if self.threshold_range is not None:
            return self.threshold_range
        return ThresholdRange(max=self.threshold)


class HeaderMatch(_Model):
    """A request-matching rule for iteration based (A/B) analysis."""
    header: Optional[str] = None
    cookie: Optional[str] = None
    exact: Optional[str] = None
    regex: Optional[str] = None

    @model_validator(mode="after")
    def _check_rule(self):
        if not (self.header or self.cookie):
            raise ValueError("match rule needs a header or a cookie")
        return self


class AlertRef(_Model):
    name: str
    provider: str
    severity: Severity = Severity.INFO


class Analysis(_Model):
    interval: str = "1m"
    threshold: int = Field(default=5, ge=1)
    step_weight: int = Field(default=10, gt=0, le=100)
    max_weight: int = Field(default=50, gt=0, le=100)
    step_weights: List[int] = Field(default_factory=list)
    iterations: int = Field(default=0, ge=0)
    match: List[HeaderMatch] = Field(default_factory=list)
    mirror: bool = False
    metrics: List[MetricCheck] = Field(default_factory=list)
    alerts: List[AlertRef] = Field(default_factory=list)
    confirm_rollout: Optional[bool] = None
    confirm_promotion: Optional[bool] = None

    @field_validator("interval")
    @classmethod
    def _check_interval(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("step_weights")
    @classmethod
    def _check_step_weights(cls, value: List[int]) -> List[int]:
        previous = 0
        for weight in value:
            if weight <= previous or weight > 100:
                raise ValueError("step weights must be strictly increasing within (0, 100]")
            previous = weight
        return value

    @model_validator(mode="after")
    def _check_strategy(self):
        if self.match and self.iterations == 0:
            raise ValueError("match rules require iterations > 0")
        if self.mirror and self.strategy is not StrategyKind.WEIGHTED:
            raise ValueError("mirroring is only supported by the weighted strategy")
        return self

    @property
    def strategy(self) -> StrategyKind:
        if self.iterations > 0:
            return StrategyKind.ITERATION
        return StrategyKind.WEIGHTED

    @property
    def interval_seconds(self) -> float:
        return parse_duration(self.interval)


class ServiceRef(_Model):
    port: int = Field(default=80, gt=0, lt=65536)
    ingress: Optional[str] = None


class RolloutSpec(_Model):
    """A workload under progressive delivery."""
    name: str
    namespace: str = "default"
    kind: WorkloadKind = WorkloadKind.DEPLOYMENT
    target_ref: Optional[str] = None
    router: str = "nginx"
    service: ServiceRef = Field(default_factory=ServiceRef)
    skip_analysis: bool = False
    progress_deadline_seconds: int = Field(default=600, gt=0)
    canary_replicas: int = Field(default=1, ge=1)
    failure_policy: FailurePolicy = FailurePolicy.RETRY
    analysis: Analysis = Field(default_factory=Analysis)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def target_name(self) -> str:
        return self.target_ref or self.name

    @property
    def primary_name(self) -> str:
        return f"{self.target_name}-primary"

    @property
    def ingress_name(self) -> str:
        return self.service.ingress or self.name


class Condition(_Model):
    type: str
    status: str  # "True", "False" or "Unknown"
    reason: str
    message: str = ""
    last_update_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RolloutStatus(_Model):
    phase: Phase = Phase.INITIALIZING
    canary_weight: int = 0
    failed_checks: int = 0
    iterations: int = 0
    last_transition_time: Optional[datetime] = None
    last_applied_spec: str = ""
    last_applied_config_hash: str = ""
    conditions: List[Condition] = Field(default_factory=list)

    def condition(self, type_: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == type_:
                return condition
        return None

    def with_condition(self, condition: Condition) -> "RolloutStatus":
        """Return a copy with ``condition`` replacing any condition of the same type."""
        current = self.condition(condition.type)
        if (
            current is not None
            and current.status == condition.status
            and current.reason == condition.reason
            and current.message == condition.message
        ):
            return self
        others = [c for c in self.conditions if c.type != condition.type]
        return self.model_copy(update={"conditions": others + [condition]})

    def without_condition(self, type_: str) -> "RolloutStatus":
        if self.condition(type_) is None:
            return self
        return self.model_copy(update={"conditions": [c for c in self.conditions if c.type != type_]})

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Event(_Model):
    """An alert-worthy occurrence for one rollout."""
    rollout: str
    name: str
    namespace: str
    phase: Phase
    severity: Severity
    message: str
    check: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class RolloutView(_Model):
    """API representation of a registered rollout."""
    spec: RolloutSpec
    status: Optional[RolloutStatus] = None
    halted: bool = False
    last_error: Optional[str] = None


class GateAction(str, Enum):
    OPEN = "open"
    CLOSE = "close"
