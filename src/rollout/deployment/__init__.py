"""Canary reconciliation: weight stepping, analysis, phases and scheduling."""

from .weights import (
    Advance,
    AdvanceStrategy,
    WeightedStrategy,
    IterationStrategy,
    strategy_for,
)

from .analysis import (
    BUILTIN_QUERIES,
    AnalysisResult,
    CheckResult,
    MetricAnalyzer,
    render_query,
)

from .state_machine import (
    Decision,
    Notice,
    Observation,
    decide,
)

from .controller import Controller
from .scheduler import Scheduler, TargetWorker

__all__ = [
    # Weight stepping
    "Advance",
    "AdvanceStrategy",
    "WeightedStrategy",
    "IterationStrategy",
    "strategy_for",
    # Metric analysis
    "BUILTIN_QUERIES",
    "AnalysisResult",
    "CheckResult",
    "MetricAnalyzer",
    "render_query",
    # State machine
    "Decision",
    "Notice",
    "Observation",
    "decide",
    # Scheduling
    "Controller",
    "Scheduler",
    "TargetWorker",
]
