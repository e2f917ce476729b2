"""Canary phase transitions.

``decide`` is a pure function of the persisted status and the observations
gathered during one tick. It never talks to collaborators; the controller
reads the observations, asks for a decision, then applies it.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional

from src.rollout.deployment.analysis import AnalysisResult
from src.rollout.deployment.weights import AdvanceStrategy
from src.rollout.models.schemas import (
    Condition,
    FailurePolicy,
    Phase,
    RolloutSpec,
    RolloutStatus,
    Severity,
)
from src.rollout.models.traffic import Route

# Phases in which a changed canary restarts the analysis
RESET_PHASES = frozenset({
    Phase.PROGRESSING,
    Phase.WAITING_PROMOTION,
    Phase.PROMOTING,
    Phase.FINALISING,
})

# Phases that compare the canary against the last analysed revision
DRIFT_PHASES = RESET_PHASES | {Phase.INITIALIZED, Phase.SUCCEEDED, Phase.WAITING_OR_SKIPPED}


@dataclass
class Observation:
    """Point-in-time reads gathered by the controller for one tick."""
    route: Route = field(default_factory=Route.primary_only)
    drift: bool = False
    primary_ready: bool = False
    canary_ready: bool = True
    promoted: bool = False
    analysis: Optional[AnalysisResult] = None
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class Notice:
    """An alert to emit once the decision has been applied."""
    severity: Severity
    message: str
    check: Optional[str] = None


@dataclass
class Decision:
    """Next phase plus the external writes needed to get there."""
    phase: Phase
    route: Optional[Route] = None           # route to write, None keeps the current one
    canary_replicas: Optional[int] = None   # scale target for the canary
    promote: bool = False
    record_revision: bool = False
    failed_checks: int = 0
    iterations: int = 0
    fresh: bool = False                     # entering a phase or advancing resets the progress clock
    reason: str = ""
    notices: List[Notice] = field(default_factory=list)

    @property
    def has_writes(self) -> bool:
        return (
            self.route is not None
            or self.canary_replicas is not None
            or self.promote
            or self.record_revision
        )


def tracks_drift(phase: Phase) -> bool:
    return phase in DRIFT_PHASES


def needs_analysis(spec: RolloutSpec, status: RolloutStatus, obs: Observation,
                   strategy: AdvanceStrategy) -> bool:
    """Whether metric checks must run before deciding this tick."""
    if status.phase not in (Phase.PROGRESSING, Phase.WAITING_PROMOTION):
        return False
    if obs.drift or not obs.canary_ready or spec.skip_analysis:
        return False
    return strategy.has_traffic(obs.route, status)


def decide(spec: RolloutSpec, status: RolloutStatus, obs: Observation,
           strategy: AdvanceStrategy) -> Decision:
    """Compute the next phase and writes for one tick."""
    phase = status.phase
    hold = _hold(status)

    if phase is Phase.TERMINATED:
        return hold

    if phase is Phase.INITIALIZING:
        return _initializing(status, obs)

    if phase is Phase.FAILED:
        if spec.failure_policy is FailurePolicy.HALT:
            return hold
        return Decision(
            phase=Phase.INITIALIZED,
            route=None if obs.route.is_primary_only else Route.primary_only(),
            fresh=True,
            reason="Rollback finished, waiting for a new revision",
        )

    if obs.drift and phase in RESET_PHASES:
        return _start(spec, reason="New revision detected, restarting analysis",
                      severity=Severity.WARN)

    if phase in (Phase.INITIALIZED, Phase.SUCCEEDED):
        if not obs.drift:
            return hold
        if spec.analysis.confirm_rollout is False:
            return Decision(
                phase=Phase.WAITING_OR_SKIPPED,
                record_revision=True,
                canary_replicas=spec.canary_replicas,
                fresh=True,
                reason="New revision detected, waiting for rollout approval",
                notices=[Notice(Severity.INFO, "New revision detected, waiting for rollout approval")],
            )
        return _start(spec, reason="New revision detected, starting canary analysis",
                      severity=Severity.INFO)

    if phase is Phase.WAITING_OR_SKIPPED:
        if obs.drift:
            return replace(hold, record_revision=True, reason="New revision detected while waiting")
        if spec.analysis.confirm_rollout is False:
            return hold
        return _start(spec, reason="Rollout approved, starting canary analysis",
                      severity=Severity.INFO, record_revision=False)

    if phase in (Phase.PROGRESSING, Phase.WAITING_PROMOTION):
        return _analyse(spec, status, obs, strategy)

    if phase is Phase.PROMOTING:
        if not obs.promoted:
            return replace(hold, promote=True, reason="Copying canary into primary")
        if not obs.primary_ready:
            return hold
        return Decision(
            phase=Phase.FINALISING,
            route=Route.primary_only(),
            fresh=True,
            reason="Primary promoted, routing all traffic to primary",
        )

    if phase is Phase.FINALISING:
        return Decision(
            phase=Phase.SUCCEEDED,
            route=None if obs.route.is_primary_only else Route.primary_only(),
            canary_replicas=0,
            fresh=True,
            reason="Canary analysis completed successfully, promotion finished",
            notices=[Notice(Severity.INFO, "Canary analysis completed successfully, promotion finished")],
        )

    return hold


def _hold(status: RolloutStatus) -> Decision:
    return Decision(
        phase=status.phase,
        failed_checks=status.failed_checks,
        iterations=status.iterations,
    )


def _initializing(status: RolloutStatus, obs: Observation) -> Decision:
    if not obs.route.is_primary_only:
        return replace(_hold(status), route=Route.primary_only(), reason="Establishing initial routes")
    if not obs.primary_ready:
        return replace(_hold(status), reason="Waiting for primary to become ready")
    return Decision(
        phase=Phase.INITIALIZED,
        record_revision=True,
        canary_replicas=0,
        fresh=True,
        reason="Initialization done",
        notices=[Notice(Severity.INFO, "Initialization done")],
    )


def _start(spec: RolloutSpec, reason: str, severity: Severity,
           record_revision: bool = True) -> Decision:
    return Decision(
        phase=Phase.PROGRESSING,
        route=Route.primary_only(),
        canary_replicas=spec.canary_replicas,
        record_revision=record_revision,
        failed_checks=0,
        iterations=0,
        fresh=True,
        reason=reason,
        notices=[Notice(severity, reason)],
    )


def _rollback(reason: str, notices: List[Notice]) -> Decision:
    return Decision(
        phase=Phase.FAILED,
        route=Route.primary_only(),
        canary_replicas=0,
        failed_checks=0,
        iterations=0,
        fresh=True,
        reason=reason,
        notices=notices + [Notice(Severity.ERROR, reason)],
    )


def _analyse(spec: RolloutSpec, status: RolloutStatus, obs: Observation,
             strategy: AdvanceStrategy) -> Decision:
    hold = _hold(status)

    if not obs.canary_ready:
        started = status.last_transition_time or obs.now
        if (obs.now - started).total_seconds() > spec.progress_deadline_seconds:
            return _rollback(
                f"Canary not ready within {spec.progress_deadline_seconds}s, rolling back",
                [],
            )
        return replace(hold, reason="Waiting for canary to become ready")

    if spec.skip_analysis:
        return Decision(
            phase=Phase.PROMOTING,
            promote=True,
            fresh=True,
            reason="Analysis skipped, promoting canary",
            notices=[Notice(Severity.INFO, "Analysis skipped, promoting canary")],
        )

    if obs.analysis is not None and not obs.analysis.passed:
        failed_checks = status.failed_checks + 1
        notices = [Notice(Severity.WARN, f"Halt advancement: {check.message}", check.name)
                   for check in obs.analysis.failed]
        if failed_checks >= spec.analysis.threshold:
            names = ", ".join(check.name for check in obs.analysis.failed)
            return _rollback(
                f"Rolling back: failed checks threshold reached {failed_checks} ({names})",
                notices,
            )
        return replace(hold, failed_checks=failed_checks,
                       reason=f"Failed checks {failed_checks}/{spec.analysis.threshold}",
                       notices=notices)

    # Passed, or no traffic to analyse yet
    if status.phase is Phase.WAITING_PROMOTION:
        if spec.analysis.confirm_promotion is False:
            return replace(hold, failed_checks=0)
        return _promote("Promotion approved, promoting canary")

    step = strategy.advance(obs.route, status)
    if step.complete:
        if spec.analysis.confirm_promotion is False:
            return Decision(
                phase=Phase.WAITING_PROMOTION,
                fresh=True,
                iterations=step.iterations,
                reason="Analysis complete, waiting for promotion approval",
                notices=[Notice(Severity.INFO, "Analysis complete, waiting for promotion approval")],
            )
        return _promote("Analysis complete, promoting canary", iterations=step.iterations)

    return Decision(
        phase=Phase.PROGRESSING,
        route=step.route,
        iterations=step.iterations,
        failed_checks=0,
        fresh=True,
        reason=_advance_reason(step.route, step.iterations),
    )


def _promote(reason: str, iterations: int = 0) -> Decision:
    return Decision(
        phase=Phase.PROMOTING,
        promote=True,
        iterations=iterations,
        fresh=True,
        reason=reason,
        notices=[Notice(Severity.INFO, reason)],
    )


def _advance_reason(route: Optional[Route], iterations: int) -> str:
    if route is None:
        return f"Advance iteration {iterations}"
    if route.mirrored:
        return "Mirroring traffic to canary"
    return f"Advance weight {route.canary}"


def promoted_condition(phase: Phase, reason: str) -> Condition:
    """The ``Promoted`` condition reported alongside each phase."""
    if phase is Phase.SUCCEEDED:
        status = "True"
    elif phase is Phase.FAILED:
        status = "False"
    else:
        status = "Unknown"
    return Condition(type="Promoted", status=status, reason=phase.value, message=reason)
