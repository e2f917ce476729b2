"""Unit tests for canary phase transitions."""
from datetime import datetime, timedelta, timezone

import pytest

from src.rollout.deployment.analysis import AnalysisResult, CheckResult
from src.rollout.deployment.state_machine import Observation, decide, needs_analysis
from src.rollout.deployment.weights import strategy_for
from src.rollout.models.schemas import (
    Analysis,
    FailurePolicy,
    Phase,
    RolloutSpec,
    RolloutStatus,
    Severity,
    ThresholdRange,
)
from src.rollout.models.traffic import Route

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _spec(**kwargs) -> RolloutSpec:
    analysis = kwargs.pop("analysis", {})
    return RolloutSpec(name="podinfo", analysis=Analysis(threshold=2, **analysis), **kwargs)


def _decide(spec, status, **obs):
    obs.setdefault("now", NOW)
    return decide(spec, status, Observation(**obs), strategy_for(spec))


def _failed(name="request-success-rate", value=90.0):
    return AnalysisResult([CheckResult(name=name, passed=False, value=value,
                                       bounds=ThresholdRange(min=99))])


def _passed():
    return AnalysisResult([CheckResult(name="request-success-rate", passed=True, value=100.0)])


class TestInitialization:
    def test_routes_reset_before_anything_else(self):
        decision = _decide(_spec(), RolloutStatus(), route=Route.with_canary(30), primary_ready=True)
        assert decision.phase is Phase.INITIALIZING
        assert decision.route == Route.primary_only()

    def test_waits_for_primary(self):
        decision = _decide(_spec(), RolloutStatus(), primary_ready=False)
        assert decision.phase is Phase.INITIALIZING
        assert decision.route is None
        assert not decision.record_revision

    def test_initialized_records_revision_and_scales_canary_down(self):
        decision = _decide(_spec(), RolloutStatus(), primary_ready=True)
        assert decision.phase is Phase.INITIALIZED
        assert decision.record_revision
        assert decision.canary_replicas == 0


class TestNewRevision:
    def test_no_drift_is_a_no_op(self):
        status = RolloutStatus(phase=Phase.SUCCEEDED)
        decision = _decide(_spec(), status)
        assert decision.phase is Phase.SUCCEEDED
        assert not decision.has_writes
        assert not decision.notices

    def test_drift_starts_progressing(self):
        spec = _spec(canary_replicas=2)
        decision = _decide(spec, RolloutStatus(phase=Phase.INITIALIZED), drift=True)

        assert decision.phase is Phase.PROGRESSING
        assert decision.route == Route.primary_only()
        assert decision.canary_replicas == 2
        assert decision.record_revision
        assert decision.fresh
        assert (decision.failed_checks, decision.iterations) == (0, 0)

    def test_closed_rollout_gate_waits(self):
        spec = _spec(analysis={"confirm_rollout": False})
        decision = _decide(spec, RolloutStatus(phase=Phase.SUCCEEDED), drift=True)
        assert decision.phase is Phase.WAITING_OR_SKIPPED
        assert decision.record_revision

    def test_opened_rollout_gate_starts(self):
        spec = _spec(analysis={"confirm_rollout": True})
        decision = _decide(spec, RolloutStatus(phase=Phase.WAITING_OR_SKIPPED))
        assert decision.phase is Phase.PROGRESSING
        assert not decision.record_revision

    @pytest.mark.parametrize("phase", [
        Phase.PROGRESSING, Phase.WAITING_PROMOTION, Phase.PROMOTING, Phase.FINALISING,
    ])
    def test_drift_mid_analysis_restarts(self, phase):
        status = RolloutStatus(phase=phase, canary_weight=30, failed_checks=1, iterations=2)
        decision = _decide(_spec(), status, drift=True, route=Route.with_canary(30))

        assert decision.phase is Phase.PROGRESSING
        assert decision.route == Route.primary_only()
        assert (decision.failed_checks, decision.iterations) == (0, 0)
        assert decision.notices[0].severity is Severity.WARN


class TestProgressing:
    def test_waits_for_canary_within_deadline(self):
        status = RolloutStatus(phase=Phase.PROGRESSING, last_transition_time=NOW - timedelta(seconds=30))
        decision = _decide(_spec(), status, canary_ready=False)
        assert decision.phase is Phase.PROGRESSING
        assert decision.route is None

    def test_rolls_back_after_deadline(self):
        status = RolloutStatus(phase=Phase.PROGRESSING, last_transition_time=NOW - timedelta(seconds=700))
        decision = _decide(_spec(), status, canary_ready=False)
        assert decision.phase is Phase.FAILED
        assert decision.route == Route.primary_only()
        assert decision.canary_replicas == 0

    def test_first_step_without_traffic_skips_checks(self):
        spec = _spec()
        status = RolloutStatus(phase=Phase.PROGRESSING)
        obs = Observation(route=Route.primary_only(), now=NOW)
        assert not needs_analysis(spec, status, obs, strategy_for(spec))

        decision = decide(spec, status, obs, strategy_for(spec))
        assert decision.route == Route.with_canary(10)

    def test_passing_checks_advance_and_reset_failures(self):
        status = RolloutStatus(phase=Phase.PROGRESSING, canary_weight=10, failed_checks=1)
        decision = _decide(_spec(), status, route=Route.with_canary(10), analysis=_passed())
        assert decision.route == Route.with_canary(20)
        assert decision.failed_checks == 0
        assert decision.fresh

    def test_failing_check_halts_advancement(self):
        status = RolloutStatus(phase=Phase.PROGRESSING, canary_weight=10)
        decision = _decide(_spec(), status, route=Route.with_canary(10), analysis=_failed())

        assert decision.phase is Phase.PROGRESSING
        assert decision.route is None
        assert decision.failed_checks == 1
        assert decision.notices[0].severity is Severity.WARN
        assert decision.notices[0].check == "request-success-rate"
        assert "Halt advancement" in decision.notices[0].message

    def test_threshold_reached_rolls_back(self):
        status = RolloutStatus(phase=Phase.PROGRESSING, canary_weight=10, failed_checks=1, iterations=0)
        decision = _decide(_spec(), status, route=Route.with_canary(10), analysis=_failed())

        assert decision.phase is Phase.FAILED
        assert decision.route == Route.primary_only()
        assert decision.canary_replicas == 0
        assert decision.failed_checks == 0
        assert decision.notices[-1].severity is Severity.ERROR

    def test_skip_analysis_promotes(self):
        spec = _spec(skip_analysis=True)
        decision = _decide(spec, RolloutStatus(phase=Phase.PROGRESSING), analysis=None)
        assert decision.phase is Phase.PROMOTING
        assert decision.promote

    def test_complete_promotes(self):
        status = RolloutStatus(phase=Phase.PROGRESSING, canary_weight=50)
        decision = _decide(_spec(), status, route=Route.with_canary(50), analysis=_passed())
        assert decision.phase is Phase.PROMOTING
        assert decision.promote
        assert decision.route is None

    def test_closed_promotion_gate_waits(self):
        spec = _spec(analysis={"confirm_promotion": False})
        status = RolloutStatus(phase=Phase.PROGRESSING, canary_weight=50)
        decision = _decide(spec, status, route=Route.with_canary(50), analysis=_passed())
        assert decision.phase is Phase.WAITING_PROMOTION
        assert not decision.promote

    def test_waiting_promotion_keeps_checking(self):
        spec = _spec(analysis={"confirm_promotion": False})
        status = RolloutStatus(phase=Phase.WAITING_PROMOTION, canary_weight=50)
        decision = _decide(spec, status, route=Route.with_canary(50), analysis=_failed())
        assert decision.phase is Phase.WAITING_PROMOTION
        assert decision.failed_checks == 1


class TestPromotion:
    def test_promote_again_until_primary_matches(self):
        decision = _decide(_spec(), RolloutStatus(phase=Phase.PROMOTING), promoted=False, primary_ready=True)
        assert decision.phase is Phase.PROMOTING
        assert decision.promote

    def test_waits_for_primary_rollout(self):
        decision = _decide(_spec(), RolloutStatus(phase=Phase.PROMOTING), promoted=True, primary_ready=False)
        assert decision.phase is Phase.PROMOTING
        assert not decision.promote

    def test_finalising_routes_all_traffic_to_primary(self):
        decision = _decide(_spec(), RolloutStatus(phase=Phase.PROMOTING),
                           promoted=True, primary_ready=True, route=Route.with_canary(50))
        assert decision.phase is Phase.FINALISING
        assert decision.route == Route.primary_only()

    def test_succeeded_scales_canary_down(self):
        decision = _decide(_spec(), RolloutStatus(phase=Phase.FINALISING))
        assert decision.phase is Phase.SUCCEEDED
        assert decision.canary_replicas == 0
        assert decision.route is None


class TestFailurePolicy:
    def test_retry_moves_to_initialized(self):
        decision = _decide(_spec(), RolloutStatus(phase=Phase.FAILED))
        assert decision.phase is Phase.INITIALIZED

    def test_halt_stays_failed(self):
        spec = _spec(failure_policy=FailurePolicy.HALT)
        decision = _decide(spec, RolloutStatus(phase=Phase.FAILED), drift=True)
        assert decision.phase is Phase.FAILED
        assert not decision.has_writes

    def test_terminated_is_inert(self):
        decision = _decide(_spec(), RolloutStatus(phase=Phase.TERMINATED), drift=True)
        assert decision.phase is Phase.TERMINATED
        assert not decision.has_writes
