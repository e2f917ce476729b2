"""One reconciliation tick for one rollout.

Each tick reads the persisted status and fresh external state, asks the
state machine for a decision and applies it. The status is persisted last,
so a tick interrupted at any point is replayed from the last good status on
the next one.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Mapping, Optional, TypeVar

from loguru import logger

from src.rollout.core.errors import CollaboratorTimeout, ConfigurationError, ProviderUnavailableError
from src.rollout.core.logging import rollout_key
from src.rollout.deployment.analysis import MetricAnalyzer
from src.rollout.deployment.state_machine import (
    Decision,
    Observation,
    decide,
    needs_analysis,
    promoted_condition,
    tracks_drift,
)
from src.rollout.deployment.weights import AdvanceStrategy, strategy_for
from src.rollout.models.schemas import (
    Condition,
    Event,
    FailurePolicy,
    Phase,
    RolloutSpec,
    RolloutStatus,
    Severity,
    WorkloadKind,
)
from src.rollout.models.traffic import Route
from src.rollout.monitoring.metrics import ROLLOUT_STATUS, ROLLOUT_WEIGHT, TICK_DURATION
from src.rollout.monitoring.tracing import record_exception, set_span_attributes, tracer
from src.rollout.services.base import Deployer, Revision, TrafficRouter
from src.rollout.services.notifiers.dispatcher import AlertDispatcher

T = TypeVar("T")

CONFIG_CONDITION = "ConfigurationError"

_STATUS_GAUGE = {
    Phase.SUCCEEDED: 1,
    Phase.FAILED: 2,
    Phase.INITIALIZING: 3,
    Phase.INITIALIZED: 3,
    Phase.WAITING_OR_SKIPPED: 3,
    Phase.TERMINATED: 3,
}


class Controller:
    """Runs ticks against the collaborators resolved for each rollout."""

    def __init__(
        self,
        deployers: Mapping[WorkloadKind, Deployer],
        routers: Mapping[str, TrafficRouter],
        analyzer: MetricAnalyzer,
        dispatcher: AlertDispatcher,
        timeout: float = 10.0,
    ):
        self.deployers = dict(deployers)
        self.routers = dict(routers)
        self.analyzer = analyzer
        self.dispatcher = dispatcher
        self.timeout = timeout

    def deployer_for(self, spec: RolloutSpec) -> Deployer:
        try:
            return self.deployers[spec.kind]
        except KeyError:
            raise ConfigurationError(f"no deployer for workload kind {spec.kind.value}") from None

    def router_for(self, spec: RolloutSpec) -> TrafficRouter:
        try:
            return self.routers[spec.router]
        except KeyError:
            raise ConfigurationError(f"unknown router provider {spec.router!r}") from None

    def validate(self, spec: RolloutSpec) -> None:
        """Resolve every collaborator reference of a rollout.

        Raises:
            ConfigurationError: If any reference cannot be resolved
        """
        self.deployer_for(spec)
        self.router_for(spec)
        self.analyzer.validate(spec)
        self.dispatcher.validate(spec)

    async def _call(self, operation: str, aw: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(aw, self.timeout)
        except asyncio.TimeoutError:
            raise CollaboratorTimeout(operation, self.timeout) from None

    async def tick(self, spec: RolloutSpec, reapplied: bool = False) -> RolloutStatus:
        """Advance one rollout by one tick.

        Args:
            spec: Rollout definition
            reapplied: The definition was applied again since the last tick

        Returns:
            The status after the tick (persisted if it changed)

        Raises:
            CollaboratorError: Tick aborted, nothing persisted
            ConfigurationError: The rollout cannot be reconciled as defined
        """
        token = rollout_key.set(spec.key)
        start = time.perf_counter()
        with tracer.start_as_current_span("rollout.tick") as span:
            try:
                set_span_attributes(span, rollout=spec.key, kind=spec.kind.value)
                self.validate(spec)
                deployer = self.deployer_for(spec)
                router = self.router_for(spec)
                strategy = strategy_for(spec)

                persisted = await self._call("get status", deployer.get_status(spec))
                status = self._resume(spec, persisted, reapplied)
                set_span_attributes(span, phase=status.phase.value)

                if status.phase is Phase.INITIALIZING:
                    await self._prepare(spec, deployer, router)

                obs = await self._observe(spec, status, deployer, router, strategy)
                decision = decide(spec, status, obs, strategy)
                return await self._apply(spec, persisted, status, obs, decision, deployer, router)
            except Exception as e:
                record_exception(span, e)
                raise
            finally:
                TICK_DURATION.labels(name=spec.name, namespace=spec.namespace).observe(
                    time.perf_counter() - start
                )
                rollout_key.reset(token)

    @staticmethod
    def _resume(spec: RolloutSpec, status: RolloutStatus, reapplied: bool) -> RolloutStatus:
        """Status to reconcile from when a definition comes back or is re-applied."""
        if status.phase is Phase.TERMINATED:
            return RolloutStatus()
        if reapplied and status.phase is Phase.FAILED and spec.failure_policy is FailurePolicy.HALT:
            return status.model_copy(update={"phase": Phase.INITIALIZED})
        return status

    async def _prepare(self, spec: RolloutSpec, deployer: Deployer, router: TrafficRouter) -> None:
        """Idempotent setup performed while the rollout is initializing."""
        await self._call("initialize workload", deployer.initialize(spec))
        await self._call("reconcile routes", router.reconcile(spec))

        for name in sorted({check.provider for check in spec.analysis.metrics}):
            provider = self.analyzer.providers[name]
            if not await self._call(f"{name} availability", provider.is_online()):
                raise ProviderUnavailableError(f"metric provider {name} is offline")

    async def _observe(
        self,
        spec: RolloutSpec,
        status: RolloutStatus,
        deployer: Deployer,
        router: TrafficRouter,
        strategy: AdvanceStrategy,
    ) -> Observation:
        phase = status.phase
        obs = Observation(now=datetime.now(timezone.utc))
        obs.route = await self._call("get routes", router.get_routes(spec))

        if tracks_drift(phase):
            obs.drift = await self._call("drift check", deployer.has_target_changed(spec, status))

        if phase in (Phase.INITIALIZING, Phase.PROMOTING):
            obs.primary_ready = await self._call("primary readiness", deployer.is_primary_ready(spec))

        if phase is Phase.PROMOTING and not obs.drift:
            obs.promoted = await self._call("promotion check", deployer.is_promoted(spec))

        if phase in (Phase.PROGRESSING, Phase.WAITING_PROMOTION) and not obs.drift:
            obs.canary_ready = await self._call("canary readiness", deployer.is_canary_ready(spec))

        if needs_analysis(spec, status, obs, strategy):
            obs.analysis = await self.analyzer.run(spec)

        return obs

    async def _apply(
        self,
        spec: RolloutSpec,
        persisted: RolloutStatus,
        status: RolloutStatus,
        obs: Observation,
        decision: Decision,
        deployer: Deployer,
        router: TrafficRouter,
    ) -> RolloutStatus:
        revision: Optional[Revision] = None
        if decision.record_revision:
            revision = await self._call("get revision", deployer.get_revision(spec))

        route_write = decision.route if decision.route is not None and decision.route != obs.route else None

        if decision.canary_replicas == 0:
            # Move traffic away before removing canary pods
            if route_write is not None:
                await self._call("set routes", router.set_routes(spec, route_write))
            await self._call("scale canary", deployer.scale_canary(spec, 0))
        else:
            if decision.canary_replicas is not None:
                await self._call("scale canary", deployer.scale_canary(spec, decision.canary_replicas))
            if decision.promote:
                await self._call("promote", deployer.promote(spec))
            if route_write is not None:
                await self._call("set routes", router.set_routes(spec, route_write))

        route = decision.route if decision.route is not None else obs.route
        new_status = self.next_status(status, decision, route, revision, obs.now)
        if new_status != persisted:
            await self._call("sync status", deployer.sync_status(spec, new_status))

        self._record(spec, new_status, route)
        if new_status.phase is not status.phase:
            logger.info(
                f"{spec.key} {status.phase.value} → {new_status.phase.value}: {decision.reason}"
            )
        elif route_write is not None:
            logger.info(f"{spec.key} routes {obs.route} → {route_write}")

        for notice in decision.notices:
            self.dispatcher.send(
                Event(
                    rollout=spec.key,
                    name=spec.name,
                    namespace=spec.namespace,
                    phase=new_status.phase,
                    severity=notice.severity,
                    message=notice.message,
                    check=notice.check,
                ),
                spec.analysis.alerts,
            )
        return new_status

    @staticmethod
    def next_status(
        status: RolloutStatus,
        decision: Decision,
        route: Route,
        revision: Optional[Revision],
        now: datetime,
    ) -> RolloutStatus:
        update = {
            "phase": decision.phase,
            "canary_weight": route.canary,
            "failed_checks": decision.failed_checks,
            "iterations": decision.iterations,
        }
        changed_phase = decision.phase is not status.phase
        if decision.fresh or changed_phase:
            update["last_transition_time"] = now
        if revision is not None:
            update["last_applied_spec"] = revision.spec_hash
            update["last_applied_config_hash"] = revision.config_hash

        new_status = status.model_copy(update=update).without_condition(CONFIG_CONDITION)
        if decision.fresh or changed_phase:
            new_status = new_status.with_condition(promoted_condition(decision.phase, decision.reason))
        return new_status

    def _record(self, spec: RolloutSpec, status: RolloutStatus, route: Route) -> None:
        ROLLOUT_STATUS.labels(name=spec.name, namespace=spec.namespace).set(
            _STATUS_GAUGE.get(status.phase, 0)
        )
        ROLLOUT_WEIGHT.labels(workload=spec.primary_name, namespace=spec.namespace).set(route.primary)
        ROLLOUT_WEIGHT.labels(workload=spec.target_name, namespace=spec.namespace).set(route.canary)

    async def finalize(self, spec: RolloutSpec) -> RolloutStatus:
        """Restore all traffic to the primary and mark the rollout terminated."""
        deployer = self.deployer_for(spec)
        router = self.router_for(spec)

        status = await self._call("get status", deployer.get_status(spec))
        route = await self._call("get routes", router.get_routes(spec))
        if not route.is_primary_only:
            await self._call("set routes", router.set_routes(spec, Route.primary_only()))

        new_status = status.model_copy(update={
            "phase": Phase.TERMINATED,
            "canary_weight": 0,
            "last_transition_time": datetime.now(timezone.utc),
        }).with_condition(promoted_condition(Phase.TERMINATED, "Rollout definition removed"))
        await self._call("sync status", deployer.sync_status(spec, new_status))

        self._record(spec, new_status, Route.primary_only())
        logger.info(f"{spec.key} terminated, all traffic routed to primary")
        self.dispatcher.send(
            Event(
                rollout=spec.key,
                name=spec.name,
                namespace=spec.namespace,
                phase=Phase.TERMINATED,
                severity=Severity.INFO,
                message="Rollout terminated, all traffic routed to primary",
            ),
            spec.analysis.alerts,
        )
        return new_status

    async def mark_misconfigured(self, spec: RolloutSpec, error: ConfigurationError) -> None:
        """Persist a configuration error condition, if the deployer is usable."""
        try:
            deployer = self.deployer_for(spec)
            status = await self._call("get status", deployer.get_status(spec))
            condition = Condition(
                type=CONFIG_CONDITION,
                status="True",
                reason="InvalidDefinition",
                message=str(error),
            )
            new_status = status.with_condition(condition)
            if new_status != status:
                await self._call("sync status", deployer.sync_status(spec, new_status))
        except Exception as e:
            logger.warning(f"Could not record configuration error for {spec.key}: {e}")
