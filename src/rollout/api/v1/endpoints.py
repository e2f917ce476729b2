"""Rollout management endpoints."""
import asyncio
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request, status
from loguru import logger

from src.rollout.core.errors import CollaboratorError, ConfigurationError
from src.rollout.core.limiter import limiter
from src.rollout.deployment.definitions import DefinitionStore
from src.rollout.deployment.scheduler import Scheduler, TargetWorker
from src.rollout.models.schemas import GateAction, RolloutSpec, RolloutStatus, RolloutView
from src.rollout.monitoring.tracing import record_exception, set_span_attributes, tracer

router = APIRouter()

GATES = {
    "rollout": "confirm_rollout",
    "promotion": "confirm_promotion",
}


def get_scheduler(request: Request) -> Scheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not running")
    return scheduler


def get_definitions(request: Request) -> Optional[DefinitionStore]:
    return getattr(request.app.state, "definitions", None)


async def _persist(request: Request, spec: RolloutSpec) -> None:
    store = get_definitions(request)
    if store is None:
        return
    try:
        await asyncio.to_thread(store.save, spec)
    except OSError as e:
        logger.error(f"Could not save rollout {spec.key}: {e}")
        raise HTTPException(status_code=500, detail=f"Rollout definition not saved: {e}")


async def _forget(request: Request, namespace: str, name: str) -> None:
    store = get_definitions(request)
    if store is None:
        return
    try:
        await asyncio.to_thread(store.delete, namespace, name)
    except OSError as e:
        logger.error(f"Could not remove saved rollout {namespace}/{name}: {e}")


def _view(worker: TargetWorker) -> RolloutView:
    return RolloutView(
        spec=worker.spec,
        status=worker.status,
        halted=worker.halted,
        last_error=worker.last_error,
    )


def _require(scheduler: Scheduler, namespace: str, name: str) -> TargetWorker:
    worker = scheduler.get(namespace, name)
    if worker is None:
        raise HTTPException(status_code=404, detail=f"Rollout {namespace}/{name} not registered")
    return worker


@router.get("/rollouts", response_model=List[RolloutView], response_model_by_alias=True)
async def list_rollouts(request: Request):
    return [_view(worker) for worker in get_scheduler(request).workers()]


@router.put(
    "/rollouts",
    response_model=RolloutView,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED,
)
@limiter.limit("30/minute")
async def apply_rollout(request: Request, body: RolloutSpec):
    """
    Register a rollout or re-apply its definition.

    The definition is validated against the configured collaborators before
    it is accepted; reconciliation starts with an immediate tick.
    """
    scheduler = get_scheduler(request)
    with tracer.start_as_current_span("apply_rollout") as span:
        set_span_attributes(span, rollout=body.key)
        try:
            scheduler.controller.validate(body)
        except ConfigurationError as e:
            record_exception(span, e)
            raise HTTPException(status_code=422, detail=str(e))

        await _persist(request, body)
        worker = await scheduler.register(body)
        logger.info(f"Rollout {body.key} applied")
        return _view(worker)


@router.get(
    "/rollouts/{namespace}/{name}",
    response_model=RolloutView,
    response_model_by_alias=True,
)
async def get_rollout(request: Request, namespace: str, name: str):
    return _view(_require(get_scheduler(request), namespace, name))


@router.delete(
    "/rollouts/{namespace}/{name}",
    response_model=RolloutStatus,
    response_model_by_alias=True,
)
@limiter.limit("30/minute")
async def delete_rollout(request: Request, namespace: str, name: str):
    """Deregister a rollout; all traffic goes back to the primary."""
    scheduler = get_scheduler(request)
    _require(scheduler, namespace, name)
    await _forget(request, namespace, name)
    try:
        terminal = await scheduler.deregister(namespace, name)
    except (CollaboratorError, ConfigurationError) as e:
        logger.error(f"Finalizing {namespace}/{name} failed: {e}")
        raise HTTPException(status_code=502, detail=f"Rollout deregistered but not finalized: {e}")
    if terminal is None:
        raise HTTPException(status_code=404, detail=f"Rollout {namespace}/{name} not registered")
    return terminal


@router.post(
    "/rollouts/{namespace}/{name}/gates/{gate}/{action}",
    response_model=RolloutView,
    response_model_by_alias=True,
)
@limiter.limit("30/minute")
async def set_gate(request: Request, namespace: str, name: str, gate: str, action: GateAction):
    """Open or close the rollout or promotion gate of a registered rollout."""
    if gate not in GATES:
        raise HTTPException(status_code=404, detail=f"Unknown gate {gate!r}, expected one of {sorted(GATES)}")

    scheduler = get_scheduler(request)
    worker = _require(scheduler, namespace, name)

    analysis = worker.spec.analysis.model_copy(update={GATES[gate]: action is GateAction.OPEN})
    spec = worker.spec.model_copy(update={"analysis": analysis})
    await _persist(request, spec)
    worker = await scheduler.register(spec, reapplied=False)
    logger.info(f"Rollout {spec.key} {gate} gate {action.value}")
    return _view(worker)
