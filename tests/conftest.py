import asyncio
import os
from typing import List, Optional

import pytest

# Disable OTLP export during tests to prevent connection errors
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = "none"

from src.rollout.deployment.analysis import MetricAnalyzer
from src.rollout.deployment.controller import Controller
from src.rollout.models.schemas import (
    Analysis,
    Event,
    MetricCheck,
    RolloutSpec,
    RolloutStatus,
    WorkloadKind,
)
from src.rollout.models.traffic import Route
from src.rollout.services.base import Deployer, MetricProvider, Notifier, Revision, TrafficRouter
from src.rollout.services.notifiers.dispatcher import AlertDispatcher


class FakeRouter(TrafficRouter):
    """In-memory traffic split."""

    def __init__(self):
        self.route = Route.primary_only()
        self.history: List[Route] = []
        self.reconciled = 0
        self.error: Optional[Exception] = None

    async def reconcile(self, spec):
        self.reconciled += 1

    async def get_routes(self, spec):
        if self.error:
            raise self.error
        return self.route

    async def set_routes(self, spec, route):
        if self.error:
            raise self.error
        self.route = route
        self.history.append(route)


class FakeDeployer(Deployer):
    """In-memory primary/canary pair with a persisted status."""

    def __init__(self):
        self.revision = Revision("rev-1", "cfg-1")
        self.primary_revision: Optional[Revision] = None
        self.status = RolloutStatus()
        self.primary_ready = True
        self.canary_ready = True
        self.canary_replicas = 1
        self.initialized = 0
        self.promotions = 0
        self.syncs = 0
        self.delay = 0.0

    async def initialize(self, spec):
        self.initialized += 1
        if self.primary_revision is None:
            self.primary_revision = self.revision

    async def get_revision(self, spec):
        return self.revision

    async def is_primary_ready(self, spec):
        return self.primary_ready

    async def is_canary_ready(self, spec):
        return self.canary_ready and self.canary_replicas > 0

    async def is_promoted(self, spec):
        return self.primary_revision == self.revision

    async def promote(self, spec):
        self.promotions += 1
        self.primary_revision = self.revision

    async def scale_canary(self, spec, replicas):
        self.canary_replicas = replicas

    async def get_status(self, spec):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.status

    async def sync_status(self, spec, status):
        self.syncs += 1
        self.status = status


class FakeProvider(MetricProvider):
    """Returns ``value`` for every query, or raises it if it is an exception."""

    def __init__(self, value=100.0):
        self.value = value
        self.queries: List[str] = []
        self.online = True

    async def run_query(self, query):
        self.queries.append(query)
        if isinstance(self.value, Exception):
            raise self.value
        return self.value

    async def is_online(self):
        if isinstance(self.online, Exception):
            raise self.online
        return self.online


class FakeNotifier(Notifier):
    def __init__(self):
        self.events: List[Event] = []
        self.error: Optional[Exception] = None

    async def post(self, event):
        if self.error:
            raise self.error
        self.events.append(event)


def make_spec(**analysis) -> RolloutSpec:
    """A podinfo rollout with one success-rate check and an info alert."""
    analysis.setdefault("metrics", [
        MetricCheck(name="request-success-rate", threshold_range={"min": 99}),
    ])
    analysis.setdefault("alerts", [{"name": "on-call", "provider": "slack"}])
    return RolloutSpec(name="podinfo", namespace="default", analysis=Analysis(**analysis))


@pytest.fixture
def router():
    return FakeRouter()


@pytest.fixture
def deployer():
    return FakeDeployer()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def controller(router, deployer, provider, notifier):
    return Controller(
        deployers={WorkloadKind.DEPLOYMENT: deployer, WorkloadKind.DAEMONSET: deployer},
        routers={"nginx": router},
        analyzer=MetricAnalyzer({"prometheus": provider}, timeout=1.0),
        dispatcher=AlertDispatcher({"slack": notifier}, timeout=1.0),
        timeout=1.0,
    )


@pytest.fixture
def spec_factory():
    return make_spec


@pytest.fixture
def client(controller, tmp_path):
    from fastapi.testclient import TestClient

    from src.rollout.deployment.definitions import DefinitionStore
    from src.rollout.deployment.scheduler import Scheduler
    from src.rollout.main import create_app

    app = create_app(scheduler=Scheduler(controller), definitions=DefinitionStore(tmp_path / "rollouts"))
    # Context manager triggers the lifespan events (startup/shutdown)
    with TestClient(app) as c:
        yield c
