from abc import ABC, abstractmethod
from dataclasses import dataclass

from src.rollout.models.traffic import Route
from src.rollout.models.schemas import Event, RolloutSpec, RolloutStatus


class MetricProvider(ABC):
    @abstractmethod
    async def run_query(self, query: str) -> float:
        """Execute a query and return the first scalar of the result."""
        pass

    @abstractmethod
    async def is_online(self) -> bool:
        """Check that the backend is reachable and accepts queries."""
        pass


class TrafficRouter(ABC):
    @abstractmethod
    async def reconcile(self, spec: RolloutSpec) -> None:
        """Create or update the routing objects for a rollout."""
        pass

    @abstractmethod
    async def get_routes(self, spec: RolloutSpec) -> Route:
        pass

    @abstractmethod
    async def set_routes(self, spec: RolloutSpec, route: Route) -> None:
        pass


@dataclass(frozen=True)
class Revision:
    """Fingerprint of the canary's pod template and referenced config."""
    spec_hash: str
    config_hash: str

    def differs_from(self, status: RolloutStatus) -> bool:
        return (
            self.spec_hash != status.last_applied_spec
            or self.config_hash != status.last_applied_config_hash
        )


class Deployer(ABC):
    """Capability set over one workload kind (primary/canary pair)."""

    @abstractmethod
    async def initialize(self, spec: RolloutSpec) -> None:
        """Create the primary workload from the canary if it does not exist."""
        pass

    @abstractmethod
    async def get_revision(self, spec: RolloutSpec) -> Revision:
        pass

    async def has_target_changed(self, spec: RolloutSpec, status: RolloutStatus) -> bool:
        revision = await self.get_revision(spec)
        return revision.differs_from(status)

    @abstractmethod
    async def is_primary_ready(self, spec: RolloutSpec) -> bool:
        pass

    @abstractmethod
    async def is_canary_ready(self, spec: RolloutSpec) -> bool:
        pass

    @abstractmethod
    async def is_promoted(self, spec: RolloutSpec) -> bool:
        """Whether the primary runs the canary's current revision."""
        pass

    @abstractmethod
    async def promote(self, spec: RolloutSpec) -> None:
        """Copy the canary spec and config into the primary."""
        pass

    @abstractmethod
    async def scale_canary(self, spec: RolloutSpec, replicas: int) -> None:
        pass

    @abstractmethod
    async def get_status(self, spec: RolloutSpec) -> RolloutStatus:
        pass

    @abstractmethod
    async def sync_status(self, spec: RolloutSpec, status: RolloutStatus) -> None:
        pass


class Notifier(ABC):
    @abstractmethod
    async def post(self, event: Event) -> None:
        """Deliver one event. Raises on delivery failure."""
        pass
