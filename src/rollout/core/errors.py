"""Error taxonomy for the reconciliation engine.

Transient collaborator failures abort a tick and are retried on the next
one. Metric query failures are counted against the rollout. Configuration
errors halt a single rollout until its definition is re-applied.
"""
from typing import Optional


class RolloutError(Exception):
    """Base class for all controller errors."""


class CollaboratorError(RolloutError):
    """A deployer, router, metric provider or notifier call failed transiently."""


class CollaboratorTimeout(CollaboratorError):
    """A collaborator call exceeded its deadline."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout


class ProviderUnavailableError(CollaboratorError):
    """The metrics backend cannot be reached."""


class RouterError(CollaboratorError):
    """Reading or writing the traffic split failed."""


class DeployerError(CollaboratorError):
    """A workload operation failed."""


class MetricQueryError(RolloutError):
    """A metric query ran but produced no usable value."""

    def __init__(self, message: str, query: Optional[str] = None):
        super().__init__(message)
        self.query = query


class NoDataError(MetricQueryError):
    """The query returned an empty result set."""


class ConfigurationError(RolloutError):
    """The rollout definition cannot be acted upon until it is corrected."""
