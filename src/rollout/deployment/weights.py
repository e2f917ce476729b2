"""Traffic split values and the "advance one step" strategies.

Weighted rollouts shift a growing share of traffic to the canary. Iteration
rollouts (A/B, session affinity) route matched requests to the canary and
count passing analysis rounds instead of moving weight.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from src.rollout.models.schemas import RolloutSpec, RolloutStatus, StrategyKind
from src.rollout.models.traffic import Route


@dataclass(frozen=True)
class Advance:
    """Result of one advancement step."""
    route: Optional[Route] = None  # None keeps the current route
    iterations: int = 0
    complete: bool = False


class AdvanceStrategy(ABC):
    @abstractmethod
    def has_traffic(self, route: Route, status: RolloutStatus) -> bool:
        """Whether the canary currently receives traffic worth analysing."""
        pass

    @abstractmethod
    def advance(self, route: Route, status: RolloutStatus) -> Advance:
        """Next step after a passing (or traffic-less) analysis round."""
        pass


class WeightedStrategy(AdvanceStrategy):
    """Progressive weight shifting, optionally preceded by a mirroring round."""

    def __init__(
        self,
        step_weight: int = 10,
        max_weight: int = 50,
        step_weights: Optional[List[int]] = None,
        mirror: bool = False,
    ):
        self.step_weight = step_weight
        self.max_weight = max_weight
        self.step_weights = list(step_weights or [])
        self.mirror = mirror

    @property
    def ceiling(self) -> int:
        if self.step_weights:
            return self.step_weights[-1]
        return self.max_weight

    def next_weight(self, current: int) -> int:
        if self.step_weights:
            for weight in self.step_weights:
                if weight > current:
                    return weight
            return self.ceiling
        return current + min(self.step_weight, self.max_weight - current)

    def has_traffic(self, route: Route, status: RolloutStatus) -> bool:
        return route.canary > 0 or route.mirrored

    def advance(self, route: Route, status: RolloutStatus) -> Advance:
        if self.mirror and route.canary == 0 and not route.mirrored:
            return Advance(route=Route(100, 0, mirrored=True), iterations=status.iterations)

        if route.canary >= self.ceiling:
            return Advance(iterations=status.iterations, complete=True)

        return Advance(route=Route.with_canary(self.next_weight(route.canary)),
                       iterations=status.iterations)


class IterationStrategy(AdvanceStrategy):
    """Matched requests go to the canary for a fixed number of passing rounds."""

    def __init__(self, iterations: int):
        self.iterations = iterations

    def has_traffic(self, route: Route, status: RolloutStatus) -> bool:
        return route.canary > 0

    def advance(self, route: Route, status: RolloutStatus) -> Advance:
        if route.canary < 100:
            return Advance(route=Route.with_canary(100), iterations=status.iterations)

        if status.iterations < self.iterations:
            return Advance(iterations=status.iterations + 1)

        return Advance(iterations=status.iterations, complete=True)


def strategy_for(spec: RolloutSpec) -> AdvanceStrategy:
    analysis = spec.analysis
    if analysis.strategy is StrategyKind.ITERATION:
        return IterationStrategy(analysis.iterations)
    return WeightedStrategy(
        step_weight=analysis.step_weight,
        max_weight=analysis.max_weight,
        step_weights=analysis.step_weights,
        mirror=analysis.mirror,
    )
