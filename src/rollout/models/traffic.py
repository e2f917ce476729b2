from dataclasses import dataclass


@dataclass(frozen=True)
class Route:
    """A traffic split. ``mirrored`` is orthogonal to the weight pair."""
    primary: int = 100
    canary: int = 0
    mirrored: bool = False

    def __post_init__(self):
        if not 0 <= self.primary <= 100 or not 0 <= self.canary <= 100:
            raise ValueError(f"weights must be within [0, 100], got {self.primary}/{self.canary}")
        if self.primary + self.canary != 100:
            raise ValueError(f"weights must sum to 100, got {self.primary}/{self.canary}")

    @classmethod
    def primary_only(cls) -> "Route":
        return cls(100, 0, False)

    @classmethod
    def with_canary(cls, canary: int, mirrored: bool = False) -> "Route":
        return cls(100 - canary, canary, mirrored)

    @property
    def is_primary_only(self) -> bool:
        return self == Route.primary_only()

    def __str__(self) -> str:
        suffix = " (mirrored)" if self.mirrored else ""
        return f"{self.primary}/{self.canary}{suffix}"
