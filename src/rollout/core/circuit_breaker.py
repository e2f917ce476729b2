"""Circuit breakers guarding alert delivery."""
from typing import Dict

import pybreaker
from prometheus_client import Gauge
from loguru import logger

CIRCUIT_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state: 0=closed, 1=open, 2=half_open",
    ["service"],
)

def on_circuit_open(cb, exc):
    """Called when circuit opens."""
    logger.error(f"🔴 Circuit OPEN for {cb.name}: {exc}")
    CIRCUIT_STATE.labels(service=cb.name).set(1)

def on_circuit_close(cb):
    """Called when circuit closes."""
    logger.info(f"🟢 Circuit CLOSED for {cb.name}")
    CIRCUIT_STATE.labels(service=cb.name).set(0)

def on_circuit_half_open(cb):
    """Called when circuit enters half-open state."""
    logger.warning(f"🟡 Circuit HALF-OPEN for {cb.name}")
    CIRCUIT_STATE.labels(service=cb.name).set(2)


class _StateListener(pybreaker.CircuitBreakerListener):
    def state_change(self, cb, old_state, new_state):
        if new_state.name == pybreaker.STATE_OPEN:
            on_circuit_open(cb, f"{cb.fail_counter} consecutive failures")
        elif new_state.name == pybreaker.STATE_CLOSED:
            on_circuit_close(cb)
        elif new_state.name == pybreaker.STATE_HALF_OPEN:
            on_circuit_half_open(cb)


_breakers: Dict[str, pybreaker.CircuitBreaker] = {}


def notifier_breaker(name: str, fail_max: int = 5, reset_timeout: int = 60) -> pybreaker.CircuitBreaker:
    """Return the shared breaker for one alert provider."""
    if name not in _breakers:
        _breakers[name] = pybreaker.CircuitBreaker(
            fail_max=fail_max,          # Open after 5 consecutive delivery failures
            reset_timeout=reset_timeout,  # Try again after 60 seconds
            name=f"notifier:{name}",
            listeners=[_StateListener()],
        )
    return _breakers[name]


def breaker_states() -> Dict[str, str]:
    return {name: breaker.current_state for name, breaker in sorted(_breakers.items())}
