"""Pick an execution path for a payload from its size and a threshold policy."""
from dataclasses import dataclass
from enum import Enum

from app.ingest.errors import InvalidInput

MB = 1024 * 1024


class Strategy(str, Enum):
    SYNC = "sync"
    BACKGROUND = "background"
    CHUNKED = "chunked"


@dataclass(frozen=True)
class StrategyPolicy:
    """Size thresholds in bytes. Inclusive upper bounds: size <= sync_max_bytes runs synchronously,
    size <= background_max_bytes runs as a single background request, anything larger is chunked."""

    sync_max_bytes: int = 5 * MB
    background_max_bytes: int = 50 * MB

    def __post_init__(self):
        if self.sync_max_bytes < 0 or self.background_max_bytes < 0:
            raise InvalidInput("strategy thresholds must be >= 0")
        if self.sync_max_bytes > self.background_max_bytes:
            raise InvalidInput(
                "sync_max_bytes must not exceed background_max_bytes",
                {"syncMaxBytes": self.sync_max_bytes, "backgroundMaxBytes": self.background_max_bytes},
            )


DEFAULT_POLICY = StrategyPolicy()


def select_strategy(size_in_bytes: int, policy: StrategyPolicy = DEFAULT_POLICY) -> Strategy:
    """Return the strategy for a payload of size_in_bytes. Pure; performs no I/O.
    Why available: Producers call this before choosing which endpoint(s) to use."""
    if size_in_bytes < 0:
        raise InvalidInput("size must be >= 0", {"size": size_in_bytes})
    if size_in_bytes <= policy.sync_max_bytes:
        return Strategy.SYNC
    if size_in_bytes <= policy.background_max_bytes:
        return Strategy.BACKGROUND
    return Strategy.CHUNKED
