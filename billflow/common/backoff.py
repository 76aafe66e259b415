"""Retry delay curve applied when a task is claimed."""

EXPONENTIAL = "exponential"
LINEAR = "linear"
GROWTH_CURVES = (EXPONENTIAL, LINEAR)

# 2**64 times any sane base is already far past every cap.
_MAX_DOUBLINGS = 64


class BackoffPolicy:
    """Pure mapping from a task's retry count to its next delay in ms.

    The delay never drops below `base_ms`, never exceeds `max_ms` and never
    decreases as the retry count grows.
    """

    def __init__(self, base_ms: int = 5 * 60 * 1000, max_ms: int = 24 * 60 * 60 * 1000, growth: str = EXPONENTIAL):
        if base_ms <= 0:
            raise ValueError(f"base_ms must be positive, got {base_ms}")
        if max_ms < base_ms:
            raise ValueError(f"max_ms {max_ms} is below base_ms {base_ms}")
        if growth not in GROWTH_CURVES:
            raise ValueError(f"unknown backoff growth {growth!r}, expected one of {GROWTH_CURVES}")
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.growth = growth

    @classmethod
    def from_settings(cls, config) -> "BackoffPolicy":
        return cls(config.backoff_base_ms, config.backoff_max_ms, config.backoff_growth)

    def delay_ms(self, retry_count: int) -> int:
        retry_count = max(0, retry_count)
        if self.growth == LINEAR:
            delay = self.base_ms * (retry_count + 1)
        else:
            delay = self.base_ms * (2 ** min(retry_count, _MAX_DOUBLINGS))
        return min(delay, self.max_ms)

    def __repr__(self) -> str:
        return f"BackoffPolicy(base_ms={self.base_ms}, max_ms={self.max_ms}, growth={self.growth!r})"
