import time
from datetime import datetime, timezone


def utcnow() -> datetime:
    """
    Current UTC instant as a naive datetime.
    All stored instants are naive UTC so they compare the same way in every backend.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Stopwatch:
    """
    Monotonic interval timer for latency capture.
    """

    def __init__(self):
        self._started = time.monotonic()

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)
