import time
from typing import Callable, Optional

from .errors import RequestCancelled


class RequestContext:
    """
    Cancellation scope for one inbound request.

    Upstream work checks the context before each round trip and between body
    chunks, and bounds its timeouts by whatever is left of the deadline.
    """

    def __init__(self, deadline: Optional[float] = None,
                 disconnected: Optional[Callable[[], bool]] = None):
        """
        Args:
            deadline: Absolute time.monotonic() value after which work stops
            disconnected: Probe returning True once the caller has gone away
        """
        self._deadline = deadline
        self._disconnected = disconnected
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._cancelled = True
        elif self._disconnected is not None and self._disconnected():
            self._cancelled = True
        return self._cancelled

    def check(self) -> None:
        """Raise RequestCancelled if the request should stop."""
        if self.cancelled:
            raise RequestCancelled("request cancelled by caller")

    def hop_timeout(self, timeout: float) -> float:
        """Clamp a per-hop timeout to the remaining deadline."""
        if self._deadline is None:
            return timeout
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise RequestCancelled("request deadline exceeded")
        return min(timeout, remaining)
