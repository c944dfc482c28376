from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field

from .errors import ContextCancelledError


@dataclass(frozen=True)
class CallContext:
    """Deadline and cancellation carried through every store-facing call.

    Stores receive the same context and may use ``remaining()`` to bound
    their own backend timeouts.
    """

    deadline: float | None = None
    _cancelled: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self) -> None:
        if self.cancelled:
            raise ContextCancelledError("context cancelled")
        if self.expired():
            raise ContextCancelledError("context deadline exceeded")

    def with_timeout(self, seconds: float) -> CallContext:
        deadline = time.monotonic() + max(0.0, float(seconds))
        if self.deadline is not None:
            deadline = min(deadline, self.deadline)
        # The child shares the parent's cancel flag.
        return CallContext(deadline=deadline, _cancelled=self._cancelled)


def background() -> CallContext:
    return CallContext()


def with_timeout(seconds: float) -> CallContext:
    return background().with_timeout(seconds)
