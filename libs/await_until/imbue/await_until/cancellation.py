import threading
import time
import weakref
from typing import Final
from typing import Protocol
from typing import Self

# External events cannot notify us, so waits that include one re-check at this period.
_EXTERNAL_EVENT_POLL_SECONDS: Final[float] = 0.01


class ReadOnlyEvent(Protocol):
    """Anything that can be observed like a threading.Event."""

    def is_set(self) -> bool: ...

    def wait(self, timeout: float | None = None) -> bool: ...


class CancellationEvent:
    """Cancellation signal that can be chained: cancelling a parent cancels all of its children.

    A child may additionally watch an external event (e.g. a test framework's own stop
    flag); setting that external event also cancels the child.
    """

    def __init__(self, parent: "CancellationEvent | None" = None, external: ReadOnlyEvent | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._external = external
        self._children: weakref.WeakSet[CancellationEvent] = weakref.WeakSet()
        self._lock = threading.Lock()

    @classmethod
    def build_root(cls) -> Self:
        return cls()

    @classmethod
    def from_parent(cls, parent: "CancellationEvent", external: ReadOnlyEvent | None = None) -> "CancellationEvent":
        child = CancellationEvent(parent=parent, external=external)
        parent._register_child(child)
        return child

    def _register_child(self, child: "CancellationEvent") -> None:
        with self._lock:
            self._children.add(child)
            is_already_set = self._event.is_set()
        if is_already_set:
            child.set()

    def set(self) -> None:
        """Cancel this event and every event derived from it."""
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.set()

    def is_set(self) -> bool:
        if self._event.is_set():
            return True
        if self._external is not None and self._external.is_set():
            return True
        return self._parent is not None and self._parent.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or until timeout seconds pass; return whether it was cancelled."""
        if self._external is None:
            return self._event.wait(timeout) or self.is_set()
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_set():
            if deadline is None:
                slice_seconds = _EXTERNAL_EVENT_POLL_SECONDS
            else:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                slice_seconds = min(remaining, _EXTERNAL_EVENT_POLL_SECONDS)
            self._event.wait(slice_seconds)
        return True
