"""Cross-thread signal that lets exceptions from threads the caller does not observe fail a wait.

Any thread may publish an exception; the awaiting thread claims it between polls. The
channel keeps only the most recent publication (last write wins): it is a best-effort
signal, not an audit log.
"""

import threading
import time
import weakref
from typing import Any
from typing import Callable
from typing import Final

from loguru import logger
from pydantic import ConfigDict
from pydantic import Field

from imbue.await_until.frozen_model import FrozenModel


class PublishedFailure(FrozenModel):
    """An exception published on the channel, stamped with when and by whom."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    exception: BaseException = Field(description="The uncaught exception")
    published_at_ns: int = Field(description="time.monotonic_ns() at the moment of publication")
    generation: int = Field(description="Sequence number of this publication on its channel")
    thread_name: str | None = Field(default=None, description="Name of the thread the exception escaped from")


class UncaughtFailureChannel:
    """Single-slot, lock-guarded mailbox for uncaught exceptions."""

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._slot: PublishedFailure | None = None
        self._generation = 0

    def publish(self, exception: BaseException, thread_name: str | None = None) -> int:
        """Store the exception as the most recent failure and return its generation number."""
        with self._lock:
            self._generation += 1
            if self._slot is not None:
                logger.debug(
                    "Uncaught {} from generation {} was never claimed and is replaced",
                    type(self._slot.exception).__name__,
                    self._slot.generation,
                )
            self._slot = PublishedFailure(
                exception=exception,
                published_at_ns=time.monotonic_ns(),
                generation=self._generation,
                thread_name=thread_name,
            )
            return self._generation

    def consume_if_newer_than(self, start_ns: int) -> PublishedFailure | None:
        """Atomically claim the failure if it was published at or after start_ns.

        An older failure stays in the slot: it cannot fail a wait that started after it
        happened, but a wait that was already running when it was published may still claim it.
        """
        with self._lock:
            failure = self._slot
            if failure is None:
                return None
            if failure.published_at_ns < start_ns:
                logger.trace(
                    "Leaving uncaught {} (generation {}) published before the wait started",
                    type(failure.exception).__name__,
                    failure.generation,
                )
                return None
            self._slot = None
            return failure

    def peek(self) -> PublishedFailure | None:
        with self._lock:
            return self._slot

    def clear(self) -> None:
        with self._lock:
            self._slot = None

    @property
    def generation(self) -> int:
        return self._generation


UNCAUGHT_FAILURES: Final[UncaughtFailureChannel] = UncaughtFailureChannel(name="process")

# Every channel that asked for thread exceptions. Channels are held weakly so that a
# discarded context stops receiving publications.
_REGISTERED_CHANNELS: "weakref.WeakSet[UncaughtFailureChannel]" = weakref.WeakSet()
_REGISTRY_LOCK: Final[threading.Lock] = threading.Lock()

# Attribute set on hooks installed by ensure_thread_excepthook_installed, so that we can tell
# whether ours is still the active threading.excepthook.
_PREVIOUS_HOOK_ATTRIBUTE: Final[str] = "_await_until_previous_hook"


def _registered_channels() -> list[UncaughtFailureChannel]:
    with _REGISTRY_LOCK:
        return list(_REGISTERED_CHANNELS)


def _make_excepthook(previous_hook: Callable[[Any], object]) -> Callable[[Any], None]:
    def excepthook(args: Any) -> None:
        for channel in _registered_channels():
            publish_excepthook_args(channel, args)
        previous_hook(args)

    setattr(excepthook, _PREVIOUS_HOOK_ATTRIBUTE, previous_hook)
    return excepthook


def publish_excepthook_args(channel: UncaughtFailureChannel, args: Any) -> None:
    """Publish the exception described by a threading.excepthook argument object.

    SystemExit is how threads end on purpose, so it is never published.
    """
    exc_value = args.exc_value
    if exc_value is None or isinstance(exc_value, SystemExit):
        return
    thread = args.thread
    channel.publish(exc_value, thread_name=thread.name if thread is not None else None)


def ensure_thread_excepthook_installed(channel: UncaughtFailureChannel = UNCAUGHT_FAILURES) -> None:
    """Make uncaught exceptions of every thread publish to the channel.

    A single hook serves every registered channel and chains to whatever hook was active
    before, so default reporting keeps working. If our hook is still active only the channel
    is registered; if something else (e.g. a test runner) replaced it, it is installed on top again.
    """
    with _REGISTRY_LOCK:
        _REGISTERED_CHANNELS.add(channel)
        current_hook = threading.excepthook
        if hasattr(current_hook, _PREVIOUS_HOOK_ATTRIBUTE):
            return
        threading.excepthook = _make_excepthook(current_hook)
    logger.trace("Installed thread excepthook, publishing to failure channel '{}'", channel.name)


def uninstall_thread_excepthook() -> None:
    """Restore the hook that was active before ours, if ours is the active one."""
    with _REGISTRY_LOCK:
        previous_hook = getattr(threading.excepthook, _PREVIOUS_HOOK_ATTRIBUTE, None)
        if previous_hook is not None:
            threading.excepthook = previous_hook
