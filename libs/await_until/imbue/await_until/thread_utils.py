import threading
from typing import Any
from typing import Callable

from loguru import logger

from imbue.await_until.failure_channel import UNCAUGHT_FAILURES
from imbue.await_until.failure_channel import UncaughtFailureChannel


class ObservableThread(threading.Thread):
    """Thread that reports an exception escaping its target on a failure channel.

    The exception is logged, published (so a wait running elsewhere fails with it) and kept
    for maybe_raise(). It is not re-raised inside the thread, so threading.excepthook does not
    report it a second time. Exceptions in suppressed_exceptions are recorded but neither
    logged nor published.
    """

    def __init__(
        self,
        target: Callable[..., Any],
        args: tuple = (),
        kwargs: dict | None = None,
        name: str | None = None,
        daemon: bool = True,
        failure_channel: UncaughtFailureChannel = UNCAUGHT_FAILURES,
        suppressed_exceptions: tuple[type[BaseException], ...] | None = None,
    ) -> None:
        super().__init__(name=name, daemon=daemon)
        self._target = target
        self._target_name = getattr(target, "__name__", None)
        self._args = args
        self._kwargs = kwargs or {}
        self._failure_channel = failure_channel
        self._suppressed_exceptions = suppressed_exceptions or ()
        self._exception: BaseException | None = None

    @property
    def target_name(self) -> str | None:
        return self._target_name

    def run(self) -> None:
        try:
            super().run()
        except BaseException as e:
            self._exception = e
            if isinstance(e, self._suppressed_exceptions):
                return
            logger.opt(exception=e).error(
                "Error in thread '{}' with target '{}'",
                self.name,
                self.target_name,
            )
            self._failure_channel.publish(e, thread_name=self.name)

    def maybe_raise(self) -> None:
        """Re-raise the captured exception in the calling thread, unless it was suppressed."""
        exception = self.exception_if_not_suppressed
        if exception is not None:
            raise exception

    @property
    def exception(self) -> BaseException | None:
        return self._exception

    @property
    def exception_if_not_suppressed(self) -> BaseException | None:
        if self._exception is not None and not isinstance(self._exception, self._suppressed_exceptions):
            return self._exception
        return None
