import os
import threading
from collections.abc import Mapping
from typing import Any
from typing import Final
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator

from imbue.await_until.awaiter import ConditionSettings
from imbue.await_until.awaiter import FailFastCondition
from imbue.await_until.cancellation import CancellationEvent
from imbue.await_until.cancellation import ReadOnlyEvent
from imbue.await_until.duration import Duration
from imbue.await_until.duration import ONE_HUNDRED_MILLISECONDS
from imbue.await_until.duration import SAME_AS_POLL_INTERVAL
from imbue.await_until.duration import TEN_SECONDS
from imbue.await_until.duration import parse_duration
from imbue.await_until.errors import InvalidConfigurationError
from imbue.await_until.exception_ignore import ExceptionIgnorePolicy
from imbue.await_until.exception_ignore import IGNORE_NOTHING
from imbue.await_until.failure_channel import UNCAUGHT_FAILURES
from imbue.await_until.failure_channel import UncaughtFailureChannel
from imbue.await_until.frozen_model import FrozenModel
from imbue.await_until.listener import ConditionEvaluationListener
from imbue.await_until.listener import ConditionEvaluationLogger
from imbue.await_until.poll_interval import FixedPollInterval
from imbue.await_until.poll_interval import PollInterval
from imbue.await_until.poll_interval import as_poll_interval
from imbue.await_until.wait_constraint import WaitConstraint

# this is the only place where it is acceptable to use the TYPE_CHECKING flag
if TYPE_CHECKING:
    from imbue.await_until.condition_factory import ConditionFactory

ENV_PREFIX: Final[str] = "AWAIT_UNTIL_"

_TRUE_VALUES: Final[frozenset[str]] = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES: Final[frozenset[str]] = frozenset({"0", "false", "no", "off", ""})


class EngineConfig(FrozenModel):
    """Defaults applied to every wait created from a context, unless the wait overrides them."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    default_timeout: Duration = Field(default=TEN_SECONDS, description="Maximum wait time")
    poll_interval: PollInterval = Field(
        default=FixedPollInterval(duration=ONE_HUNDRED_MILLISECONDS),
        description="Strategy for the delay between polls",
    )
    poll_delay: Duration = Field(default=SAME_AS_POLL_INTERVAL, description="Delay before the first poll")
    ignore_policy: ExceptionIgnorePolicy = Field(default=IGNORE_NOTHING, description="Exceptions treated as a mismatch")
    listener: ConditionEvaluationListener | None = Field(default=None, description="Observer attached to every wait")
    is_catching_uncaught_exceptions: bool = Field(
        default=True,
        description="Whether uncaught exceptions from other threads fail waits",
    )
    fail_fast: FailFastCondition | None = Field(default=None, description="Checked before every poll of every wait")

    @model_validator(mode="after")
    def _validate_durations(self) -> "EngineConfig":
        if self.default_timeout.is_same_as_poll_interval():
            raise InvalidConfigurationError("The default timeout cannot be SAME_AS_POLL_INTERVAL")
        if self.poll_delay.is_forever():
            raise InvalidConfigurationError("The default poll delay cannot be FOREVER")
        return self

    def build_settings(
        self,
        alias: str | None,
        failure_channel: UncaughtFailureChannel,
        cancellation: CancellationEvent | None,
    ) -> ConditionSettings:
        return ConditionSettings(
            alias=alias,
            constraint=WaitConstraint(max_wait=self.default_timeout),
            poll_interval=self.poll_interval,
            poll_delay=self.poll_delay,
            ignore_policy=self.ignore_policy,
            listener=self.listener,
            is_catching_uncaught_exceptions=self.is_catching_uncaught_exceptions,
            fail_fast=self.fail_fast,
            cancellation=cancellation,
            failure_channel=failure_channel,
        )


def _parse_bool(name: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise InvalidConfigurationError(f"{name} must be a boolean (true/false), got '{value}'")


def load_engine_config(environ: Mapping[str, str] | None = None) -> EngineConfig:
    """Build the factory defaults with AWAIT_UNTIL_* environment overrides applied.

    Recognized variables:
        AWAIT_UNTIL_DEFAULT_TIMEOUT=30s          -> default_timeout (accepts 'forever')
        AWAIT_UNTIL_DEFAULT_POLL_INTERVAL=250ms  -> fixed poll interval
        AWAIT_UNTIL_DEFAULT_POLL_DELAY=0         -> poll_delay
        AWAIT_UNTIL_CATCH_UNCAUGHT_EXCEPTIONS=false
        AWAIT_UNTIL_LOG_EVALUATIONS=true         -> attach a ConditionEvaluationLogger

    Plain numbers are milliseconds. Invalid values raise InvalidConfigurationError.
    """
    if environ is None:
        environ = os.environ
    overrides: dict[str, Any] = {}

    timeout = environ.get(f"{ENV_PREFIX}DEFAULT_TIMEOUT")
    if timeout is not None:
        overrides["default_timeout"] = parse_duration(timeout)

    poll_interval = environ.get(f"{ENV_PREFIX}DEFAULT_POLL_INTERVAL")
    if poll_interval is not None:
        overrides["poll_interval"] = FixedPollInterval(duration=parse_duration(poll_interval))

    poll_delay = environ.get(f"{ENV_PREFIX}DEFAULT_POLL_DELAY")
    if poll_delay is not None:
        overrides["poll_delay"] = parse_duration(poll_delay)

    catch_uncaught = environ.get(f"{ENV_PREFIX}CATCH_UNCAUGHT_EXCEPTIONS")
    if catch_uncaught is not None:
        overrides["is_catching_uncaught_exceptions"] = _parse_bool(
            f"{ENV_PREFIX}CATCH_UNCAUGHT_EXCEPTIONS", catch_uncaught
        )

    log_evaluations = environ.get(f"{ENV_PREFIX}LOG_EVALUATIONS")
    if log_evaluations is not None and _parse_bool(f"{ENV_PREFIX}LOG_EVALUATIONS", log_evaluations):
        overrides["listener"] = ConditionEvaluationLogger()

    if overrides:
        logger.debug("Applying environment overrides to await defaults: {}", sorted(overrides))
    return EngineConfig(**overrides)


class AwaitContext:
    """Injected context owning the defaults, failure channel and cancellation root of its waits.

    Waits built from different contexts share nothing, so tests can each use their own
    context and run in isolation.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        failure_channel: UncaughtFailureChannel | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._config = config if config is not None else EngineConfig()
        self.failure_channel = failure_channel if failure_channel is not None else UncaughtFailureChannel(name="context")
        self._cancellation = CancellationEvent.build_root()

    @property
    def config(self) -> EngineConfig:
        with self._lock:
            return self._config

    def load(self, environ: Mapping[str, str] | None = None) -> EngineConfig:
        """Replace the current defaults with the factory defaults plus environment overrides."""
        config = load_engine_config(environ)
        with self._lock:
            self._config = config
        return config

    def reset(self) -> EngineConfig:
        """Restore the factory defaults, discarding every earlier set() and load()."""
        with self._lock:
            self._config = EngineConfig()
            return self._config

    def set(self, **changes: Any) -> EngineConfig:
        """Change some defaults, e.g. context.set(default_timeout=seconds(30))."""
        if "poll_interval" in changes:
            changes["poll_interval"] = as_poll_interval(changes["poll_interval"])
        with self._lock:
            self._config = self._config.evolve(**changes)
            return self._config

    def cancel_all(self) -> None:
        """Cancel every wait currently running from this context.

        Waits started afterwards are not affected.
        """
        with self._lock:
            cancellation = self._cancellation
            self._cancellation = CancellationEvent.build_root()
        logger.debug("Cancelling all waits of the context")
        cancellation.set()

    def new_cancellation(self, external: ReadOnlyEvent | None = None) -> CancellationEvent:
        """Cancellation event for one wait: set by cancel_all() or, if given, by the external event."""
        with self._lock:
            return CancellationEvent.from_parent(self._cancellation, external=external)

    def build_settings(self, alias: str | None = None) -> ConditionSettings:
        return self.config.build_settings(alias, self.failure_channel, None)

    def await_(self, alias: str | None = None) -> "ConditionFactory":
        from imbue.await_until.condition_factory import ConditionFactory

        return ConditionFactory(context=self, settings=self.build_settings(alias))


DEFAULT_CONTEXT: Final[AwaitContext] = AwaitContext(failure_channel=UNCAUGHT_FAILURES)
