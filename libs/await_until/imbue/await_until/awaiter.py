import time
from collections.abc import Callable
from typing import Any
from typing import Final

from loguru import logger
from pydantic import ConfigDict
from pydantic import Field
from pydantic import model_validator

from imbue.await_until.cancellation import CancellationEvent
from imbue.await_until.condition import Condition
from imbue.await_until.condition import ConditionResult
from imbue.await_until.duration import Duration
from imbue.await_until.duration import FOREVER
from imbue.await_until.duration import ONE_HUNDRED_MILLISECONDS
from imbue.await_until.duration import SAME_AS_POLL_INTERVAL
from imbue.await_until.duration import format_duration
from imbue.await_until.duration import millis
from imbue.await_until.errors import ConditionEvaluationError
from imbue.await_until.errors import InvalidConfigurationError
from imbue.await_until.errors import TerminalFailureError
from imbue.await_until.errors import UncaughtBackgroundError
from imbue.await_until.errors import WaitCancelledError
from imbue.await_until.errors import WaitTimedOutError
from imbue.await_until.exception_ignore import ExceptionIgnorePolicy
from imbue.await_until.exception_ignore import IGNORE_NOTHING
from imbue.await_until.failure_channel import UNCAUGHT_FAILURES
from imbue.await_until.failure_channel import UncaughtFailureChannel
from imbue.await_until.failure_channel import ensure_thread_excepthook_installed
from imbue.await_until.frozen_model import FrozenModel
from imbue.await_until.listener import ConditionEvaluationListener
from imbue.await_until.listener import EvaluationRecord
from imbue.await_until.listener import IgnoredExceptionEvent
from imbue.await_until.listener import StartEvaluationEvent
from imbue.await_until.listener import TimeoutEvent
from imbue.await_until.logging import log_span
from imbue.await_until.poll_interval import FixedPollInterval
from imbue.await_until.poll_interval import PollInterval
from imbue.await_until.pure import pure
from imbue.await_until.wait_constraint import AT_MOST_TEN_SECONDS
from imbue.await_until.wait_constraint import WaitConstraint

_NANOSECONDS_PER_MILLISECOND: Final[int] = 1_000_000
_NANOSECONDS_PER_SECOND: Final[int] = 1_000_000_000


class FailFastCondition(FrozenModel):
    """Predicate checked before every poll; returning True means the awaited state can never be reached."""

    predicate: Callable[[], bool] = Field(description="Returns True once the wait should be abandoned")
    reason: str = Field(default="Fail fast condition triggered", description="Message of the resulting error")


class ConditionSettings(FrozenModel):
    """Everything a single wait needs besides the condition itself."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    alias: str | None = Field(default=None, description="Label identifying the wait in messages")
    constraint: WaitConstraint = Field(default=AT_MOST_TEN_SECONDS, description="Minimum, maximum and hold times")
    poll_interval: PollInterval = Field(
        default=FixedPollInterval(duration=ONE_HUNDRED_MILLISECONDS),
        description="Strategy for the delay between polls",
    )
    poll_delay: Duration = Field(default=SAME_AS_POLL_INTERVAL, description="Delay before the first poll")
    ignore_policy: ExceptionIgnorePolicy = Field(
        default=IGNORE_NOTHING,
        description="Which exceptions count as 'not matched yet' instead of failing the wait",
    )
    listener: ConditionEvaluationListener | None = Field(default=None, description="Observer of every poll")
    is_catching_uncaught_exceptions: bool = Field(
        default=True,
        description="Whether exceptions published on the failure channel fail the wait",
    )
    fail_fast: FailFastCondition | None = Field(default=None, description="Checked before every poll")
    cancellation: CancellationEvent | None = Field(default=None, description="Setting it aborts the wait")
    failure_channel: UncaughtFailureChannel = Field(
        default=UNCAUGHT_FAILURES,
        description="Where uncaught exceptions from other threads are published",
    )

    @model_validator(mode="after")
    def _validate_poll_delay(self) -> "ConditionSettings":
        if self.poll_delay.is_forever():
            raise InvalidConfigurationError("The poll delay cannot be FOREVER")
        return self


@pure
def resolve_poll_delay(poll_delay: Duration, poll_interval: PollInterval) -> Duration:
    """Turn SAME_AS_POLL_INTERVAL into the first delay the poll interval would produce."""
    if poll_delay.is_same_as_poll_interval():
        return poll_interval.next(1, None)
    return poll_delay


@pure
def build_timeout_message(
    alias: str | None,
    max_wait: Duration,
    description: str,
    last_value: str | None,
    elapsed_ms: int,
) -> str:
    if alias:
        message = f"Condition with alias '{alias}' didn't complete within {format_duration(max_wait)} because {_decapitalize(description)}."
    else:
        message = f"{description} within {format_duration(max_wait)}."
    if last_value is not None:
        message += f" Last observed value was {last_value}."
    return message + f" Waited {elapsed_ms} ms."


def _decapitalize(text: str) -> str:
    return text[:1].lower() + text[1:]


def _to_seconds(nanoseconds: int) -> float:
    return nanoseconds / _NANOSECONDS_PER_SECOND


class ConditionAwaiter:
    """Polls a condition on the calling thread until it holds, the wait times out, or it fails.

    A wait goes through PENDING, DELAYING and EVALUATING and ends either MATCHED (run returns
    the matching result) or in one of the failure states (run raises a WaitFailure). All
    sleeping happens on the cancellation event, so cancelling it interrupts the wait at the
    next sleep boundary.
    """

    def __init__(self, settings: ConditionSettings) -> None:
        self.settings = settings
        self._cancellation = settings.cancellation if settings.cancellation is not None else CancellationEvent()
        self._start_ns = 0
        self._poll_count = 0

    def run(self, condition: Condition) -> ConditionResult:
        settings = self.settings
        label = settings.alias or condition.describe()
        with log_span("Waiting at most {} for {}", format_duration(settings.constraint.max_wait), label):
            if settings.is_catching_uncaught_exceptions:
                ensure_thread_excepthook_installed(settings.failure_channel)
            return self._await(condition)

    def _await(self, condition: Condition) -> ConditionResult:
        settings = self.settings
        constraint = settings.constraint
        min_wait_ns = constraint.min_wait.to_nanoseconds()
        hold_ns = constraint.hold_predicate_time.to_nanoseconds() if constraint.hold_predicate_time is not None else 0

        self._start_ns = time.monotonic_ns()
        self._poll_count = 0
        interval = resolve_poll_delay(settings.poll_delay, settings.poll_interval)
        self._sleep(interval)

        hold_started_ns: int | None = None
        last_description = condition.describe()
        last_value: str | None = None
        last_ignored_exception: BaseException | None = None
        while True:
            self._poll_count += 1
            self._check_fail_fast()
            self._notify_before_evaluation(condition)

            result: ConditionResult | None
            try:
                result = condition.evaluate()
            except Exception as e:
                if not settings.ignore_policy.should_ignore(e):
                    raise ConditionEvaluationError(e, settings.alias, self._poll_count, self._elapsed_ms()) from e
                logger.trace("Poll {} raised ignored {}: {}", self._poll_count, type(e).__name__, e)
                last_ignored_exception = e
                result = None

            self._check_failure_channel()

            now_ns = time.monotonic_ns()
            if result is None:
                hold_started_ns = None
                self._notify_exception_ignored(last_ignored_exception)
            else:
                last_description = result.description
                last_value = result.last_value
                last_ignored_exception = None
                logger.trace("Poll {}: {}", self._poll_count, result.description)
                self._notify_evaluated(result, interval)
                if result.is_matched:
                    if hold_started_ns is None:
                        hold_started_ns = now_ns
                    if now_ns - hold_started_ns >= hold_ns and now_ns - self._start_ns >= min_wait_ns:
                        return result
                else:
                    hold_started_ns = None

            if not constraint.max_wait.is_forever() and now_ns - self._start_ns >= constraint.max_wait.to_nanoseconds():
                self._time_out(last_description, last_value, last_ignored_exception)

            interval = settings.poll_interval.next(self._poll_count + 1, interval)
            self._sleep(interval)

    def _sleep(self, duration: Duration) -> None:
        """Sleep on the cancellation event, never past the maximum wait time."""
        sleep_ns = duration.to_nanoseconds()
        max_wait = self.settings.constraint.max_wait
        if not max_wait.is_forever():
            remaining_ns = max_wait.to_nanoseconds() - (time.monotonic_ns() - self._start_ns)
            sleep_ns = max(0, min(sleep_ns, remaining_ns))
        if self._cancellation.wait(_to_seconds(sleep_ns)):
            alias = f" for '{self.settings.alias}'" if self.settings.alias else ""
            raise WaitCancelledError(
                f"Wait{alias} was cancelled after {self._elapsed_ms()} ms and {self._poll_count} polls",
                self._poll_count,
                self._elapsed_ms(),
            )

    def _check_fail_fast(self) -> None:
        fail_fast = self.settings.fail_fast
        if fail_fast is not None and fail_fast.predicate():
            raise TerminalFailureError(fail_fast.reason, self._poll_count, self._elapsed_ms())

    def _check_failure_channel(self) -> None:
        settings = self.settings
        if not settings.is_catching_uncaught_exceptions:
            return
        failure = settings.failure_channel.consume_if_newer_than(self._start_ns)
        if failure is None:
            return
        if settings.ignore_policy.should_ignore(failure.exception):
            logger.trace("Ignoring uncaught {} from thread '{}'", type(failure.exception).__name__, failure.thread_name)
            return
        raise UncaughtBackgroundError(
            failure.exception,
            failure.thread_name,
            settings.alias,
            self._poll_count,
            self._elapsed_ms(),
        ) from failure.exception

    def _time_out(self, description: str, last_value: str | None, cause: BaseException | None) -> None:
        settings = self.settings
        elapsed_ms = self._elapsed_ms()
        message = build_timeout_message(settings.alias, settings.constraint.max_wait, description, last_value, elapsed_ms)
        self._notify("on_timeout", TimeoutEvent(message=message, elapsed_time=millis(elapsed_ms), alias=settings.alias))
        raise WaitTimedOutError(
            message,
            settings.alias,
            description,
            last_value,
            self._poll_count,
            elapsed_ms,
        ) from cause

    def _elapsed_ns(self) -> int:
        return time.monotonic_ns() - self._start_ns

    def _elapsed_ms(self) -> int:
        return self._elapsed_ns() // _NANOSECONDS_PER_MILLISECOND

    def _remaining(self) -> Duration:
        max_wait = self.settings.constraint.max_wait
        if max_wait.is_forever():
            return FOREVER
        return millis(max(0, max_wait.to_milliseconds() - self._elapsed_ms()))

    def _notify_before_evaluation(self, condition: Condition) -> None:
        if self.settings.listener is None:
            return
        event = StartEvaluationEvent(
            poll_count=self._poll_count,
            elapsed_time=millis(self._elapsed_ms()),
            remaining_time=self._remaining(),
            description=condition.describe(),
            alias=self.settings.alias,
        )
        self._notify("before_evaluation", event)

    def _notify_evaluated(self, result: ConditionResult, interval: Duration) -> None:
        if self.settings.listener is None:
            return
        record = EvaluationRecord(
            poll_count=self._poll_count,
            elapsed_time=millis(self._elapsed_ms()),
            remaining_time=self._remaining(),
            description=result.description,
            is_matched=result.is_matched,
            alias=self.settings.alias,
            poll_interval=interval,
            last_value=result.last_value,
        )
        self._notify("condition_evaluated", record)

    def _notify_exception_ignored(self, exception: BaseException | None) -> None:
        if self.settings.listener is None or exception is None:
            return
        event = IgnoredExceptionEvent(
            poll_count=self._poll_count,
            elapsed_time=millis(self._elapsed_ms()),
            remaining_time=self._remaining(),
            exception=exception,
            alias=self.settings.alias,
        )
        self._notify("exception_ignored", event)

    def _notify(self, callback_name: str, event: Any) -> None:
        listener = self.settings.listener
        if listener is None:
            return
        try:
            getattr(listener, callback_name)(event)
        except Exception as e:
            logger.opt(exception=e).warning(
                "Condition evaluation listener {} failed in {}; continuing the wait",
                type(listener).__name__,
                callback_name,
            )


def await_condition(
    condition: Condition,
    constraint: WaitConstraint = AT_MOST_TEN_SECONDS,
    poll_interval: PollInterval = FixedPollInterval(duration=ONE_HUNDRED_MILLISECONDS),
    poll_delay: Duration = SAME_AS_POLL_INTERVAL,
    ignore_policy: ExceptionIgnorePolicy = IGNORE_NOTHING,
    alias: str | None = None,
    listener: ConditionEvaluationListener | None = None,
) -> ConditionResult:
    """Block until the condition holds; raise a WaitFailure subclass otherwise."""
    settings = ConditionSettings(
        alias=alias,
        constraint=constraint,
        poll_interval=poll_interval,
        poll_delay=poll_delay,
        ignore_policy=ignore_policy,
        listener=listener,
    )
    return ConditionAwaiter(settings).run(condition)
