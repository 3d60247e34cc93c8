import threading
from abc import ABC
from abc import abstractmethod

from loguru import logger
from pydantic import ConfigDict
from pydantic import Field

from imbue.await_until.duration import Duration
from imbue.await_until.duration import TimeUnit
from imbue.await_until.frozen_model import FrozenModel


class StartEvaluationEvent(FrozenModel):
    """Sent right before the condition is evaluated."""

    poll_count: int = Field(description="1-based number of the poll that is about to happen")
    elapsed_time: Duration = Field(description="Time since the wait started")
    remaining_time: Duration = Field(description="Time left until the maximum wait; FOREVER when unbounded")
    description: str = Field(description="Static description of the condition")
    alias: str | None = Field(default=None, description="Alias of the wait statement, if any")


class EvaluationRecord(FrozenModel):
    """Outcome of one poll, as seen by listeners and used for timeout messages."""

    poll_count: int = Field(description="1-based number of this poll")
    elapsed_time: Duration = Field(description="Time since the wait started")
    remaining_time: Duration = Field(description="Time left until the maximum wait; FOREVER when unbounded")
    description: str = Field(description="Description produced by this evaluation")
    is_matched: bool = Field(description="Whether the condition held on this poll")
    alias: str | None = Field(default=None, description="Alias of the wait statement, if any")
    poll_interval: Duration = Field(description="Interval that was slept before this poll")
    last_value: str | None = Field(default=None, description="Rendering of the value that was examined, if any")


class IgnoredExceptionEvent(FrozenModel):
    """Sent when the condition raised an exception that the ignore policy suppressed."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    poll_count: int = Field(description="1-based number of the poll that raised")
    elapsed_time: Duration = Field(description="Time since the wait started")
    remaining_time: Duration = Field(description="Time left until the maximum wait; FOREVER when unbounded")
    exception: BaseException = Field(description="The exception that was ignored")
    alias: str | None = Field(default=None, description="Alias of the wait statement, if any")


class TimeoutEvent(FrozenModel):
    """Sent once when the wait gives up."""

    message: str = Field(description="The message the timeout error is raised with")
    elapsed_time: Duration = Field(description="Time since the wait started")
    alias: str | None = Field(default=None, description="Alias of the wait statement, if any")


class ConditionEvaluationListener(ABC):
    """Observer of a wait. Exceptions raised by any callback are logged and otherwise ignored."""

    def before_evaluation(self, event: StartEvaluationEvent) -> None:
        pass

    @abstractmethod
    def condition_evaluated(self, record: EvaluationRecord) -> None: ...

    def exception_ignored(self, event: IgnoredExceptionEvent) -> None:
        pass

    def on_timeout(self, event: TimeoutEvent) -> None:
        pass


def _in_unit(duration: Duration, time_unit: TimeUnit) -> str:
    if duration.is_forever():
        return "forever"
    return f"{duration.to_nanoseconds() // time_unit.nanoseconds} {time_unit.value.lower()}"


class ConditionEvaluationLogger(ConditionEvaluationListener):
    """Logs every evaluation through loguru, with times expressed in a single unit."""

    def __init__(self, time_unit: TimeUnit = TimeUnit.MILLISECONDS, level: str = "INFO") -> None:
        self.time_unit = time_unit
        self.level = level

    def before_evaluation(self, event: StartEvaluationEvent) -> None:
        logger.log(self.level, "Starting evaluation")

    def condition_evaluated(self, record: EvaluationRecord) -> None:
        elapsed = _in_unit(record.elapsed_time, self.time_unit)
        remaining = _in_unit(record.remaining_time, self.time_unit)
        if record.is_matched:
            logger.log(
                self.level,
                "{} after {} (remaining time {}, last poll interval was {})",
                record.description,
                elapsed,
                remaining,
                record.poll_interval,
            )
        else:
            logger.log(
                self.level,
                "{} (elapsed time {}, remaining time {} (last poll interval was {}))",
                record.description,
                elapsed,
                remaining,
                record.poll_interval,
            )

    def exception_ignored(self, event: IgnoredExceptionEvent) -> None:
        logger.log(
            self.level,
            "Ignored {}: {} (elapsed time {})",
            type(event.exception).__name__,
            event.exception,
            _in_unit(event.elapsed_time, self.time_unit),
        )

    def on_timeout(self, event: TimeoutEvent) -> None:
        logger.log(self.level, "{}", event.message)


class CollectingListener(ConditionEvaluationListener):
    """Keeps every event it receives, in order. Safe to read from other threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[StartEvaluationEvent | EvaluationRecord | IgnoredExceptionEvent | TimeoutEvent] = []

    def before_evaluation(self, event: StartEvaluationEvent) -> None:
        self._append(event)

    def condition_evaluated(self, record: EvaluationRecord) -> None:
        self._append(record)

    def exception_ignored(self, event: IgnoredExceptionEvent) -> None:
        self._append(event)

    def on_timeout(self, event: TimeoutEvent) -> None:
        self._append(event)

    def _append(self, event: StartEvaluationEvent | EvaluationRecord | IgnoredExceptionEvent | TimeoutEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[StartEvaluationEvent | EvaluationRecord | IgnoredExceptionEvent | TimeoutEvent]:
        with self._lock:
            return list(self._events)

    @property
    def records(self) -> list[EvaluationRecord]:
        return [event for event in self.events if isinstance(event, EvaluationRecord)]

    @property
    def ignored_exceptions(self) -> list[BaseException]:
        return [event.exception for event in self.events if isinstance(event, IgnoredExceptionEvent)]

    @property
    def timeouts(self) -> list[TimeoutEvent]:
        return [event for event in self.events if isinstance(event, TimeoutEvent)]
