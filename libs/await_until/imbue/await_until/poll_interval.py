from abc import ABC
from abc import abstractmethod
from collections.abc import Callable

from pydantic import Field
from pydantic import model_validator

from imbue.await_until.duration import Duration
from imbue.await_until.duration import ONE_HUNDRED_MILLISECONDS
from imbue.await_until.duration import TimeUnit
from imbue.await_until.errors import InvalidConfigurationError
from imbue.await_until.frozen_model import FrozenModel
from imbue.await_until.pure import pure


class PollInterval(FrozenModel, ABC):
    """Strategy deciding how long to sleep before the next poll.

    Implementations must be pure functions of (poll_count, previous_duration): the same
    inputs always produce the same output, and no state is kept between calls.
    """

    @abstractmethod
    def next(self, poll_count: int, previous_duration: Duration | None) -> Duration:
        """Return the delay before poll number poll_count.

        previous_duration is the delay used before the previous poll, or None when the
        engine asks before any delay has been used.
        """
        ...


class FixedPollInterval(PollInterval):
    """Sleep the same amount of time between every poll."""

    duration: Duration = Field(description="The delay used between every poll")

    @model_validator(mode="after")
    def _validate_finite(self) -> "FixedPollInterval":
        if self.duration.is_forever():
            raise InvalidConfigurationError("A fixed poll interval cannot be FOREVER")
        if self.duration.is_same_as_poll_interval():
            raise InvalidConfigurationError("A fixed poll interval cannot be SAME_AS_POLL_INTERVAL")
        return self

    def next(self, poll_count: int, previous_duration: Duration | None) -> Duration:
        return self.duration


class FibonacciPollInterval(PollInterval):
    """Back off along the Fibonacci sequence: fib(offset + poll_count) units."""

    offset: int = Field(default=0, description="Shift into the Fibonacci sequence; must be >= -1")
    unit: TimeUnit = Field(default=TimeUnit.MILLISECONDS, description="Unit each Fibonacci number is expressed in")

    @model_validator(mode="before")
    @classmethod
    def _validate_offset_and_unit(cls, data: object) -> object:
        if isinstance(data, dict):
            offset = data.get("offset", 0)
            if isinstance(offset, int) and offset < -1:
                raise InvalidConfigurationError(f"Fibonacci offset must be greater than or equal to -1, got {offset}")
            if "unit" in data and data["unit"] is None:
                raise InvalidConfigurationError("Time unit cannot be None")
        return data

    def next(self, poll_count: int, previous_duration: Duration | None) -> Duration:
        return Duration.of(fibonacci_number(self.offset + poll_count), self.unit)


class IteratePollInterval(PollInterval):
    """Derive each delay from the previous one with a caller-supplied function.

    The function receives start_duration on the very first call and the real previous
    delay afterwards, which makes e.g. capped exponential backoff a one-liner.
    """

    function: Callable[[Duration], Duration] = Field(description="Maps the previous delay to the next one")
    start_duration: Duration = Field(
        default=ONE_HUNDRED_MILLISECONDS,
        description="Fed to the function when there is no previous delay yet",
    )

    def next(self, poll_count: int, previous_duration: Duration | None) -> Duration:
        return self.function(previous_duration if previous_duration is not None else self.start_duration)


@pure
def fibonacci_number(n: int) -> int:
    """Return fib(n) with fib(0) = 0 and fib(1) = 1, computed iteratively."""
    if n < 0:
        raise InvalidConfigurationError(f"Fibonacci is undefined for negative n ({n})")
    previous, current = 0, 1
    for _ in range(n):
        previous, current = current, previous + current
    return previous


def fixed(duration: Duration) -> FixedPollInterval:
    return FixedPollInterval(duration=duration)


def fibonacci(offset: int = 0, unit: TimeUnit = TimeUnit.MILLISECONDS) -> FibonacciPollInterval:
    return FibonacciPollInterval(offset=offset, unit=unit)


def iterative(
    function: Callable[[Duration], Duration],
    start_duration: Duration = ONE_HUNDRED_MILLISECONDS,
) -> IteratePollInterval:
    return IteratePollInterval(function=function, start_duration=start_duration)


def as_poll_interval(value: PollInterval | Duration) -> PollInterval:
    """Accept either a strategy or a plain duration (which becomes a fixed interval)."""
    if isinstance(value, PollInterval):
        return value
    return fixed(value)
