import operator
import re
from collections.abc import Callable
from enum import StrEnum
from enum import auto
from typing import Any
from typing import Final

from pydantic import Field
from pydantic import model_validator

from imbue.await_until.errors import InvalidConfigurationError
from imbue.await_until.frozen_model import FrozenModel
from imbue.await_until.pure import pure


class TimeUnit(StrEnum):
    """Granularity of a Duration, from nanoseconds up to days."""

    @staticmethod
    def _generate_next_value_(
        name: str,
        start: int,
        count: int,
        last_values: list[str],
    ) -> str:
        return name.upper()

    NANOSECONDS = auto()
    MICROSECONDS = auto()
    MILLISECONDS = auto()
    SECONDS = auto()
    MINUTES = auto()
    HOURS = auto()
    DAYS = auto()

    @property
    def nanoseconds(self) -> int:
        return _NANOSECONDS_PER_UNIT[self]


_NANOSECONDS_PER_UNIT: Final[dict[TimeUnit, int]] = {
    TimeUnit.NANOSECONDS: 1,
    TimeUnit.MICROSECONDS: 1_000,
    TimeUnit.MILLISECONDS: 1_000_000,
    TimeUnit.SECONDS: 1_000_000_000,
    TimeUnit.MINUTES: 60 * 1_000_000_000,
    TimeUnit.HOURS: 3600 * 1_000_000_000,
    TimeUnit.DAYS: 86400 * 1_000_000_000,
}

# Coarsest first, so normalisation picks the most readable unit.
_UNITS_BY_SIZE_DESCENDING: Final[tuple[TimeUnit, ...]] = tuple(
    sorted(TimeUnit, key=lambda unit: unit.nanoseconds, reverse=True)
)


class DurationKind(StrEnum):
    """Whether a Duration is a real length of time or one of the two sentinels."""

    FINITE = "FINITE"
    FOREVER = "FOREVER"
    SAME_AS_POLL_INTERVAL = "SAME_AS_POLL_INTERVAL"


class Duration(FrozenModel):
    """An immutable, non-negative length of time.

    Two sentinels exist besides finite values: FOREVER (no upper bound, greater than every
    finite duration) and SAME_AS_POLL_INTERVAL (a poll delay that is resolved lazily to the
    first poll interval). Equality and ordering compare millisecond-normalised values, so
    sub-millisecond differences are invisible to them.
    """

    amount: int = Field(default=0, description="Number of units; never negative")
    unit: TimeUnit = Field(default=TimeUnit.MILLISECONDS, description="Unit the amount is expressed in")
    kind: DurationKind = Field(default=DurationKind.FINITE, description="Finite value or sentinel")

    @model_validator(mode="before")
    @classmethod
    def _reject_negative_amount_and_missing_unit(cls, data: Any) -> Any:
        if isinstance(data, dict):
            if "unit" in data and data["unit"] is None:
                raise InvalidConfigurationError("Time unit cannot be None")
            amount = data.get("amount", 0)
            if amount is None:
                raise InvalidConfigurationError("Duration amount cannot be None")
            if isinstance(amount, (int, float)) and amount < 0:
                raise InvalidConfigurationError(f"Duration amount must be >= 0, got {amount}")
        return data

    @classmethod
    def of(cls, amount: int, unit: TimeUnit) -> "Duration":
        return cls(amount=amount, unit=unit)

    @classmethod
    def from_nanoseconds(cls, nanoseconds: int) -> "Duration":
        """Build a duration from nanoseconds, expressed in the coarsest unit that represents it exactly."""
        if nanoseconds == 0:
            return cls(amount=0, unit=TimeUnit.MILLISECONDS)
        for unit in _UNITS_BY_SIZE_DESCENDING:
            if nanoseconds % unit.nanoseconds == 0:
                return cls(amount=nanoseconds // unit.nanoseconds, unit=unit)
        raise AssertionError("nanoseconds always divide evenly")

    def is_forever(self) -> bool:
        return self.kind == DurationKind.FOREVER

    def is_same_as_poll_interval(self) -> bool:
        return self.kind == DurationKind.SAME_AS_POLL_INTERVAL

    def is_finite(self) -> bool:
        return self.kind == DurationKind.FINITE

    def is_zero(self) -> bool:
        """Whether the amount is exactly zero.

        Unlike ==, which compares whole milliseconds, a sub-millisecond amount is not zero here,
        so that arithmetic keeps it.
        """
        return self.is_finite() and self.amount == 0

    def to_nanoseconds(self) -> int:
        self._require_finite("convert")
        return self.amount * self.unit.nanoseconds

    def to_milliseconds(self) -> int:
        """Whole milliseconds, rounded down."""
        return self.to_nanoseconds() // _NANOSECONDS_PER_UNIT[TimeUnit.MILLISECONDS]

    def to_seconds(self) -> float:
        return self.to_nanoseconds() / _NANOSECONDS_PER_UNIT[TimeUnit.SECONDS]

    def plus(self, other: "Duration") -> "Duration":
        self._require_resolved("add")
        other._require_resolved("add")
        if other.is_zero():
            return self
        if self.is_zero():
            return other
        if self.is_forever() or other.is_forever():
            return FOREVER
        return _apply_in_finer_unit(self, other, operator.add)

    def minus(self, other: "Duration") -> "Duration":
        self._require_resolved("subtract")
        other._require_resolved("subtract")
        if self.is_forever():
            return FOREVER
        if other.is_forever():
            return ZERO
        if other.is_zero():
            return self
        return _apply_in_finer_unit(self, other, operator.sub)

    def multiply(self, factor: int) -> "Duration":
        self._require_resolved("multiply")
        if factor < 0:
            raise InvalidConfigurationError(f"Cannot multiply a duration by a negative factor ({factor})")
        if self.is_zero() or factor == 0:
            return ZERO
        if self.is_forever():
            return FOREVER
        return Duration.of(self.amount * factor, self.unit)

    def divide(self, divisor: int) -> "Duration":
        self._require_resolved("divide")
        if divisor <= 0:
            raise InvalidConfigurationError(f"Cannot divide a duration by {divisor}")
        if self.is_forever():
            return FOREVER
        if self.amount % divisor == 0:
            return Duration.of(self.amount // divisor, self.unit)
        return Duration.from_nanoseconds(self.to_nanoseconds() // divisor)

    def _require_finite(self, action: str) -> None:
        if not self.is_finite():
            raise InvalidConfigurationError(f"Cannot {action} {format_duration(self)}: it has no finite length")

    def _require_resolved(self, action: str) -> None:
        if self.is_same_as_poll_interval():
            raise InvalidConfigurationError(
                f"Cannot {action} the SAME_AS_POLL_INTERVAL sentinel before it is resolved to a poll interval"
            )

    def _comparison_key(self) -> tuple[int, int]:
        self._require_resolved("compare")
        if self.is_forever():
            return (1, 0)
        return (0, self.to_milliseconds())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Duration):
            return NotImplemented
        if self.kind != other.kind:
            return False
        if not self.is_finite():
            return True
        return self.to_milliseconds() == other.to_milliseconds()

    def __hash__(self) -> int:
        if not self.is_finite():
            return hash(self.kind)
        return hash((self.kind, self.to_milliseconds()))

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Duration):
            return NotImplemented
        return self._comparison_key() < other._comparison_key()

    def __le__(self, other: object) -> bool:
        if not isinstance(other, Duration):
            return NotImplemented
        return self._comparison_key() <= other._comparison_key()

    def __gt__(self, other: object) -> bool:
        if not isinstance(other, Duration):
            return NotImplemented
        return self._comparison_key() > other._comparison_key()

    def __ge__(self, other: object) -> bool:
        if not isinstance(other, Duration):
            return NotImplemented
        return self._comparison_key() >= other._comparison_key()

    def __str__(self) -> str:
        return format_duration(self)


@pure
def _apply_in_finer_unit(lhs: Duration, rhs: Duration, operation: Callable[[int, int], int]) -> Duration:
    finer = lhs.unit if lhs.unit.nanoseconds <= rhs.unit.nanoseconds else rhs.unit
    lhs_amount = lhs.to_nanoseconds() // finer.nanoseconds
    rhs_amount = rhs.to_nanoseconds() // finer.nanoseconds
    return Duration.of(operation(lhs_amount, rhs_amount), finer)


def millis(amount: int) -> Duration:
    return Duration.of(amount, TimeUnit.MILLISECONDS)


def seconds(amount: int) -> Duration:
    return Duration.of(amount, TimeUnit.SECONDS)


FOREVER: Final[Duration] = Duration(kind=DurationKind.FOREVER)
SAME_AS_POLL_INTERVAL: Final[Duration] = Duration(kind=DurationKind.SAME_AS_POLL_INTERVAL)
ZERO: Final[Duration] = millis(0)
ONE_MILLISECOND: Final[Duration] = millis(1)
ONE_HUNDRED_MILLISECONDS: Final[Duration] = millis(100)
TWO_HUNDRED_MILLISECONDS: Final[Duration] = millis(200)
FIVE_HUNDRED_MILLISECONDS: Final[Duration] = millis(500)
ONE_SECOND: Final[Duration] = seconds(1)
TWO_SECONDS: Final[Duration] = seconds(2)
FIVE_SECONDS: Final[Duration] = seconds(5)
TEN_SECONDS: Final[Duration] = seconds(10)
ONE_MINUTE: Final[Duration] = Duration.of(1, TimeUnit.MINUTES)
TWO_MINUTES: Final[Duration] = Duration.of(2, TimeUnit.MINUTES)
FIVE_MINUTES: Final[Duration] = Duration.of(5, TimeUnit.MINUTES)
TEN_MINUTES: Final[Duration] = Duration.of(10, TimeUnit.MINUTES)


@pure
def format_duration(duration: Duration) -> str:
    """Render a duration for humans, e.g. '10 seconds', '1 millisecond' or 'forever'."""
    if duration.is_forever():
        return "forever"
    if duration.is_same_as_poll_interval():
        return "the poll interval"
    unit_name = duration.unit.value.lower()
    if duration.amount == 1:
        unit_name = unit_name[:-1]
    return f"{duration.amount} {unit_name}"


_DURATION_SUFFIXES: Final[dict[str, TimeUnit]] = {
    "ns": TimeUnit.NANOSECONDS,
    "us": TimeUnit.MICROSECONDS,
    "ms": TimeUnit.MILLISECONDS,
    "s": TimeUnit.SECONDS,
    "m": TimeUnit.MINUTES,
    "h": TimeUnit.HOURS,
    "d": TimeUnit.DAYS,
}

_DURATION_COMPONENT_PATTERN = re.compile(r"(\d+)\s*(ns|us|ms|s|m|h|d)", re.IGNORECASE)
_DURATION_PATTERN = re.compile(r"^(?:\s*\d+\s*(?:ns|us|ms|s|m|h|d))+\s*$", re.IGNORECASE)


@pure
def parse_duration(text: str) -> Duration:
    """Parse a configuration string into a Duration.

    Accepts 'forever', plain integers (treated as milliseconds), and combinations of
    suffixed components: ns, us, ms, s, m, h, d.
    Examples: '250', '250ms', '10s', '1m30s', '2h', '1d12h', 'forever'.
    """
    stripped = text.strip()
    if not stripped:
        raise InvalidConfigurationError(f"Invalid duration: '{text}' (empty string)")

    if stripped.lower() == "forever":
        return FOREVER

    if stripped.isdigit():
        return millis(int(stripped))

    if _DURATION_PATTERN.match(stripped) is None:
        raise InvalidConfigurationError(
            f"Invalid duration: '{text}'. Expected 'forever', a number of milliseconds, "
            f"or a value like '250ms', '10s', '1m30s', '2h'."
        )

    total_nanoseconds = 0
    for amount, suffix in _DURATION_COMPONENT_PATTERN.findall(stripped):
        total_nanoseconds += int(amount) * _DURATION_SUFFIXES[suffix.lower()].nanoseconds
    return Duration.from_nanoseconds(total_nanoseconds)
