from abc import ABC
from abc import abstractmethod
from collections.abc import Callable
from typing import Any
from typing import Final
from typing import Protocol
from typing import TypeVar

from pydantic import Field
from pydantic import PrivateAttr

from imbue.await_until.frozen_model import FrozenModel
from imbue.await_until.frozen_model import MutableModel
from imbue.await_until.pure import pure

T_contra = TypeVar("T_contra", contravariant=True)

_MAX_VALUE_REPR_LENGTH: Final[int] = 200


class ConditionResult(FrozenModel):
    """Outcome of a single evaluation of a condition."""

    is_matched: bool = Field(description="Whether the condition held on this evaluation")
    description: str = Field(description="Human-readable account of this evaluation")
    last_value: str | None = Field(default=None, description="Rendering of the value that was examined, if any")


class Condition(ABC):
    """Something the engine can evaluate repeatedly until it holds.

    evaluate() may raise; whether that fails the wait is up to the ignore policy. Apart from
    raising, evaluation must not have side effects the engine needs to know about.
    """

    @abstractmethod
    def describe(self) -> str:
        """Describe the condition before it has been evaluated."""
        ...

    @abstractmethod
    def evaluate(self) -> ConditionResult: ...


class Matcher(Protocol[T_contra]):
    """Boolean predicate over a value that can explain itself."""

    def matches(self, value: T_contra) -> bool: ...

    def describe(self) -> str: ...

    def describe_mismatch(self, value: T_contra) -> str: ...


class PredicateMatcher(FrozenModel):
    """Matcher built from a plain predicate and a description of what it expects."""

    predicate: Callable[[Any], bool] = Field(description="Returns True for acceptable values")
    description: str = Field(description="What an acceptable value looks like, e.g. 'equal to 5'")

    def matches(self, value: Any) -> bool:
        return bool(self.predicate(value))

    def describe(self) -> str:
        return self.description

    def describe_mismatch(self, value: Any) -> str:
        return f"was {format_value(value)}"


def matches_predicate(predicate: Callable[[Any], bool], description: str) -> PredicateMatcher:
    return PredicateMatcher(predicate=predicate, description=description)


def equal_to(expected: Any) -> PredicateMatcher:
    return PredicateMatcher(predicate=lambda value: value == expected, description=f"equal to {format_value(expected)}")


@pure
def format_value(value: Any) -> str:
    """repr() of a value, truncated so that huge values do not flood failure messages."""
    text = repr(value)
    if len(text) > _MAX_VALUE_REPR_LENGTH:
        return text[: _MAX_VALUE_REPR_LENGTH - 3] + "..."
    return text


@pure
def describe_callable(function: Callable[..., Any]) -> str:
    return getattr(function, "__qualname__", None) or getattr(function, "__name__", None) or repr(function)


class CallableCondition(Condition):
    """Condition backed by a zero-argument callable returning something truthy once satisfied."""

    def __init__(self, predicate: Callable[[], Any], description: str | None = None) -> None:
        self._predicate = predicate
        self._description = description or f"Condition defined as {describe_callable(predicate)}"

    def describe(self) -> str:
        return self._description

    def evaluate(self) -> ConditionResult:
        result = self._predicate()
        if result:
            return ConditionResult(is_matched=True, description=f"{self._description} returned {format_value(result)}")
        return ConditionResult(
            is_matched=False,
            description=f"{self._description} was not fulfilled",
            last_value=format_value(result),
        )


class MatcherCondition(MutableModel, Condition):
    """Condition that supplies a value and checks it with a matcher.

    The last supplied value is remembered so that the wait can hand it back to the caller.
    """

    supplier: Callable[[], Any] = Field(description="Produces the value to examine on every poll")
    matcher: Any = Field(description="Matcher the supplied value must satisfy")
    _last_value: Any = PrivateAttr(default=None)
    _has_value: bool = PrivateAttr(default=False)

    @property
    def last_value(self) -> Any:
        return self._last_value

    @property
    def has_value(self) -> bool:
        return self._has_value

    def describe(self) -> str:
        return f"{self._supplier_description()} expected {self.matcher.describe()}"

    def evaluate(self) -> ConditionResult:
        value = self.supplier()
        self._last_value = value
        self._has_value = True
        if self.matcher.matches(value):
            return ConditionResult(
                is_matched=True,
                description=f"{self._supplier_description()} reached its end value of {self.matcher.describe()}",
                last_value=format_value(value),
            )
        mismatch = self.matcher.describe_mismatch(value) or f"was {format_value(value)}"
        return ConditionResult(
            is_matched=False,
            description=f"{self.describe()} but {mismatch}",
            last_value=format_value(value),
        )

    def _supplier_description(self) -> str:
        return f"Callable {describe_callable(self.supplier)}"


class AssertionCondition(Condition):
    """Condition that holds once a callable stops raising AssertionError.

    Only AssertionError counts as "not yet"; any other exception is handed to the ignore
    policy like an exception from any other condition.
    """

    def __init__(self, assertion: Callable[[], object]) -> None:
        self._assertion = assertion

    def describe(self) -> str:
        return f"Assertion condition defined as {describe_callable(self._assertion)}"

    def evaluate(self) -> ConditionResult:
        try:
            self._assertion()
        except AssertionError as e:
            message = str(e).rstrip(".") or "raised AssertionError"
            return ConditionResult(is_matched=False, description=f"{self.describe()} {message}")
        return ConditionResult(is_matched=True, description=f"{self.describe()} reached its end value")
