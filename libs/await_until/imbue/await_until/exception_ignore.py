from abc import ABC
from abc import abstractmethod
from collections.abc import Callable
from typing import Final

from pydantic import Field
from pydantic import model_validator

from imbue.await_until.errors import InvalidConfigurationError
from imbue.await_until.frozen_model import FrozenModel


class ExceptionIgnoreRule(FrozenModel, ABC):
    """One reason to treat an exception raised during a poll as "not matched yet"."""

    @abstractmethod
    def matches(self, exception: BaseException) -> bool: ...


class IgnoreByType(ExceptionIgnoreRule):
    """Ignore exceptions of the given types (subclasses included unless is_exact is set)."""

    exception_types: tuple[type[BaseException], ...] = Field(description="Exception classes to ignore")
    is_exact: bool = Field(default=False, description="Only ignore exact class matches, not subclasses")

    @model_validator(mode="after")
    def _validate_not_empty(self) -> "IgnoreByType":
        if len(self.exception_types) == 0:
            raise InvalidConfigurationError("IgnoreByType needs at least one exception type")
        return self

    def matches(self, exception: BaseException) -> bool:
        if self.is_exact:
            return type(exception) in self.exception_types
        return isinstance(exception, self.exception_types)


class IgnoreByPredicate(ExceptionIgnoreRule):
    """Ignore exceptions for which a caller-supplied predicate returns True."""

    predicate: Callable[[BaseException], bool] = Field(description="Returns True for exceptions to ignore")

    def matches(self, exception: BaseException) -> bool:
        return bool(self.predicate(exception))


class ExceptionIgnorePolicy(FrozenModel):
    """Decides, per exception, whether a poll should count as a plain mismatch instead of a failure.

    Rules combine with logical OR. A policy without rules ignores nothing.
    """

    rules: tuple[ExceptionIgnoreRule, ...] = Field(default=(), description="Rules combined with logical OR")

    def should_ignore(self, exception: BaseException) -> bool:
        return any(rule.matches(exception) for rule in self.rules)

    def with_rule(self, rule: ExceptionIgnoreRule) -> "ExceptionIgnorePolicy":
        return ExceptionIgnorePolicy(rules=self.rules + (rule,))

    def ignoring_types(self, *exception_types: type[BaseException]) -> "ExceptionIgnorePolicy":
        return self.with_rule(IgnoreByType(exception_types=exception_types))

    def ignoring_exact_types(self, *exception_types: type[BaseException]) -> "ExceptionIgnorePolicy":
        return self.with_rule(IgnoreByType(exception_types=exception_types, is_exact=True))

    def ignoring_matching(self, predicate: Callable[[BaseException], bool]) -> "ExceptionIgnorePolicy":
        return self.with_rule(IgnoreByPredicate(predicate=predicate))

    def ignoring_all(self) -> "ExceptionIgnorePolicy":
        return self.ignoring_types(Exception)


IGNORE_NOTHING: Final[ExceptionIgnorePolicy] = ExceptionIgnorePolicy()
IGNORE_ALL_EXCEPTIONS: Final[ExceptionIgnorePolicy] = IGNORE_NOTHING.ignoring_all()
