from collections.abc import Callable
from typing import Any

from pydantic import ConfigDict
from pydantic import Field

from imbue.await_until.awaiter import ConditionAwaiter
from imbue.await_until.awaiter import ConditionSettings
from imbue.await_until.awaiter import FailFastCondition
from imbue.await_until.condition import AssertionCondition
from imbue.await_until.condition import CallableCondition
from imbue.await_until.condition import Condition
from imbue.await_until.condition import ConditionResult
from imbue.await_until.condition import Matcher
from imbue.await_until.condition import MatcherCondition
from imbue.await_until.condition import describe_callable
from imbue.await_until.condition import matches_predicate
from imbue.await_until.config import AwaitContext
from imbue.await_until.config import DEFAULT_CONTEXT
from imbue.await_until.duration import Duration
from imbue.await_until.duration import FOREVER
from imbue.await_until.exception_ignore import IGNORE_ALL_EXCEPTIONS
from imbue.await_until.exception_ignore import IGNORE_NOTHING
from imbue.await_until.frozen_model import FrozenModel
from imbue.await_until.listener import ConditionEvaluationListener
from imbue.await_until.poll_interval import PollInterval
from imbue.await_until.poll_interval import as_poll_interval


class ConditionFactory(FrozenModel):
    """Immutable builder for a single wait statement.

    Every chained call returns a new factory, so a partially configured factory can be
    shared and extended in different directions. The terminal until_* methods run the wait.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    context: AwaitContext = Field(description="Context providing the failure channel and cancellation root")
    settings: ConditionSettings = Field(description="Settings the wait will run with")
    external_cancellation: Any = Field(
        default=None,
        description="Optional event (anything with is_set/wait) that cancels the wait when set",
    )

    def _with_settings(self, **changes: Any) -> "ConditionFactory":
        return self.evolve(settings=self.settings.evolve(**changes))

    def alias(self, alias: str) -> "ConditionFactory":
        return self._with_settings(alias=alias)

    def at_most(self, timeout: Duration) -> "ConditionFactory":
        return self._with_settings(constraint=self.settings.constraint.with_max_wait_time(timeout))

    def at_least(self, timeout: Duration) -> "ConditionFactory":
        return self._with_settings(constraint=self.settings.constraint.with_min_wait_time(timeout))

    def between(self, at_least: Duration, at_most: Duration) -> "ConditionFactory":
        return self._with_settings(constraint=self.settings.constraint.evolve(min_wait=at_least, max_wait=at_most))

    def forever(self) -> "ConditionFactory":
        return self.at_most(FOREVER)

    def during(self, hold_predicate_time: Duration) -> "ConditionFactory":
        """Require the condition to stay true for this long before the wait succeeds."""
        return self._with_settings(constraint=self.settings.constraint.with_hold_predicate_time(hold_predicate_time))

    def poll_interval(self, poll_interval: PollInterval | Duration) -> "ConditionFactory":
        return self._with_settings(poll_interval=as_poll_interval(poll_interval))

    def poll_delay(self, poll_delay: Duration) -> "ConditionFactory":
        return self._with_settings(poll_delay=poll_delay)

    def ignore_exceptions(self) -> "ConditionFactory":
        return self._with_settings(ignore_policy=IGNORE_ALL_EXCEPTIONS)

    def ignore_exception(self, *exception_types: type[BaseException]) -> "ConditionFactory":
        """Ignore the given types and their subclasses, in addition to what is ignored already."""
        return self._with_settings(ignore_policy=self.settings.ignore_policy.ignoring_types(*exception_types))

    def ignore_exceptions_matching(self, predicate: Callable[[BaseException], bool]) -> "ConditionFactory":
        return self._with_settings(ignore_policy=self.settings.ignore_policy.ignoring_matching(predicate))

    def ignore_no_exceptions(self) -> "ConditionFactory":
        return self._with_settings(ignore_policy=IGNORE_NOTHING)

    def catch_uncaught_exceptions(self) -> "ConditionFactory":
        return self._with_settings(is_catching_uncaught_exceptions=True)

    def dont_catch_uncaught_exceptions(self) -> "ConditionFactory":
        return self._with_settings(is_catching_uncaught_exceptions=False)

    def condition_evaluation_listener(self, listener: ConditionEvaluationListener | None) -> "ConditionFactory":
        return self._with_settings(listener=listener)

    def fail_fast(self, predicate: Callable[[], bool], reason: str = "Fail fast condition triggered") -> "ConditionFactory":
        return self._with_settings(fail_fast=FailFastCondition(predicate=predicate, reason=reason))

    def cancel_on(self, event: Any) -> "ConditionFactory":
        return self.evolve(external_cancellation=event)

    def until(self, predicate: Callable[[], Any]) -> None:
        """Wait until the predicate returns something truthy."""
        self.until_condition(CallableCondition(predicate))

    def until_matches(self, supplier: Callable[[], Any], matcher: Matcher[Any] | Callable[[Any], bool]) -> Any:
        """Wait until the supplied value satisfies the matcher and return that value.

        A plain callable is accepted in place of a matcher and is described by its name.
        """
        if not hasattr(matcher, "matches"):
            matcher = matches_predicate(matcher, f"to satisfy {describe_callable(matcher)}")
        condition = MatcherCondition(supplier=supplier, matcher=matcher)
        self.until_condition(condition)
        return condition.last_value

    def until_asserted(self, assertion: Callable[[], object]) -> None:
        """Wait until the assertion stops raising AssertionError."""
        self.until_condition(AssertionCondition(assertion))

    def until_condition(self, condition: Condition) -> ConditionResult:
        settings = self.settings
        if settings.cancellation is None:
            settings = settings.evolve(cancellation=self.context.new_cancellation(self.external_cancellation))
        return ConditionAwaiter(settings).run(condition)


def await_(alias: str | None = None, context: AwaitContext | None = None) -> ConditionFactory:
    """Start a wait statement using the defaults of the context (DEFAULT_CONTEXT unless given)."""
    return (context if context is not None else DEFAULT_CONTEXT).await_(alias)


def wait_at_most(timeout: Duration, context: AwaitContext | None = None) -> ConditionFactory:
    return await_(context=context).at_most(timeout)
