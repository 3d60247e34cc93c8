import threading

import pytest

from imbue.await_until.condition import equal_to
from imbue.await_until.condition_factory import ConditionFactory
from imbue.await_until.condition_factory import await_
from imbue.await_until.condition_factory import wait_at_most
from imbue.await_until.config import AwaitContext
from imbue.await_until.config import DEFAULT_CONTEXT
from imbue.await_until.duration import FOREVER
from imbue.await_until.duration import ONE_SECOND
from imbue.await_until.duration import TEN_SECONDS
from imbue.await_until.duration import ZERO
from imbue.await_until.duration import millis
from imbue.await_until.duration import seconds
from imbue.await_until.errors import ConditionEvaluationError
from imbue.await_until.errors import InvalidConfigurationError
from imbue.await_until.errors import TerminalFailureError
from imbue.await_until.errors import UncaughtBackgroundError
from imbue.await_until.errors import WaitCancelledError
from imbue.await_until.errors import WaitTimedOutError
from imbue.await_until.exception_ignore import IGNORE_ALL_EXCEPTIONS
from imbue.await_until.listener import CollectingListener
from imbue.await_until.poll_interval import fibonacci
from imbue.await_until.poll_interval import fixed
from imbue.await_until.test_utils import set_after
from imbue.await_until.test_utils import wait_interval
from imbue.await_until.thread_utils import ObservableThread


class _Counter:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0

    def increment(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value


def _fast(context: AwaitContext) -> ConditionFactory:
    return await_(context=context).poll_delay(ZERO).poll_interval(millis(10))


def test_await_uses_context_defaults(await_context: AwaitContext) -> None:
    """A new factory starts from the context's current defaults."""
    await_context.set(default_timeout=seconds(3), poll_interval=fibonacci())
    factory = await_("named", context=await_context)
    assert factory.settings.alias == "named"
    assert factory.settings.constraint.max_wait == seconds(3)
    assert factory.settings.poll_interval == fibonacci()
    assert factory.context is await_context


def test_await_without_context_uses_default_context() -> None:
    """Module-level waits use DEFAULT_CONTEXT."""
    assert await_().context is DEFAULT_CONTEXT
    assert await_().settings.constraint.max_wait == TEN_SECONDS


def test_chained_calls_return_new_factories(await_context: AwaitContext) -> None:
    """Builders never mutate the factory they are called on."""
    base = await_(context=await_context)
    derived = base.alias("derived").at_most(ONE_SECOND).during(millis(50)).poll_interval(millis(20))

    assert base.settings.alias is None
    assert base.settings.constraint.max_wait == TEN_SECONDS
    assert derived.settings.alias == "derived"
    assert derived.settings.constraint.max_wait == ONE_SECOND
    assert derived.settings.constraint.hold_predicate_time == millis(50)
    assert derived.settings.poll_interval == fixed(millis(20))


def test_between_and_forever(await_context: AwaitContext) -> None:
    """between() sets both bounds at once and forever() removes the upper one."""
    factory = await_(context=await_context).between(seconds(20), seconds(30))
    assert factory.settings.constraint.min_wait == seconds(20)
    assert factory.settings.constraint.max_wait == seconds(30)
    assert factory.forever().settings.constraint.max_wait == FOREVER
    assert await_(context=await_context).at_least(ONE_SECOND).settings.constraint.min_wait == ONE_SECOND


def test_invalid_chains_fail_at_build_time(await_context: AwaitContext) -> None:
    """Configuration errors surface when the factory is built, not mid-wait."""
    with pytest.raises(InvalidConfigurationError):
        await_(context=await_context).between(seconds(2), ONE_SECOND)
    with pytest.raises(InvalidConfigurationError):
        await_(context=await_context).at_most(millis(10)).at_least(ONE_SECOND)


def test_wait_at_most(await_context: AwaitContext) -> None:
    """wait_at_most() is shorthand for await_().at_most()."""
    assert wait_at_most(ONE_SECOND, context=await_context).settings.constraint.max_wait == ONE_SECOND


def test_until_waits_for_another_thread(await_context: AwaitContext) -> None:
    """until() returns once state changed by another thread satisfies the predicate."""
    done = threading.Event()
    thread = set_after(done, 0.05)
    _fast(await_context).at_most(seconds(5)).until(done.is_set)
    thread.join()


def test_until_matches_returns_the_matching_value(await_context: AwaitContext) -> None:
    """until_matches() hands back the value that satisfied the matcher."""
    counter = _Counter()
    value = _fast(await_context).until_matches(counter.increment, equal_to(3))
    assert value == 3


def test_until_matches_accepts_plain_predicates(await_context: AwaitContext) -> None:
    """A plain callable works in place of a matcher."""
    counter = _Counter()

    def is_even(value: int) -> bool:
        return value % 2 == 0

    assert _fast(await_context).until_matches(counter.increment, is_even) == 2


def test_until_matches_timeout_describes_the_mismatch(await_context: AwaitContext) -> None:
    """The timeout message names the supplier, expectation and last value."""
    counter = _Counter()
    with pytest.raises(WaitTimedOutError) as exc_info:
        _fast(await_context).at_most(millis(100)).until_matches(counter.get, equal_to(5))
    assert str(exc_info.value).startswith(
        "Callable _Counter.get expected equal to 5 but was 0 within 100 milliseconds."
    )


def test_until_asserted_retries_failed_assertions(await_context: AwaitContext) -> None:
    """AssertionErrors are retried until the assertion passes."""
    counter = _Counter()

    def assert_counted_three_times() -> None:
        assert counter.increment() >= 3, "not yet"

    _fast(await_context).until_asserted(assert_counted_three_times)
    assert counter.get() == 3


def test_ignore_exception_lets_the_condition_recover(await_context: AwaitContext) -> None:
    """Ignored exception types are retried, others fail the wait."""
    counter = _Counter()

    def flaky() -> bool:
        if counter.increment() < 3:
            raise ConnectionError("not up yet")
        return True

    _fast(await_context).ignore_exception(ConnectionError).until(flaky)
    assert counter.get() == 3


def test_unignored_exceptions_fail_the_wait(await_context: AwaitContext) -> None:
    """Without an ignore rule the first exception ends the wait."""

    def broken() -> bool:
        raise ConnectionError("down")

    with pytest.raises(ConditionEvaluationError):
        _fast(await_context).until(broken)
    with pytest.raises(ConditionEvaluationError):
        _fast(await_context).ignore_exceptions().ignore_no_exceptions().until(broken)


def test_ignore_exceptions_and_matching(await_context: AwaitContext) -> None:
    """ignore_exceptions() ignores everything and predicates can be added."""
    assert _fast(await_context).ignore_exceptions().settings.ignore_policy == IGNORE_ALL_EXCEPTIONS
    factory = _fast(await_context).ignore_exceptions_matching(lambda e: "retry" in str(e))
    assert factory.settings.ignore_policy.should_ignore(RuntimeError("please retry"))
    assert not factory.settings.ignore_policy.should_ignore(RuntimeError("fatal"))


def test_uncaught_thread_exception_fails_the_wait(await_context: AwaitContext) -> None:
    """An exception escaping an observed worker thread fails a wait that never matches."""

    def crash() -> None:
        wait_interval(0.05)
        raise RuntimeError("worker crashed")

    thread = ObservableThread(target=crash, failure_channel=await_context.failure_channel)
    thread.start()
    with pytest.raises(UncaughtBackgroundError, match="worker crashed"):
        _fast(await_context).at_most(seconds(5)).until(lambda: False)
    thread.join()


def test_dont_catch_uncaught_exceptions(await_context: AwaitContext) -> None:
    """With catching disabled, background failures do not affect the wait."""
    counter = _Counter()

    def crash_then_match() -> bool:
        await_context.failure_channel.publish(RuntimeError("ignored crash"))
        return counter.increment() >= 2

    _fast(await_context).dont_catch_uncaught_exceptions().until(crash_then_match)
    with pytest.raises(UncaughtBackgroundError):
        _fast(await_context).dont_catch_uncaught_exceptions().catch_uncaught_exceptions().until(crash_then_match)


def test_listener_is_attached(await_context: AwaitContext) -> None:
    """The configured listener sees every evaluation of the wait."""
    listener = CollectingListener()
    counter = _Counter()
    _fast(await_context).condition_evaluation_listener(listener).until(lambda: counter.increment() >= 2)
    assert [record.is_matched for record in listener.records] == [False, True]


def test_fail_fast(await_context: AwaitContext) -> None:
    """The fail-fast predicate ends the wait with its reason."""
    with pytest.raises(TerminalFailureError, match="backend is gone"):
        _fast(await_context).fail_fast(lambda: True, reason="backend is gone").until(lambda: False)


@pytest.mark.timeout(10)
def test_cancel_on_external_event(await_context: AwaitContext) -> None:
    """Setting the external event cancels the wait."""
    stop = threading.Event()
    thread = set_after(stop, 0.05)
    with pytest.raises(WaitCancelledError):
        _fast(await_context).forever().cancel_on(stop).until(lambda: False)
    thread.join()


def test_factory_can_be_reused(await_context: AwaitContext) -> None:
    """A factory can run several waits, even after cancel_all()."""
    factory = _fast(await_context)
    factory.until(lambda: True)
    await_context.cancel_all()
    factory.until(lambda: True)

