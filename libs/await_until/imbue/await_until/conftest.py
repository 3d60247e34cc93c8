from typing import Generator

import pytest

from imbue.await_until.config import AwaitContext
from imbue.await_until.config import DEFAULT_CONTEXT
from imbue.await_until.failure_channel import UNCAUGHT_FAILURES
from imbue.await_until.failure_channel import UncaughtFailureChannel


@pytest.fixture
def failure_channel() -> UncaughtFailureChannel:
    """A failure channel private to the test."""
    return UncaughtFailureChannel(name="test")


@pytest.fixture
def await_context(failure_channel: UncaughtFailureChannel) -> Generator[AwaitContext, None, None]:
    """A fresh context with factory defaults and a private failure channel."""
    context = AwaitContext(failure_channel=failure_channel)
    yield context
    context.cancel_all()


@pytest.fixture(autouse=True)
def reset_default_context() -> Generator[None, None, None]:
    """Keep the process-wide context and channel from leaking state between tests."""
    DEFAULT_CONTEXT.reset()
    UNCAUGHT_FAILURES.clear()
    yield
    DEFAULT_CONTEXT.reset()
    UNCAUGHT_FAILURES.clear()
