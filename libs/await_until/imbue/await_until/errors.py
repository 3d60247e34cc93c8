class AwaitUntilError(Exception):
    """Base exception for all await_until errors."""

    ...


class InvalidConfigurationError(AwaitUntilError):
    """Raised synchronously when a duration, constraint, poll interval or config value is invalid.

    Must not subclass ValueError: pydantic folds ValueErrors raised inside model
    validators into a ValidationError.
    """


class WaitFailure(AwaitUntilError):
    """Base class for every way a wait can end without the condition being satisfied."""

    def __init__(self, message: str, poll_count: int = 0, elapsed_ms: int = 0) -> None:
        self.message = message
        self.poll_count = poll_count
        self.elapsed_ms = elapsed_ms
        super().__init__(message)


class ConditionEvaluationError(WaitFailure):
    """Raised when the condition itself raised and the ignore policy did not suppress it."""

    def __init__(self, original: BaseException, alias: str | None, poll_count: int, elapsed_ms: int) -> None:
        self.original = original
        self.alias = alias
        label = f"Condition with alias '{alias}'" if alias else "Condition"
        message = (
            f"{label} raised {type(original).__name__} on poll {poll_count} after {elapsed_ms} ms: {original}"
        )
        super().__init__(message, poll_count, elapsed_ms)


class UncaughtBackgroundError(WaitFailure):
    """Raised when another thread published an uncaught exception while the wait was running."""

    def __init__(
        self,
        original: BaseException,
        thread_name: str | None,
        alias: str | None,
        poll_count: int,
        elapsed_ms: int,
    ) -> None:
        self.original = original
        self.thread_name = thread_name
        self.alias = alias
        origin = f"thread '{thread_name}'" if thread_name else "another thread"
        label = f" while waiting for '{alias}'" if alias else ""
        message = (
            f"Uncaught {type(original).__name__} in {origin}{label} "
            f"(poll {poll_count}, {elapsed_ms} ms into the wait): {original}"
        )
        super().__init__(message, poll_count, elapsed_ms)


class WaitTimedOutError(WaitFailure):
    """Raised when the maximum wait time elapsed without a qualifying match."""

    def __init__(
        self,
        message: str,
        alias: str | None,
        description: str,
        last_value: str | None,
        poll_count: int,
        elapsed_ms: int,
    ) -> None:
        self.alias = alias
        self.description = description
        self.last_value = last_value
        super().__init__(message, poll_count, elapsed_ms)


class WaitCancelledError(WaitFailure):
    """Raised when the wait was aborted through its cancellation event before it could finish."""


class TerminalFailureError(WaitFailure):
    """Raised when the fail-fast condition reports that the awaited state can no longer be reached."""

    def __init__(self, reason: str, poll_count: int, elapsed_ms: int) -> None:
        self.reason = reason
        super().__init__(reason, poll_count, elapsed_ms)
