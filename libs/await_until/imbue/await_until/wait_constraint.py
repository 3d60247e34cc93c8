from typing import Final

from pydantic import Field
from pydantic import model_validator

from imbue.await_until.duration import Duration
from imbue.await_until.duration import FOREVER
from imbue.await_until.duration import TEN_SECONDS
from imbue.await_until.duration import ZERO
from imbue.await_until.errors import InvalidConfigurationError
from imbue.await_until.frozen_model import FrozenModel


class WaitConstraint(FrozenModel):
    """How long a wait may take and how long the condition must hold before it succeeds.

    Constraints are never mutated; the with_* methods return new, re-validated constraints,
    so a constraint can be shared freely between builder chains.
    """

    min_wait: Duration = Field(default=ZERO, description="A match observed earlier than this keeps polling")
    max_wait: Duration = Field(default=TEN_SECONDS, description="The wait times out once this has elapsed")
    hold_predicate_time: Duration | None = Field(
        default=None,
        description="How long the condition must stay continuously true before the wait succeeds",
    )

    @model_validator(mode="after")
    def _validate_bounds(self) -> "WaitConstraint":
        for name, value in (
            ("min_wait", self.min_wait),
            ("max_wait", self.max_wait),
            ("hold_predicate_time", self.hold_predicate_time),
        ):
            if value is not None and value.is_same_as_poll_interval():
                raise InvalidConfigurationError(f"{name} cannot be SAME_AS_POLL_INTERVAL")
        if self.min_wait.is_forever():
            raise InvalidConfigurationError("min_wait cannot be FOREVER")
        if self.hold_predicate_time is not None and self.hold_predicate_time.is_forever():
            raise InvalidConfigurationError("hold_predicate_time cannot be FOREVER")
        if not self.max_wait.is_forever() and self.min_wait > self.max_wait:
            raise InvalidConfigurationError(
                f"min_wait ({self.min_wait}) must be less than or equal to max_wait ({self.max_wait})"
            )
        return self

    def with_min_wait_time(self, min_wait: Duration) -> "WaitConstraint":
        return self.evolve(min_wait=min_wait)

    def with_max_wait_time(self, max_wait: Duration) -> "WaitConstraint":
        return self.evolve(max_wait=max_wait)

    def with_hold_predicate_time(self, hold_predicate_time: Duration | None) -> "WaitConstraint":
        return self.evolve(hold_predicate_time=hold_predicate_time)


def at_most(max_wait: Duration) -> WaitConstraint:
    return WaitConstraint(max_wait=max_wait)


def between(min_wait: Duration, max_wait: Duration) -> WaitConstraint:
    return WaitConstraint(min_wait=min_wait, max_wait=max_wait)


AT_MOST_TEN_SECONDS: Final[WaitConstraint] = at_most(TEN_SECONDS)
AT_MOST_FOREVER: Final[WaitConstraint] = at_most(FOREVER)
