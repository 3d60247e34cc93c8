from typing import Any
from typing import Self

from pydantic import BaseModel
from pydantic import ConfigDict


class FrozenModel(BaseModel):
    """Base class for immutable pydantic models that prevent attribute mutation after construction."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=False,
    )

    def evolve(self, **changes: Any) -> Self:
        """Build a new, fully re-validated instance with some fields replaced.

        Unlike model_copy(update=...), this runs every validator again, so derived
        values can never escape the invariants of the original.
        """
        values = {name: getattr(self, name) for name in type(self).model_fields}
        values.update(changes)
        return type(self)(**values)


class MutableModel(BaseModel):
    """Base class for pydantic models that own mutable per-instance state."""

    model_config = ConfigDict(
        frozen=False,
        extra="forbid",
        arbitrary_types_allowed=False,
    )
