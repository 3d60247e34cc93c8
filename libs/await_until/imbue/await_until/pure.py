from collections.abc import Callable
from typing import TypeVar

_F = TypeVar("_F", bound=Callable[..., object])


def pure(func: _F) -> _F:
    """Mark a function as pure (no side effects).

    Advisory only, nothing is enforced at runtime. Poll interval strategies and
    duration arithmetic are marked with it because identical inputs must always
    produce identical outputs for the polling schedule to be reproducible.
    """
    return func
