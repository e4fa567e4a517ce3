import functools
from contextvars import ContextVar
from typing import Any, Callable, Optional

_grad_enabled: ContextVar[bool] = ContextVar("vargrad_grad_enabled", default=True)
"""ContextVar[bool]: Whether graph construction is enabled in the current context.

Read by :func:`vargrad.function.apply_forward` before every operation. Each
thread and each asyncio task sees its own value, so toggling it in one
context never affects graph construction in flight in another.
"""


def is_grad_enabled() -> bool:
    """Return whether operations are currently recorded into the graph."""
    return _grad_enabled.get()


def set_grad_enabled(mode: bool) -> None:
    """Enable or disable graph construction for the current context."""
    _grad_enabled.set(bool(mode))


def resolve_grad_enabled(override: Optional[bool] = None) -> bool:
    """Return ``override`` when given, otherwise the current context value."""
    if override is None:
        return is_grad_enabled()
    return bool(override)


class _GradMode:
    _mode: bool = True

    def __enter__(self):
        self._token = _grad_enabled.set(self._mode)
        return self

    def __exit__(self, *args):
        _grad_enabled.reset(self._token)

    def __call__(self, fn: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(fn)
        def wrapper(*a, **kw):
            with type(self)():
                return fn(*a, **kw)
        return wrapper


class no_grad(_GradMode):
    """
    Context manager that temporarily disables graph construction.

    Inside the context, operations run as plain computations: no
    backward-edge records are created and no gradient storage is allocated
    for their outputs, even when inputs have ``requires_grad=True``.

    Examples
    --------
    >>> with no_grad():
    ...     y = relu(x)   # inference, nothing recorded
    >>> @no_grad()
    ... def evaluate(x):
    ...     return relu(x)

    Notes
    -----
    - Contexts nest; the previous state is restored upon exit.
    - The state is held in a ``ContextVar``, so it is local to the current
      thread or asyncio task.
    """
    _mode = False


class enable_grad(_GradMode):
    """Context manager that enables graph construction, e.g. inside ``no_grad``."""
    _mode = True
