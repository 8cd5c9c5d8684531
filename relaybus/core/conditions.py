"""Conditional dispatch.

A condition decides whether a handler gets a job for one emitted event. It is
either a predicate called with the envelope, or a named function with fixed
leading arguments. The named form can be written as plain data, e.g.
``("myapp.rules:has_plan", ["pro"])``, which is invoked as
``has_plan("pro", envelope)``.

Conditions run before the caller's transaction commits and before any
idempotency key exists, so they should only read.
"""

import importlib
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from relaybus.core.envelope import Envelope
from relaybus.core.errors import InvalidConditionSpec

Predicate = Callable[[Envelope], Any]


@dataclass(frozen=True)
class NamedCondition:
    """A function reference plus leading arguments.

    Attributes:
        function: A callable, or a ``"package.module:attribute"`` reference.
        args: Arguments passed before the envelope.
    """

    function: Callable[..., Any] | str
    args: tuple[Any, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if isinstance(self.args, (str, bytes)) or not isinstance(self.args, Sequence):
            raise InvalidConditionSpec(
                f"NamedCondition args must be a list or tuple, got {type(self.args).__name__}"
            )
        object.__setattr__(self, "args", tuple(self.args))


Condition = Predicate | NamedCondition | tuple


def resolve_callable(ref: str) -> Callable[..., Any]:
    """Resolve a ``"module:attr.path"`` reference to a callable."""
    module_path, _, attr_path = ref.partition(":")
    if not module_path or not attr_path:
        raise InvalidConditionSpec(f"Invalid function reference (expected 'module:attr'): {ref!r}")
    try:
        obj: Any = importlib.import_module(module_path)
        for part in attr_path.split("."):
            obj = getattr(obj, part)
    except (ImportError, AttributeError) as e:
        raise InvalidConditionSpec(f"Cannot resolve function reference {ref!r}: {e}") from e
    if not callable(obj):
        raise InvalidConditionSpec(f"{ref!r} resolved to non-callable: {type(obj).__name__}")
    return obj


def coerce_condition(condition: Any) -> Predicate | NamedCondition | None:
    """Normalize a declared condition, rejecting unknown shapes.

    Accepts None, a callable, a NamedCondition, or a ``(function, args)``
    2-tuple. Function references are not imported here.
    """
    if condition is None or isinstance(condition, NamedCondition):
        return condition
    if isinstance(condition, tuple):
        if len(condition) != 2:
            raise InvalidConditionSpec(
                f"Named condition must be a (function, args) pair, got {len(condition)} items"
            )
        function, args = condition
        if not (callable(function) or isinstance(function, str)):
            raise InvalidConditionSpec(
                f"Named condition function must be callable or a 'module:attr' string, "
                f"got {type(function).__name__}"
            )
        return NamedCondition(function, args)
    if callable(condition):
        return condition
    raise InvalidConditionSpec(
        f"Condition must be a predicate, a NamedCondition or a (function, args) pair, "
        f"got {type(condition).__name__}: {condition!r}"
    )


def should_dispatch(condition: Any, envelope: Envelope) -> bool:
    """Return True if the handler guarded by ``condition`` should get a job.

    Raises:
        InvalidConditionSpec: If the condition has an unsupported shape or its
            function reference cannot be resolved.
    """
    condition = coerce_condition(condition)
    if condition is None:
        return True
    if isinstance(condition, NamedCondition):
        function = condition.function
        if isinstance(function, str):
            function = resolve_callable(function)
        return bool(function(*condition.args, envelope))
    return bool(condition(envelope))
