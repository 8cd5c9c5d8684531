"""Exception hierarchy for relaybus.

Every error derives from RelaybusError and from the closest builtin, so
callers can catch either ``UnregisteredEvent`` or a plain ``KeyError``.
"""

from collections.abc import Iterable


class RelaybusError(Exception):
    """Base class for all relaybus errors."""


class UnregisteredEvent(RelaybusError, KeyError):
    """Raised when an event name is not present in the registry."""

    def __init__(self, event_name: str, known_events: Iterable[str] = ()) -> None:
        self.event_name = event_name
        self.known_events = sorted(known_events)
        message = (
            f"Unknown event: {event_name!r}. "
            f"Known events: {self.known_events}. "
            "To register this event, add it to the declaration passed to EventRegistry."
        )
        super().__init__(message)

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.args[0]


class InvalidRegistryDeclaration(RelaybusError, TypeError):
    """Raised when the static event declaration is malformed."""


class InvalidHandlerSpecShape(InvalidRegistryDeclaration):
    """Raised when a handler list element is neither a handler nor (handler, options)."""

    def __init__(self, event_name: str, index: int, element: object) -> None:
        self.event_name = event_name
        self.index = index
        self.element = element
        super().__init__(
            f"Event {event_name!r}, element {index}: expected a Handler or a "
            f"(handler, options) pair, got {type(element).__name__}: {element!r}"
        )


class InvalidConditionSpec(RelaybusError, TypeError):
    """Raised when a condition is neither a predicate nor a named-function form."""


class InvalidPayload(RelaybusError, ValueError):
    """Raised when emitted data is not a JSON-serializable mapping."""


class InvalidJobConfig(RelaybusError, ValueError):
    """Raised when a resolved job option has an invalid core value."""


class InvalidJobPayload(RelaybusError, ValueError):
    """Raised when a persisted job payload cannot be turned back into a dispatch."""

    def __init__(self, message: str, missing: Iterable[str] = ()) -> None:
        self.missing = sorted(missing)
        super().__init__(message)


class UnknownHandlerReference(RelaybusError, LookupError):
    """Raised when a job references an origin, event or handler nobody registered."""


class QueueFullError(RelaybusError):
    """Raised when a bounded queue cannot accept a whole batch."""


class QueueUnavailableError(RelaybusError):
    """Raised when the job queue fails consecutively beyond threshold.

    Attributes:
        failure_count: Number of consecutive failures that triggered this error.
        last_error: The last exception message from the queue.
    """

    def __init__(self, message: str, failure_count: int = 0, last_error: str | None = None):
        self.failure_count = failure_count
        self.last_error = last_error
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_error:
            return f"{base} (last error: {self.last_error})"
        return base
