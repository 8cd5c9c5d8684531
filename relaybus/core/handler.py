"""Handler base class and result markers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable

from relaybus.core.envelope import Envelope


@dataclass(frozen=True)
class Ok:
    """Success marker carrying a result, logged by the worker."""

    result: Any = None


@dataclass(frozen=True)
class Error:
    """Failure marker. The job queue decides whether to retry."""

    reason: Any


HandlerResult = None | Ok | Error


class Handler(ABC):
    """Base class for event handlers.

    A handler processes one event for one job. It should be idempotent:
    retries of the same job carry the same ``envelope.idempotency_key``.

    Return ``None`` (or ``Ok(result)``) on success and ``Error(reason)`` for a
    failure that should be retried. Raising an exception also fails the
    attempt and is left to the job queue's crash policy.
    """

    def __init__(self, name: str | None = None) -> None:
        """Initialize the Handler.

        Args:
            name: Optional name for the handler. Defaults to the class name.
                The name is what job payloads persist, so it must be unique
                within a registry.
        """
        self.name = name or self.__class__.__name__

    @abstractmethod
    def handle(
        self,
        event_name: str,
        envelope: Envelope,
    ) -> HandlerResult | Awaitable[HandlerResult]:
        """Handle one event.

        Args:
            event_name: The name the event was emitted under.
            envelope: Event data plus event_id, idempotency_key and the
                optional causation/correlation ids.

        Returns:
            None, Ok, Error, or an awaitable resolving to the same.
        """
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
