"""Event registry: event name -> ordered handler specs.

The registry is built once from a static declaration and validated up front,
so a malformed declaration stops the process before anything is emitted::

    registry = EventRegistry({
        "user_created": [
            WelcomeEmail,
            (AnalyticsHandler(), {"priority": 3, "tags": ["analytics"]}),
            (PremiumOnboarding, {"condition": ("myapp.rules:has_plan", ["pro"])}),
        ],
        "user_deleted": [],
    })
"""

import copy
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from relaybus.core.errors import (
    InvalidHandlerSpecShape,
    InvalidRegistryDeclaration,
    UnknownHandlerReference,
    UnregisteredEvent,
)
from relaybus.core.handler import Handler

_EVENT_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_.:-]*$")

# Option key holding the dispatch condition; every other key is a job override
CONDITION_KEY = "condition"


@dataclass(frozen=True)
class HandlerSpec:
    """A handler declared for one event.

    Attributes:
        handler: The handler instance.
        options: Per-handler job option overrides.
        condition: Optional dispatch condition, checked at emit time.
    """

    handler: Handler
    options: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    condition: Any = None

    @property
    def name(self) -> str:
        return self.handler.name


def _coerce_handler(
    event_name: str,
    index: int,
    element: object,
    reference: object,
    instances: dict[type, Handler],
) -> Handler:
    if isinstance(reference, Handler):
        return reference
    if isinstance(reference, type) and issubclass(reference, Handler):
        if reference in instances:
            return instances[reference]
        try:
            instances[reference] = reference()
            return instances[reference]
        except TypeError as e:
            raise InvalidRegistryDeclaration(
                f"Event {event_name!r}, element {index}: cannot instantiate "
                f"{reference.__name__} without arguments ({e}); register an instance instead"
            ) from e
    raise InvalidHandlerSpecShape(event_name, index, element)


def _build_spec(
    event_name: str, index: int, element: object, instances: dict[type, Handler]
) -> HandlerSpec:
    if isinstance(element, tuple):
        if len(element) != 2:
            raise InvalidHandlerSpecShape(event_name, index, element)
        reference, options = element
        if not isinstance(options, Mapping):
            raise InvalidHandlerSpecShape(event_name, index, element)
        non_str_keys = [key for key in options if not isinstance(key, str)]
        if non_str_keys:
            raise InvalidRegistryDeclaration(
                f"Event {event_name!r}, element {index}: option keys must be strings, "
                f"found {non_str_keys!r}"
            )
    else:
        reference, options = element, {}

    handler = _coerce_handler(event_name, index, element, reference, instances)
    # Deep copy so later changes to the caller's declaration cannot leak in
    overrides = copy.deepcopy(
        {key: value for key, value in options.items() if key != CONDITION_KEY}
    )
    return HandlerSpec(
        handler=handler,
        options=MappingProxyType(overrides),
        condition=options.get(CONDITION_KEY),
    )


class EventRegistry:
    """Immutable, validated mapping of event names to handler specs."""

    def __init__(self, declaration: Mapping[str, Any]) -> None:
        self._events: Mapping[str, tuple[HandlerSpec, ...]] = MappingProxyType(
            self._validate(declaration)
        )
        self._handlers: Mapping[str, Handler] = MappingProxyType(self._index_handlers())

    @staticmethod
    def _validate(declaration: Any) -> dict[str, tuple[HandlerSpec, ...]]:
        if not isinstance(declaration, Mapping):
            raise InvalidRegistryDeclaration(
                f"Event declaration must be a mapping of event names to handler lists, "
                f"got {type(declaration).__name__}"
            )

        events: dict[str, tuple[HandlerSpec, ...]] = {}
        # Handler classes are instantiated once per registry
        instances: dict[type, Handler] = {}
        for event_name, handlers in declaration.items():
            if not isinstance(event_name, str) or not _EVENT_NAME_PATTERN.match(event_name):
                raise InvalidRegistryDeclaration(
                    f"Event names must be identifiers matching {_EVENT_NAME_PATTERN.pattern}, "
                    f"got {event_name!r}"
                )
            if not isinstance(handlers, (list, tuple)):
                raise InvalidRegistryDeclaration(
                    f"Event {event_name!r}: handlers must be a list, "
                    f"got {type(handlers).__name__}: {handlers!r}"
                )

            specs = tuple(
                _build_spec(event_name, index, element, instances)
                for index, element in enumerate(handlers)
            )
            names = [spec.name for spec in specs]
            duplicates = sorted({name for name in names if names.count(name) > 1})
            if duplicates:
                raise InvalidRegistryDeclaration(
                    f"Event {event_name!r}: handler(s) {duplicates} declared more than once"
                )
            events[event_name] = specs
        return events

    def _index_handlers(self) -> dict[str, Handler]:
        handlers: dict[str, Handler] = {}
        for event_name, specs in self._events.items():
            for spec in specs:
                known = handlers.setdefault(spec.name, spec.handler)
                if known is not spec.handler:
                    raise InvalidRegistryDeclaration(
                        f"Event {event_name!r}: handler name {spec.name!r} is already used by "
                        f"{known!r}; give each handler a unique name"
                    )
        return handlers

    def get_handlers(self, event_name: str) -> tuple[HandlerSpec, ...]:
        """Return the handler specs for ``event_name`` in declaration order.

        Raises:
            UnregisteredEvent: If the event is not in the registry.
        """
        try:
            return self._events[event_name]
        except (KeyError, TypeError):
            raise UnregisteredEvent(event_name, self._events.keys()) from None

    def all_events(self) -> frozenset[str]:
        return frozenset(self._events)

    def is_registered(self, event_name: str) -> bool:
        """Check whether the event exists. It may have zero handlers."""
        try:
            return event_name in self._events
        except TypeError:
            return False

    def resolve_handler(self, event_name: str, handler_name: str) -> Handler:
        """Look up a handler by the names persisted in a job payload.

        Only names already present in the registry resolve; nothing is
        imported or constructed from the strings.

        Raises:
            UnknownHandlerReference: If either name is unknown.
        """
        if not self.is_registered(event_name):
            raise UnknownHandlerReference(f"Unknown event in job payload: {event_name!r}")
        try:
            return self._handlers[handler_name]
        except (KeyError, TypeError):
            raise UnknownHandlerReference(
                f"Unknown handler in job payload: {handler_name!r}"
            ) from None

    def __contains__(self, event_name: object) -> bool:
        return self.is_registered(event_name)  # type: ignore[arg-type]

    def __len__(self) -> int:
        return len(self._events)
