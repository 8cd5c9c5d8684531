"""Envelope and JobRecord value objects."""

import json
from collections.abc import Mapping
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from relaybus.core.config import ResolvedJobConfig
from relaybus.core.errors import InvalidPayload

# Maximum serialized data size (1MB)
MAX_PAYLOAD_SIZE = 1_000_000

# Literal field names of a persisted job payload
REQUIRED_PAYLOAD_FIELDS = (
    "event_name",
    "handler",
    "originating_module",
    "data",
    "event_id",
    "idempotency_key",
)
OPTIONAL_PAYLOAD_FIELDS = ("causation_id", "correlation_id")


def generate_id() -> str:
    """Return a fresh identifier for event ids and idempotency keys."""
    return str(uuid4())


def _serialize(data: Any) -> str:
    try:
        serialized = json.dumps(data, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise InvalidPayload(f"data must be JSON-serializable: {e}") from e

    byte_length = len(serialized.encode("utf-8"))
    if byte_length > MAX_PAYLOAD_SIZE:
        raise InvalidPayload(
            f"data exceeds maximum size of {MAX_PAYLOAD_SIZE} bytes (got {byte_length} bytes)"
        )
    return serialized


def normalize_data(data: Any) -> dict[str, Any]:
    """Return ``data`` as it will look after persistence.

    The data goes through a JSON round-trip, so handlers always see string
    keys and plain lists no matter how the caller built the mapping.

    Raises:
        InvalidPayload: If data is not a mapping, is not strictly
            JSON-serializable, or exceeds MAX_PAYLOAD_SIZE.
    """
    if not isinstance(data, Mapping):
        raise InvalidPayload(f"data must be a mapping, got {type(data).__name__}")
    return json.loads(_serialize(dict(data)))


class Envelope(BaseModel):
    """Per-handler invocation package: the emitted data plus identifiers.

    Attributes:
        data: JSON-compatible event data (max 1MB when serialized).
        event_id: Shared by every job created by one emit call.
        idempotency_key: Unique per job. ``None`` while conditions are checked.
        causation_id: Optional event_id of the emit that caused this one.
        correlation_id: Optional id grouping emits of one business operation.
    """

    data: dict[str, Any] = Field(default_factory=dict)
    event_id: str
    idempotency_key: str | None = None
    causation_id: str | None = None
    correlation_id: str | None = None

    model_config = {
        "extra": "forbid",
        "frozen": True,
    }

    @field_validator("event_id")
    @classmethod
    def validate_event_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("event_id must not be empty")
        return v

    @field_validator("data")
    @classmethod
    def validate_data(cls, v: dict[str, Any]) -> dict[str, Any]:
        try:
            _serialize(v)
        except InvalidPayload as e:
            raise ValueError(str(e)) from e
        return v

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Envelope":
        """Rebuild the envelope from a persisted job payload."""
        return cls(
            data=payload["data"],
            event_id=payload["event_id"],
            idempotency_key=payload["idempotency_key"],
            causation_id=payload.get("causation_id"),
            correlation_id=payload.get("correlation_id"),
        )


class JobRecord(BaseModel):
    """One unit of work: a single handler's share of an emitted event."""

    event_name: str
    handler: str
    originating_module: str
    envelope: Envelope
    config: ResolvedJobConfig
    job_id: str | None = None

    model_config = {"frozen": True}

    def to_payload(self) -> dict[str, Any]:
        """Return the payload persisted by the job queue."""
        return {
            "event_name": self.event_name,
            "handler": self.handler,
            "originating_module": self.originating_module,
            "data": self.envelope.data,
            "event_id": self.envelope.event_id,
            "idempotency_key": self.envelope.idempotency_key,
            "causation_id": self.envelope.causation_id,
            "correlation_id": self.envelope.correlation_id,
        }
