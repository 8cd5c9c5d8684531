"""Three-tier job option resolution.

Precedence, per key: per-handler override > engine-wide default > built-in
default. Only the core keys are validated; every other key passes through
untouched so new job queue features need no relaybus release.
"""

import copy
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from relaybus.core.errors import InvalidJobConfig

BUILTIN_DEFAULTS: Mapping[str, Any] = MappingProxyType(
    {
        "queue": "events",
        "max_attempts": 3,
        "priority": 2,
        "tags": (),
    }
)


class ResolvedJobConfig(BaseModel):
    """Final option set for one job.

    Attributes:
        queue: Queue name the job is placed on.
        max_attempts: Total attempts allowed, including the first one.
        priority: 0 (highest) to 3 (lowest).
        tags: Free-form labels for filtering jobs.

    Any additional key is kept as-is and returned by ``as_options()``.
    """

    queue: str
    max_attempts: int = Field(ge=1)
    priority: int = Field(ge=0, le=3)
    tags: list[str] = Field(default_factory=list)

    model_config = {
        "extra": "allow",
        "frozen": True,
    }

    @field_validator("queue")
    @classmethod
    def validate_queue(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("queue must not be empty")
        return v

    def as_options(self) -> dict[str, Any]:
        """Return the flat option dict handed to the job queue."""
        return self.model_dump()


def resolve_job_config(
    builtin_defaults: Mapping[str, Any],
    engine_defaults: Mapping[str, Any] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> ResolvedJobConfig:
    """Merge the three option tiers into one ResolvedJobConfig.

    None of the inputs is mutated.

    Raises:
        InvalidJobConfig: If a core key ends up with an invalid value.
    """
    merged: dict[str, Any] = dict(builtin_defaults)
    for layer in (engine_defaults, overrides):
        if layer:
            merged.update(copy.deepcopy(dict(layer)))

    try:
        return ResolvedJobConfig.model_validate(merged)
    except ValidationError as e:
        raise InvalidJobConfig(f"Invalid job options {merged!r}: {e}") from e
