"""Base model for pylivetrack wire and cache payloads.

Every stored or broadcast model inherits from :class:`TrackBaseModel`
which provides:

* ``alias_generator=to_camel`` so snake_case fields serialize to the
  camelCase keys used in the cache blobs and broadcast messages.
* ``populate_by_name`` so both spellings are accepted on input.
* Frozen instances; state changes produce new objects via
  ``model_copy(update=...)``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


def _ensure_tz_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_ensure_tz_aware)]
"""Datetime that is always timezone-aware (naive inputs are taken as UTC)."""


class TrackBaseModel(BaseModel):
    """Base for cached and broadcast payload models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )

    def to_wire(self) -> dict[str, Any]:
        """JSON-safe dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
