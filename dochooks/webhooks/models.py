"""Inbound webhook event models.

Security contract:
- Events are built only from a raw body that already passed signature checks
- Events are immutable; the payload carries status metadata, never parsed data
- payload.identifier is the only field used to decide what to reconcile
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

# Some deliveries namespace the kind, e.g. "document.parse.completed"
_KIND_PREFIX = "document."


class EventKind(str, Enum):
    """Closed set of event kinds the remote API emits."""

    PARSE_COMPLETED = "parse.completed"
    PARSE_SUCCEEDED = "parse.succeeded"
    PARSE_FAILED = "parse.failed"
    VALIDATE_COMPLETED = "validate.completed"
    CLASSIFY_COMPLETED = "classify.completed"
    CLASSIFY_SUCCEEDED = "classify.succeeded"
    CLASSIFY_FAILED = "classify.failed"
    REJECTED = "rejected"

    @classmethod
    def resolve(cls, value: str) -> EventKind | None:
        """Map a wire value to a kind, or None for kinds this release does not know."""
        if value.startswith(_KIND_PREFIX):
            value = value[len(_KIND_PREFIX):]
        try:
            return cls(value)
        except ValueError:
            return None


class Workspace(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str = ""
    name: str = ""


class EventPayload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    identifier: str = Field(min_length=1)
    ready: bool = False
    failed: bool = False
    file_name: str = Field(default="", alias="fileName")
    workspace: Workspace | None = None


class WebhookEvent(BaseModel):
    """A verified delivery. Consumed once, never persisted."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    event: str
    timestamp: int
    payload: EventPayload

    @property
    def kind(self) -> EventKind | None:
        return EventKind.resolve(self.event)

    @property
    def identifier(self) -> str:
        return self.payload.identifier
