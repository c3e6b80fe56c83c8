"""
Registry Models

Shapes exchanged with the AIRC registry: the local agent identity,
inbound messages and consent requests, presence snapshots, and the
structured results returned by client operations.

Wire names follow the registry's camelCase JSON. Python attributes are
snake_case and `from` is exposed as `sender`.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def normalize_handle(handle: str) -> str:
    """Strip a single leading '@' from a handle."""
    return handle[1:] if handle.startswith("@") else handle


class MessageKind(str, Enum):
    """Recognized inbound message type tags."""
    TEXT = "text"
    CONSENT_REQUEST = "consent_request"
    HANDSHAKE_REQUEST = "system:handshake_request"
    OPAQUE = "opaque"  # Any other tag; payload is carried as raw data


CONSENT_KINDS = frozenset({MessageKind.CONSENT_REQUEST, MessageKind.HANDSHAKE_REQUEST})


class ConsentRequest(BaseModel):
    """
    A first-contact handshake from another agent.

    Derived from an InboundMessage and dispatched once to consent
    handlers. Never stored.
    """

    sender: str = Field(
        ...,
        alias="from",
        description="Handle of the agent asking for consent"
    )
    message: str | None = Field(
        default=None,
        description="Optional introduction text"
    )
    timestamp: int | float | str = Field(
        default=0,
        description="Registry timestamp, epoch milliseconds or an ISO string"
    )

    @field_validator("sender")
    @classmethod
    def _strip_at(cls, value: str) -> str:
        return normalize_handle(value)

    class Config:
        populate_by_name = True


class InboundMessage(BaseModel):
    """
    A message fetched from the registry inbox.

    Immutable once received. `kind` gives the tagged view of `type`
    used to route between message and consent handlers.
    """

    id: str = Field(
        default="",
        description="Registry message identifier"
    )
    sender: str = Field(
        ...,
        alias="from",
        description="Sending agent handle"
    )
    to: str = Field(
        default="",
        description="Recipient handle"
    )
    text: str = Field(
        default="",
        description="Message body"
    )
    type: str | None = Field(
        default=None,
        description="Registry type tag (e.g. 'text', 'consent_request')"
    )
    payload: Any = Field(
        default=None,
        description="Optional structured payload, arbitrary JSON"
    )
    timestamp: int | float | str = Field(
        default=0,
        description="Registry timestamp, epoch milliseconds or an ISO string"
    )
    signature: str | None = Field(
        default=None,
        description="Optional transport signature"
    )

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("sender", "to")
    @classmethod
    def _strip_at(cls, value: str) -> str:
        return normalize_handle(value)

    @field_validator("text", mode="before")
    @classmethod
    def _none_text(cls, value: Any) -> Any:
        return "" if value is None else value

    @property
    def kind(self) -> MessageKind:
        """Classify the type tag; unknown tags are OPAQUE."""
        if self.type is None:
            return MessageKind.TEXT
        try:
            return MessageKind(self.type)
        except ValueError:
            return MessageKind.OPAQUE

    @property
    def is_consent_request(self) -> bool:
        return self.kind in CONSENT_KINDS

    def to_consent_request(self) -> ConsentRequest:
        return ConsentRequest(
            sender=self.sender,
            message=self.text or None,
            timestamp=self.timestamp,
        )

    class Config:
        populate_by_name = True
        frozen = True


class PresenceRecord(BaseModel):
    """Read-only snapshot of an active agent. Never cached."""

    handle: str
    username: str | None = None
    status: str = "available"
    working_on: str | None = Field(default=None, alias="workingOn")
    is_agent: bool | None = Field(default=None, alias="isAgent")
    last_seen: str | int | float | None = Field(default=None, alias="lastSeen")

    @model_validator(mode="before")
    @classmethod
    def _handle_from_username(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("handle") and data.get("username"):
            data = {**data, "handle": data["username"]}
        return data

    def to_wire(self) -> dict[str, Any]:
        """Camel-cased view for forwarding over the host channel."""
        return self.model_dump(by_alias=True, exclude_none=True)

    class Config:
        populate_by_name = True


class AgentIdentity(BaseModel):
    """
    The local agent as known to the registry.

    Created unregistered; `token` and `session_id` are set only by a
    successful registration.
    """

    handle: str
    working_on: str
    is_agent: bool = True
    operator: str | None = None
    token: str | None = Field(default=None, repr=False)
    session_id: str | None = None

    @property
    def is_registered(self) -> bool:
        return self.token is not None


class RegistrationResult(BaseModel):
    """Outcome of a registration round-trip."""
    success: bool
    token: str | None = None
    error: str | None = None


class SendResult(BaseModel):
    """Outcome of an outbound message post."""
    success: bool
    error: str | None = None
