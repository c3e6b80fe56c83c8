"""
Host Channel Frames

JSON frames exchanged with the local host gateway. Every frame is a
JSON object tagged by `type`.

Bridge -> gateway:
- channel:register       announces this relay for a handle
- airc:message           inbound registry message
- airc:consent_request   handshake awaiting a host decision
- airc:presence_response answer to airc:presence

Gateway -> bridge:
- airc:send, airc:accept_consent, airc:block, airc:presence,
  airc:update_status

Inbound frames decode into a closed set of command models plus an
OpaqueFrame fallback, so dispatch over them stays exhaustive.
"""

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from airc_bridge.errors import FrameDecodeError
from airc_bridge.registry.models import ConsentRequest, InboundMessage, PresenceRecord

CHANNEL_NAME = "airc"


class FrameType(str, Enum):
    """Host channel frame tags."""
    # Outbound
    CHANNEL_REGISTER = "channel:register"
    MESSAGE = "airc:message"
    CONSENT_REQUEST = "airc:consent_request"
    PRESENCE_RESPONSE = "airc:presence_response"

    # Inbound commands
    SEND = "airc:send"
    ACCEPT_CONSENT = "airc:accept_consent"
    BLOCK = "airc:block"
    PRESENCE = "airc:presence"
    UPDATE_STATUS = "airc:update_status"


# === Inbound commands ===

class SendCommand(BaseModel):
    """Host wants a message delivered through the registry."""
    to: str
    text: str = ""
    payload: Any = None


class AcceptConsentCommand(BaseModel):
    """Host accepted a pending consent request."""
    handle: str


class BlockCommand(BaseModel):
    """Host blocked an agent."""
    handle: str


class PresenceCommand(BaseModel):
    """Host asked for the active-agent list."""
    pass


class UpdateStatusCommand(BaseModel):
    """Host changed what the agent is working on."""
    working_on: str = Field(..., alias="workingOn")

    class Config:
        populate_by_name = True


class OpaqueFrame(BaseModel):
    """Any frame whose type the bridge does not act on."""
    type: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


GatewayCommand = (
    SendCommand
    | AcceptConsentCommand
    | BlockCommand
    | PresenceCommand
    | UpdateStatusCommand
    | OpaqueFrame
)

_COMMAND_MODELS: dict[FrameType, type[BaseModel]] = {
    FrameType.SEND: SendCommand,
    FrameType.ACCEPT_CONSENT: AcceptConsentCommand,
    FrameType.BLOCK: BlockCommand,
    FrameType.PRESENCE: PresenceCommand,
    FrameType.UPDATE_STATUS: UpdateStatusCommand,
}


def parse_gateway_frame(raw: str | bytes) -> GatewayCommand:
    """
    Decode one inbound gateway frame.

    Raises:
        FrameDecodeError: If the frame is not a JSON object, or a
            recognized command is missing required fields
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise FrameDecodeError(f"Frame is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise FrameDecodeError(f"Frame must be a JSON object, got {type(data).__name__}")

    tag = data.get("type")
    try:
        frame_type = FrameType(tag)
    except ValueError:
        frame_type = None

    model = _COMMAND_MODELS.get(frame_type) if frame_type else None
    if model is None:
        return OpaqueFrame(type=tag if isinstance(tag, str) else None, data=data)

    fields = {k: v for k, v in data.items() if k != "type"}
    try:
        return model.model_validate(fields)
    except ValidationError as e:
        raise FrameDecodeError(f"Invalid {tag} frame: {e}") from e


# === Outbound constructors ===

def create_channel_register(handle: str) -> dict[str, Any]:
    """Announce this connection as the AIRC relay for `handle`."""
    return {
        "type": FrameType.CHANNEL_REGISTER.value,
        "channel": CHANNEL_NAME,
        "handle": handle,
    }


def create_incoming_message(message: InboundMessage) -> dict[str, Any]:
    """Forward a registry message to the host."""
    return {
        "type": FrameType.MESSAGE.value,
        "from": message.sender,
        "text": message.text,
        "payload": message.payload,
        "timestamp": message.timestamp,
        "messageId": message.id,
    }


def create_consent_request(request: ConsentRequest) -> dict[str, Any]:
    """Ask the host to decide on a first-contact handshake."""
    return {
        "type": FrameType.CONSENT_REQUEST.value,
        "from": request.sender,
        "message": request.message,
        "timestamp": request.timestamp,
    }


def create_presence_response(agents: list[PresenceRecord]) -> dict[str, Any]:
    """Answer an airc:presence request."""
    return {
        "type": FrameType.PRESENCE_RESPONSE.value,
        "agents": [agent.to_wire() for agent in agents],
    }


def encode_frame(frame: dict[str, Any]) -> str:
    return json.dumps(frame)
