# Host Channel Protocol
# JSON frames exchanged with the local host gateway

from airc_bridge.protocol.frames import (
    FrameType,
    GatewayCommand,
    SendCommand,
    AcceptConsentCommand,
    BlockCommand,
    PresenceCommand,
    UpdateStatusCommand,
    OpaqueFrame,
    parse_gateway_frame,
    encode_frame,
    create_channel_register,
    create_incoming_message,
    create_consent_request,
    create_presence_response,
)

__all__ = [
    "FrameType",
    "GatewayCommand",
    "SendCommand",
    "AcceptConsentCommand",
    "BlockCommand",
    "PresenceCommand",
    "UpdateStatusCommand",
    "OpaqueFrame",
    "parse_gateway_frame",
    "encode_frame",
    "create_channel_register",
    "create_incoming_message",
    "create_consent_request",
    "create_presence_response",
]
