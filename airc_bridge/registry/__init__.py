# AIRC Registry
# Session client for registration, presence, polling, heartbeat and consent

from airc_bridge.registry.models import (
    AgentIdentity,
    ConsentRequest,
    InboundMessage,
    MessageKind,
    PresenceRecord,
    RegistrationResult,
    SendResult,
    normalize_handle,
)
from airc_bridge.registry.client import RegistrySessionClient

__all__ = [
    "AgentIdentity",
    "ConsentRequest",
    "InboundMessage",
    "MessageKind",
    "PresenceRecord",
    "RegistrationResult",
    "SendResult",
    "normalize_handle",
    "RegistrySessionClient",
]
