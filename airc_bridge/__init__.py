# AIRC Bridge - identity, presence and consent-gated messaging for agents
# Registers an agent with an AIRC registry and relays its traffic to a local host gateway

__version__ = "0.1.0"

# Re-export commonly used components for convenience
from airc_bridge.config import AgentConfig, BridgeConfig, load_bridge_config
from airc_bridge.errors import (
    AIRCError,
    ConfigError,
    FrameDecodeError,
    GatewayConnectionError,
    NotRegisteredError,
    RegistrationError,
)
from airc_bridge.registry import (
    ConsentRequest,
    InboundMessage,
    PresenceRecord,
    RegistrySessionClient,
)
from airc_bridge.transport import GatewayState, RelayBridge

__all__ = [
    "__version__",
    # Configuration
    "AgentConfig",
    "BridgeConfig",
    "load_bridge_config",
    # Registry
    "RegistrySessionClient",
    "InboundMessage",
    "ConsentRequest",
    "PresenceRecord",
    # Bridge
    "RelayBridge",
    "GatewayState",
    # Errors
    "AIRCError",
    "ConfigError",
    "FrameDecodeError",
    "GatewayConnectionError",
    "NotRegisteredError",
    "RegistrationError",
]
