# Transport Layer
# Relays AIRC registry traffic to the local host gateway over WebSocket

from airc_bridge.transport.bridge import GatewayState, RelayBridge, reconnect_delay

__all__ = ["GatewayState", "RelayBridge", "reconnect_delay"]
