"""
Connection status tracking for voice sessions.

Connection lifecycle is tracked separately from the state machine:
connection_status: DOWN | UP | CLOSED

This is pure data owned by SessionGateway, not by orchestrator state.
"""
from enum import Enum

class ConnectionStatus(Enum):
    """
    Connection lifecycle status.

    Separate from and independent of orchestrator State enum.
    LISTENING can occur with any ConnectionStatus.
    """
    DOWN = "DOWN"      # Session built, transport not yet accepted
    UP = "UP"          # Active WebSocket connection
    CLOSED = "CLOSED"  # Transport gone; session torn down
