"""core — MSE connection management and on-air state."""
from .state import OnAirState, PlayingElement
from .mse_client import (
    COMMAND_REJECTED,
    ConnectionStatus,
    MSEClient,
    MSECommandError,
    MSEConnectionError,
)
from .connection_manager import ChannelPool, get_pool, init_pool

__all__ = [
    "OnAirState", "PlayingElement",
    "COMMAND_REJECTED", "ConnectionStatus", "MSEClient", "MSECommandError", "MSEConnectionError",
    "ChannelPool", "get_pool", "init_pool",
]
