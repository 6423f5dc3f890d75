"""Downstream WebSocket relay service."""

from .server import RelayConnection, RelayServer, RelayServerConfig

__all__ = ["RelayServer", "RelayServerConfig", "RelayConnection"]
