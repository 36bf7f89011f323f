"""
core/connection_manager.py — One MSEClient per engine channel, plus the app-wide pool accessor.

Each channel owns its own socket, id counter, reconnect timer and on-air map.
Aggregate queries (is_element_playing etc.) look across every channel.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Iterable, Optional

from .mse_client import ConnectionStatus, MSEClient

log = logging.getLogger(__name__)

ClientFactory = Callable[..., MSEClient]


class ChannelPool:
    def __init__(self, client_factory: ClientFactory = MSEClient, **client_defaults: Any):
        self._factory = client_factory
        self._defaults = client_defaults
        self._clients: dict[str, MSEClient] = {}

    # ── Membership ────────────────────────────────────────────────────

    def add(self, name: str, host: str, port: int, enabled: bool = True, **overrides: Any) -> MSEClient:
        if name in self._clients:
            raise ValueError(f"Channel '{name}' already exists")
        options = {**self._defaults, **overrides}
        client = self._factory(host=host, port=port, enabled=enabled, name=name, **options)
        self._clients[name] = client
        return client

    async def remove(self, name: str) -> bool:
        client = self._clients.pop(name, None)
        if client is None:
            return False
        await client.disconnect()
        log.info(f"Channel '{name}' removed")
        return True

    def get(self, name: str) -> MSEClient:
        try:
            return self._clients[name]
        except KeyError:
            raise ValueError(f"Channel '{name}' not found") from None

    def names(self) -> list[str]:
        return list(self._clients)

    def clients(self) -> list[MSEClient]:
        return list(self._clients.values())

    async def sync(self, channels: Iterable[Any]) -> None:
        """
        Bring the pool in line with a channel list (objects with name/host/port/enabled).
        New channels are connected, missing ones disconnected and dropped, changed ones reconfigured.
        """
        wanted = {ch.name: ch for ch in channels}
        for name in [n for n in self._clients if n not in wanted]:
            await self.remove(name)
        for name, ch in wanted.items():
            if name in self._clients:
                await self._clients[name].reconfigure(host=ch.host, port=ch.port, enabled=ch.enabled)
            else:
                client = self.add(name, ch.host, ch.port, ch.enabled)
                if client.enabled:
                    await client.connect()

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def connect_all(self) -> dict[str, bool]:
        names = self.names()
        results = await asyncio.gather(*(self._clients[n].connect() for n in names))
        return dict(zip(names, results))

    async def disconnect_all(self) -> None:
        await asyncio.gather(*(c.disconnect() for c in self.clients()))

    async def reconnect_all(self) -> dict[str, bool]:
        await self.disconnect_all()
        return await self.connect_all()

    # ── Queries ───────────────────────────────────────────────────────

    def is_channel_connected(self, name: str) -> bool:
        client = self._clients.get(name)
        return client is not None and client.is_connected()

    def any_connected(self) -> bool:
        return any(c.is_connected() for c in self._clients.values())

    def statuses(self) -> dict[str, ConnectionStatus]:
        return {name: c.status for name, c in self._clients.items()}

    def is_element_playing(self, element_id: str) -> bool:
        return any(c.is_element_playing(element_id) for c in self._clients.values())

    def get_playing_element_id(self, show_name: str, playlist_name: Optional[str] = None) -> Optional[str]:
        for client in self._clients.values():
            element_id = client.get_playing_element_id(show_name, playlist_name)
            if element_id is not None:
                return element_id
        return None

    def all_playing_element_ids(self) -> set[str]:
        ids: set[str] = set()
        for client in self._clients.values():
            ids |= client.get_all_playing_element_ids()
        return ids

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, name: object) -> bool:
        return name in self._clients


_pool: Optional[ChannelPool] = None


def init_pool(channels: Iterable[Any] = (), **client_defaults: Any) -> ChannelPool:
    """Create the app-wide pool and register (but do not connect) the given channels."""
    global _pool
    _pool = ChannelPool(**client_defaults)
    for ch in channels:
        _pool.add(ch.name, ch.host, ch.port, ch.enabled)
    return _pool


def get_pool() -> ChannelPool:
    if _pool is None:
        raise RuntimeError("Channel pool not initialized. Call init_pool() first.")
    return _pool
