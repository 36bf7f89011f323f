"""
core/mse_client.py — Async Media Sequencer (PepTalk) client with reconnect & on-air tracking.

Lifecycle:
  disconnected → connecting → connected → disconnected  (explicit disconnect())
                                        → error → (5s) → connecting ...

On every successful connect:
  1. the on-air map starts empty and the handshake flag is reset
  2. "<id> protocol peptalk" is sent
  3. the first "protocol" reply triggers "<id> get /storage/shows 2" (once per
     connection); the active_<feed> carousels in its reply are recorded so
     elements already on air are picked up after a restart

A disconnect() issued while a connect is still opening wins: the late socket is
closed with 1000 and nothing is reconnected.

Commands are fire-and-forget through send_command() (returns the id, or -1 when
nothing was written) or correlated through request() (awaits the matching
"ok"/"error" reply).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from contextlib import suppress
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Optional, Sequence

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from mse_relay.protocol import (
    AttributeChanged,
    CarouselActive,
    CommandAck,
    CommandError,
    ElementPlaying,
    Insert,
    ProtocolAck,
    ProtocolEvent,
    element_id_from_path,
    format_command,
    parse_active_carousels,
    parse_packet,
)
from mse_relay.protocol.messages import CAROUSEL_STATUS
from .state import OnAirState, PlayingElement

log = logging.getLogger(__name__)

HANDSHAKE_COMMAND = "protocol peptalk"
INITIAL_QUERY = "get /storage/shows 2"
COMMAND_REJECTED = -1
NORMAL_CLOSURE = 1000

Connector = Callable[..., Awaitable[Any]]
EventCallback = Callable[[Any], Coroutine[Any, Any, None]]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class MSEConnectionError(Exception):
    pass


class MSECommandError(Exception):
    def __init__(self, request_id: str, message: str):
        super().__init__(f"MSE command {request_id} failed: {message or 'error'}")
        self.request_id = request_id
        self.message = message


class CommandCounter:
    """Strictly increasing command ids starting at 1. Safe to call from any thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def next(self) -> int:
        with self._lock:
            return next(self._ids)


class MSEClient:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 8595,
        enabled: bool = True,
        name: str = "default",
        reconnect_interval: float = 5.0,
        connect_timeout: float = 10.0,
        request_timeout: float = 30.0,
        initial_query: str = INITIAL_QUERY,
        subscriptions: Sequence[str] = (),
        connector: Optional[Connector] = None,
    ):
        self.host = host
        self.port = port
        self.enabled = enabled
        self.name = name
        self.reconnect_interval = reconnect_interval
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self.initial_query = initial_query
        self.subscriptions = list(subscriptions)

        self.state = OnAirState()
        self.last_error: Optional[str] = None
        self.capabilities: tuple[str, ...] = ()

        self._connector: Connector = connector or ws_connect
        self._ws: Optional[Any] = None
        self._status = ConnectionStatus.DISCONNECTED
        self._ids = CommandCounter()
        self._handshake_done = False
        self._snapshot_request: Optional[str] = None
        self._generation = 0  # bumped by disconnect()
        self._ready = asyncio.Event()
        self._connect_lock = asyncio.Lock()
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._on_air_listeners: list[EventCallback] = []
        self._status_listeners: list[EventCallback] = []

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def is_connected(self) -> bool:
        return self._status is ConnectionStatus.CONNECTED and self._ws is not None

    # ── Connection ────────────────────────────────────────────────────

    async def connect(self) -> bool:
        if not self.enabled or not self.host:
            log.debug(f"[{self.name}] MSE connection disabled, not connecting")
            return False

        self._cancel_reconnect()
        generation = self._generation
        async with self._connect_lock:
            if generation != self._generation:
                return False
            await self._drop_socket(reason="Reconnecting")
            await self._reset_session()
            await self._set_status(ConnectionStatus.CONNECTING)

            try:
                ws = await self._connector(self.url, open_timeout=self.connect_timeout)
            except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                if generation != self._generation:
                    return False
                log.warning(f"[{self.name}] MSE connection to {self.url} failed: {e}")
                await self._fail(f"Failed to connect: {e}")
                return False

            if generation != self._generation:
                log.info(f"[{self.name}] Disconnected while connecting to {self.url}, closing new socket")
                await self._close_quietly(ws, reason="User disconnected")
                return False

            self._ws = ws
            self.last_error = None
            await self._set_status(ConnectionStatus.CONNECTED)
            log.info(f"[{self.name}] Connected to MSE at {self.host}:{self.port}")
            self._reader_task = asyncio.get_running_loop().create_task(self._read_loop(ws))
        await self.send_command(HANDSHAKE_COMMAND)
        return True

    async def disconnect(self) -> None:
        """User-initiated disconnect. Never followed by an automatic reconnect."""
        self._generation += 1
        self._cancel_reconnect()
        had_socket = self._ws is not None
        await self._drop_socket(reason="User disconnected")
        await self._reset_session()
        self.last_error = None
        await self._set_status(ConnectionStatus.DISCONNECTED)
        if had_socket:
            log.info(f"[{self.name}] Disconnected from MSE at {self.host}:{self.port}")

    async def reconfigure(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        """Apply new connection settings. A host/port change on a live link forces a reconnect."""
        was_active = self._status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING) or self.reconnect_pending
        moved = (host is not None and host != self.host) or (port is not None and port != self.port)
        turned_on = enabled is True and not self.enabled

        if host is not None:
            self.host = host
        if port is not None:
            self.port = port
        if enabled is not None:
            self.enabled = enabled

        if not self.enabled:
            if was_active:
                await self.disconnect()
            return
        if moved and was_active:
            log.info(f"[{self.name}] MSE endpoint changed to {self.host}:{self.port}, reconnecting")
            await self.disconnect()
            await self.connect()
        elif turned_on and not was_active:
            await self.connect()

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait until the engine has answered the protocol handshake."""
        try:
            await asyncio.wait_for(self._ready.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _drop_socket(self, reason: str) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        if ws is not None:
            await self._close_quietly(ws, reason)
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            with suppress(asyncio.CancelledError):
                await reader
        self._fail_pending(MSEConnectionError("Connection closed"))

    async def _close_quietly(self, ws: Any, reason: str) -> None:
        try:
            await ws.close(code=NORMAL_CLOSURE, reason=reason)
        except (OSError, WebSocketException) as e:
            log.debug(f"[{self.name}] Error closing MSE socket: {e}")

    async def _reset_session(self) -> None:
        self._handshake_done = False
        self._snapshot_request = None
        self._ready.clear()
        self.capabilities = ()
        if len(self.state):
            self.state.reset()
            await self._emit(self._on_air_listeners, set())

    async def _fail(self, cause: str) -> None:
        self.last_error = cause
        self._fail_pending(MSEConnectionError(cause))
        await self._reset_session()
        await self._set_status(ConnectionStatus.ERROR)
        self._schedule_reconnect()

    # ── Reconnect timer ───────────────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        if not self.enabled:
            return
        log.info(f"[{self.name}] Reconnecting to MSE in {self.reconnect_interval:g}s...")
        loop = asyncio.get_running_loop()
        self._reconnect_task = loop.create_task(self._reconnect_later())

    async def _reconnect_later(self) -> None:
        await asyncio.sleep(self.reconnect_interval)
        self._reconnect_task = None
        await self.connect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ── Inbound ───────────────────────────────────────────────────────

    async def _read_loop(self, ws: Any) -> None:
        cause = "Connection closed by engine"
        try:
            async for payload in ws:
                await self._handle_payload(payload)
        except ConnectionClosed as e:
            cause = f"Connection closed unexpectedly ({e})"
        except OSError as e:
            cause = f"Connection error: {e}"

        if ws is not self._ws:
            return  # superseded by disconnect() or a newer connect()
        self._ws = None
        self._reader_task = None
        log.warning(f"[{self.name}] MSE connection lost: {cause}")
        await self._fail(cause)

    async def _handle_payload(self, payload: Any) -> None:
        changed = False
        for event in parse_packet(payload):
            if await self._apply(event):
                changed = True
        if changed:
            await self._emit(self._on_air_listeners, self.state.all_playing_element_ids())

    async def _apply(self, event: ProtocolEvent) -> bool:
        """Apply one event. Returns True when the on-air map changed."""
        match event:
            case ProtocolAck(capabilities=capabilities):
                self.capabilities = capabilities
                if not self._handshake_done:
                    self._handshake_done = True
                    self._ready.set()
                    log.info(f"[{self.name}] PepTalk session open ({' '.join(capabilities)})")
                    query_id = await self.send_command(self.initial_query)
                    if query_id != COMMAND_REJECTED:
                        self._snapshot_request = str(query_id)
                    for command in self.subscriptions:
                        await self.send_command(command)
            case CommandAck(request_id=request_id) if request_id == self._snapshot_request:
                self._snapshot_request = None
                return self._restore_snapshot(event.payload)
            case CommandAck() | CommandError():
                self._resolve(event)
            case ElementPlaying(path=path, node_id=node_id):
                element_id = element_id_from_path(path) or node_id
                if element_id:
                    self.state.record_playing(element_id, PlayingElement.from_path(path, element_id))
                    log.debug(f"[{self.name}] On air: {element_id}")
                    return True
            case CarouselActive(path=path, feed=feed, element_id=element_id):
                key = f"{path}:{feed}"
                if not element_id:
                    return bool(self.state.clear_by_element_or_key(key))
                record = PlayingElement.from_path(f"{path}/elements/{element_id}", element_id)
                self.state.record_playing(key, record)
                log.debug(f"[{self.name}] Carousel {key} → {element_id}")
                return True
            case AttributeChanged(node_id=node_id, attr_name=attr_name) if attr_name == CAROUSEL_STATUS:
                removed = self.state.clear_by_element_or_key(node_id)
                if removed:
                    log.debug(f"[{self.name}] Off air: {node_id}")
                return bool(removed)
            case Insert(path=path):
                log.debug(f"[{self.name}] Node inserted: {path}")
        return False

    def _restore_snapshot(self, payload: str) -> bool:
        carousels = parse_active_carousels(payload)
        for carousel in carousels:
            record = PlayingElement.from_path(carousel.element_path, carousel.element_id)
            self.state.record_playing(carousel.key, record)
        if carousels:
            log.info(f"[{self.name}] Restored {len(carousels)} active carousel element(s) from engine")
        return bool(carousels)

    def _resolve(self, event: CommandAck | CommandError) -> None:
        try:
            msg_id = int(event.request_id)
        except ValueError:
            return
        future = self._pending.get(msg_id)
        if future is None or future.done():
            if isinstance(event, CommandError):
                log.warning(f"[{self.name}] MSE rejected command {msg_id}: {event.message}")
            return
        if isinstance(event, CommandError):
            future.set_exception(MSECommandError(event.request_id, event.message))
        else:
            future.set_result(event)

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    # ── Outbound ──────────────────────────────────────────────────────

    async def send_command(self, body: str) -> int:
        """Send "<id> <body>". Returns the id, or COMMAND_REJECTED if nothing was written."""
        ws = self._ws
        if ws is None or self._status is not ConnectionStatus.CONNECTED:
            log.debug(f"[{self.name}] Not connected, dropping command: {body}")
            return COMMAND_REJECTED
        msg_id = self._ids.next()
        if not await self._write(ws, msg_id, body):
            return COMMAND_REJECTED
        return msg_id

    async def request(self, body: str, timeout: Optional[float] = None) -> CommandAck:
        """Send a command and wait for its "ok". Raises MSECommandError on "error"."""
        ws = self._ws
        if ws is None or self._status is not ConnectionStatus.CONNECTED:
            raise MSEConnectionError("Not connected to MSE")
        msg_id = self._ids.next()
        future = asyncio.get_running_loop().create_future()
        self._pending[msg_id] = future
        try:
            if not await self._write(ws, msg_id, body):
                raise MSEConnectionError(f"Failed to send command {msg_id}")
            return await asyncio.wait_for(future, timeout or self.request_timeout)
        finally:
            self._pending.pop(msg_id, None)

    async def get(self, path: str, depth: int = 1, timeout: Optional[float] = None) -> str:
        """Read a subtree of the engine's data model."""
        ack = await self.request(format_command("get", path, depth), timeout=timeout)
        return ack.payload

    async def _write(self, ws: Any, msg_id: int, body: str) -> bool:
        line = f"{msg_id} {body}\n"
        try:
            await ws.send(line)
        except (ConnectionClosed, OSError) as e:
            log.warning(f"[{self.name}] Failed to send command {msg_id}: {e}")
            return False
        log.debug(f"[{self.name}] → {line.rstrip()}")
        return True

    # ── On-air queries ────────────────────────────────────────────────

    def is_element_playing(self, element_id: str) -> bool:
        return self.state.is_playing(element_id)

    def get_playing_element_id(self, show_name: str, playlist_name: Optional[str] = None) -> Optional[str]:
        return self.state.find_element_id(show_name, playlist_name)

    def get_all_playing_element_ids(self) -> set[str]:
        return self.state.all_playing_element_ids()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "enabled": self.enabled,
            "status": self._status.value,
            "error": self.last_error,
            "reconnect_pending": self.reconnect_pending,
            "playing": sorted(self.get_all_playing_element_ids()),
        }

    # ── Event subscriptions ───────────────────────────────────────────

    def on_air_changed(self, callback: EventCallback) -> None:
        """Subscribe to on-air changes. Callback receives the set of playing element ids."""
        self._on_air_listeners.append(callback)

    def on_status_changed(self, callback: EventCallback) -> None:
        """Subscribe to connection status changes. Callback receives this client."""
        self._status_listeners.append(callback)

    async def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        await self._emit(self._status_listeners, self)

    async def _emit(self, listeners: list[EventCallback], payload: Any) -> None:
        for cb in listeners:
            try:
                await cb(payload)
            except Exception as e:
                log.error(f"[{self.name}] Listener error: {e}")
