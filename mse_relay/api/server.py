"""
api/server.py — FastAPI REST API + WebSocket push of on-air state.

UI collaborators use this to ask "what is on air?" without speaking PepTalk:
  - /health, /healthz (503 when no engine channel is connected)
  - channel status, connect/disconnect, raw command passthrough
  - /reload re-reads config.yaml and applies channel changes to the live pool
  - on-air queries by element id or show/playlist
  - /ws pushes on_air_changed + status_changed events to every client
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from mse_relay import __version__
from mse_relay.config import get_settings, reload_settings
from mse_relay.core import (
    COMMAND_REJECTED,
    ChannelPool,
    MSEClient,
    MSECommandError,
    MSEConnectionError,
    get_pool,
)

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# WebSocket connection pool
# ──────────────────────────────────────────────────────────────────────────────

class WSConnectionPool:
    def __init__(self):
        self._connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._connections.append(ws)
        log.info(f"WS client connected. Total: {len(self._connections)}")

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self._connections:
            self._connections.remove(ws)
        log.info(f"WS client disconnected. Total: {len(self._connections)}")

    async def broadcast(self, message: dict) -> None:
        if not self._connections:
            return
        data = json.dumps(message)
        dead = []
        for ws in self._connections:
            try:
                await ws.send_text(data)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.disconnect(ws)

    def count(self) -> int:
        return len(self._connections)


ws_pool = WSConnectionPool()


class CommandBody(BaseModel):
    command: str
    wait: bool = False
    timeout: Optional[float] = None


def wire_broadcasts(pool: ChannelPool) -> None:
    """Forward every channel's on-air and status changes to WS clients."""
    for client in pool.clients():
        _wire_client(client)


def _wire_client(client: MSEClient) -> None:
    async def on_air(ids: set[str]):
        await ws_pool.broadcast({
            "event": "on_air_changed",
            "data": {"channel": client.name, "playing": sorted(ids)},
        })

    async def on_status(c: MSEClient):
        await ws_pool.broadcast({"event": "status_changed", "data": c.to_dict()})

    client.on_air_changed(on_air)
    client.on_status_changed(on_status)


# ──────────────────────────────────────────────────────────────────────────────
# App factory
# ──────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    log.info(f"mse-relay API starting on {settings.api.host}:{settings.api.port}")
    try:
        wire_broadcasts(get_pool())
        log.info("On-air passthrough registered")
    except RuntimeError:
        pass  # pool not initialized, channel endpoints answer 503
    yield
    log.info("mse-relay API shutting down.")


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="mse-relay",
        description="Media Sequencer control link & on-air state relay",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── REST auth dependency ──────────────────────────────────────────

    async def verify_api_key(authorization: Optional[str] = Header(None)):
        if settings.api.api_key:
            if not authorization or not authorization.startswith("Bearer "):
                raise HTTPException(status_code=401, detail="Missing Bearer token")
            token = authorization.removeprefix("Bearer ").strip()
            if token != settings.api.api_key:
                raise HTTPException(status_code=403, detail="Invalid API key")

    auth = Depends(verify_api_key)

    def pool() -> ChannelPool:
        try:
            return get_pool()
        except RuntimeError:
            raise HTTPException(status_code=503, detail="Channel pool not initialized")

    def channel(name: str) -> MSEClient:
        try:
            return pool().get(name)
        except ValueError as e:
            raise HTTPException(status_code=404, detail=str(e))

    # ─────────────────────────────────────────────────────────────────
    # Health
    # ─────────────────────────────────────────────────────────────────

    @app.get("/health", tags=["System"])
    async def health():
        p = pool()
        return {
            "status": "ok",
            "channels": {name: status.value for name, status in p.statuses().items()},
            "ws_clients": ws_pool.count(),
            "version": __version__,
        }

    @app.get("/healthz", tags=["System"])
    async def healthz():
        """Machine-readable health check. Returns 503 when no engine is connected."""
        if not pool().any_connected():
            raise HTTPException(
                status_code=503,
                detail={"status": "degraded", "reason": "No MSE channel connected"},
            )
        return {"status": "ok"}

    @app.post("/reload", tags=["System"], dependencies=[auth])
    async def reload_config():
        """Re-read config.yaml + env and bring the running channels in line with it."""
        p = pool()
        known = set(p.names())
        fresh = reload_settings()
        await p.sync(fresh.effective_channels())
        for client in p.clients():
            if client.name not in known:
                _wire_client(client)
        log.info(f"Configuration reloaded from {fresh.config_file}")
        return {"channels": [c.to_dict() for c in p.clients()]}

    # ─────────────────────────────────────────────────────────────────
    # Channels
    # ─────────────────────────────────────────────────────────────────

    @app.get("/channels", tags=["Channels"], dependencies=[auth])
    async def list_channels():
        return [c.to_dict() for c in pool().clients()]

    @app.get("/channels/{name}", tags=["Channels"], dependencies=[auth])
    async def channel_status(name: str):
        return channel(name).to_dict()

    @app.post("/channels/{name}/connect", tags=["Channels"], dependencies=[auth])
    async def connect_channel(name: str):
        client = channel(name)
        connected = await client.connect()
        return {**client.to_dict(), "connected": connected}

    @app.post("/channels/{name}/disconnect", tags=["Channels"], dependencies=[auth])
    async def disconnect_channel(name: str):
        client = channel(name)
        await client.disconnect()
        return client.to_dict()

    @app.post("/channels/{name}/command", tags=["Channels"], dependencies=[auth])
    async def send_command(name: str, body: CommandBody):
        """
        Pass a raw PepTalk command to the engine. With wait=true the call blocks
        until the engine answers and returns the reply payload.
        """
        client = channel(name)
        if not body.wait:
            msg_id = await client.send_command(body.command)
            if msg_id == COMMAND_REJECTED:
                raise HTTPException(status_code=503, detail=f"Channel '{name}' not connected")
            return {"id": msg_id, "status": "sent"}
        try:
            ack = await client.request(body.command, timeout=body.timeout)
        except MSEConnectionError as e:
            raise HTTPException(status_code=503, detail=str(e))
        except MSECommandError as e:
            raise HTTPException(status_code=502, detail=str(e))
        except asyncio.TimeoutError:
            raise HTTPException(status_code=504, detail="MSE did not answer in time")
        return {"id": int(ack.request_id), "status": "ok", "payload": ack.payload}

    # ─────────────────────────────────────────────────────────────────
    # On-air state
    # ─────────────────────────────────────────────────────────────────

    @app.get("/playing", tags=["On Air"], dependencies=[auth])
    async def playing():
        p = pool()
        return {
            "playing": sorted(p.all_playing_element_ids()),
            "channels": {
                c.name: {key: rec.to_dict() for key, rec in c.state.snapshot().items()}
                for c in p.clients()
            },
        }

    @app.get("/playing/{element_id}", tags=["On Air"], dependencies=[auth])
    async def element_playing(element_id: str):
        return {"element_id": element_id, "playing": pool().is_element_playing(element_id)}

    @app.get("/shows/{show_name}/playing", tags=["On Air"], dependencies=[auth])
    async def show_playing(show_name: str, playlist: Optional[str] = None):
        element_id = pool().get_playing_element_id(show_name, playlist)
        if element_id is None:
            raise HTTPException(status_code=404, detail=f"Nothing on air for show '{show_name}'")
        return {"show": show_name, "playlist": playlist, "element_id": element_id}

    # ─────────────────────────────────────────────────────────────────
    # WebSocket relay with auth
    # ─────────────────────────────────────────────────────────────────

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        token: Optional[str] = Query(None),
    ):
        settings = get_settings()

        if settings.api.api_key:
            if not token or token != settings.api.api_key:
                await websocket.close(code=4001, reason="Unauthorized")
                return

        await ws_pool.connect(websocket)
        try:
            await websocket.send_text(json.dumps({
                "event": "connected",
                "data": _status_payload(),
            }))
        except Exception:
            pass

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    msg = json.loads(raw)
                    response = await _handle_ws_command(msg)
                    await websocket.send_text(json.dumps(response))
                except json.JSONDecodeError:
                    await websocket.send_text(json.dumps({"error": "Invalid JSON"}))
                except Exception as e:
                    await websocket.send_text(json.dumps({"error": str(e)}))
        except WebSocketDisconnect:
            ws_pool.disconnect(websocket)

    def _status_payload() -> dict:
        try:
            p = get_pool()
        except RuntimeError:
            return {"channels": [], "playing": [], "version": __version__}
        return {
            "channels": [c.to_dict() for c in p.clients()],
            "playing": sorted(p.all_playing_element_ids()),
            "version": __version__,
        }

    async def _handle_ws_command(msg: dict) -> dict:
        cmd = msg.get("cmd", "")
        params = msg.get("params", {})

        match cmd:
            case "get_status":
                return _status_payload()
            case "send_command":
                client = get_pool().get(params["channel"])
                msg_id = await client.send_command(params["command"])
                if msg_id == COMMAND_REJECTED:
                    return {"error": f"Channel '{client.name}' not connected"}
                return {"id": msg_id, "status": "sent"}
            case "is_playing":
                element_id = params["element_id"]
                return {"element_id": element_id, "playing": get_pool().is_element_playing(element_id)}
            case _:
                return {"error": f"Unknown command: {cmd}"}

    return app
