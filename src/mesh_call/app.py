"""FastAPI application exposing the relay over WebSockets."""
from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect

from .config import RelaySettings
from .diagnostics import collect_diagnostics
from .relay import Relay
from .version import APP_VERSION


def create_app(
    settings: RelaySettings | None = None,
    *,
    relay: Relay | None = None,
) -> FastAPI:
    app = FastAPI(title="mesh-call relay", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    if settings is None:
        settings = RelaySettings()
    if relay is None:
        relay = Relay()

    app.state.settings = settings
    app.state.relay = relay

    @app.get("/api/health")
    async def get_health() -> dict[str, str]:
        return {"status": "ok", "version": APP_VERSION}

    @app.get("/api/room")
    async def get_room() -> dict[str, object]:
        return relay.room_status()

    @app.get("/api/room/{participant_id}")
    async def get_participant(participant_id: str) -> dict[str, object]:
        for member in relay.room_members():
            if member.participant_id == participant_id:
                return {"id": member.participant_id, "name": member.display_name}
        raise HTTPException(status_code=404, detail="Participant not in the room")

    @app.get("/api/diagnostics")
    async def get_diagnostics() -> dict[str, object]:
        return collect_diagnostics()

    @app.websocket("/ws")
    async def relay_socket(websocket: WebSocket) -> None:
        await websocket.accept()

        async def _send(message: dict[str, object]) -> None:
            await websocket.send_json(message)

        participant_id = await relay.connect(_send)
        try:
            while True:
                text = await websocket.receive_text()
                await relay.handle(participant_id, text)
        except WebSocketDisconnect as exc:
            logger.debug("WebSocket for %s closed with code %s", participant_id, exc.code)
        finally:
            await relay.disconnect(participant_id)

    return app


__all__ = ["create_app"]
