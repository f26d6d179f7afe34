"""WebSocket endpoint for real-time incident and SLA broadcasting."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

router = APIRouter(tags=["websocket"])
logger = logging.getLogger("incidentdesk.websocket")

CHANNELS = frozenset({"incidents", "sla", "all"})


class ConnectionManager:
    """Manages WebSocket connections with channel subscriptions.

    Clients can subscribe to channels: 'incidents', 'sla', or 'all'.
    """

    def __init__(self) -> None:
        self.connections: dict[WebSocket, set[str]] = {}
        self._heartbeat_interval = 30  # seconds

    async def connect(self, websocket: WebSocket, channels: Optional[set[str]] = None) -> None:
        await websocket.accept()
        self.connections[websocket] = channels or {"all"}

    def disconnect(self, websocket: WebSocket) -> None:
        self.connections.pop(websocket, None)

    async def broadcast(self, message: dict, channel: str = "all") -> int:
        """Send to every client subscribed to ``channel``; returns delivery count."""
        dead_connections: list[WebSocket] = []
        delivered = 0

        for ws, channels in list(self.connections.items()):
            if "all" in channels or channel in channels:
                try:
                    await ws.send_json(message)
                    delivered += 1
                except Exception as exc:
                    logger.debug("Dropping websocket after send failure: %s", exc)
                    dead_connections.append(ws)

        for ws in dead_connections:
            self.connections.pop(ws, None)
        return delivered

    async def broadcast_incident(self, event_type: str, incident_data: dict) -> int:
        return await self.broadcast(
            {"type": event_type, "data": incident_data},
            channel="incidents",
        )

    async def broadcast_sla(self, event_type: str, incident_data: dict) -> int:
        return await self.broadcast(
            {"type": event_type, "data": incident_data},
            channel="sla",
        )

    @property
    def connection_count(self) -> int:
        return len(self.connections)


manager = ConnectionManager()


def _parse_channels(raw: str) -> set[str]:
    channels = {c.strip() for c in raw.split(",") if c.strip()}
    return (channels & CHANNELS) or {"all"}


@router.websocket("/ws/incidents")
async def websocket_endpoint(websocket: WebSocket):
    channels = _parse_channels(websocket.query_params.get("channels", "all"))

    await manager.connect(websocket, channels)
    try:
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_text(),
                    timeout=manager._heartbeat_interval,
                )
                try:
                    msg = json.loads(data)
                except json.JSONDecodeError:
                    await websocket.send_json({"type": "error", "message": "Expected JSON"})
                    continue

                msg_type = msg.get("type", "") if isinstance(msg, dict) else ""
                if msg_type == "subscribe":
                    new_channels = _parse_channels(",".join(msg.get("channels", [])))
                    manager.connections[websocket] = new_channels
                    await websocket.send_json({"type": "subscribed", "channels": sorted(new_channels)})
                elif msg_type == "ping":
                    await websocket.send_json({"type": "pong"})
                else:
                    await websocket.send_json({"type": "error", "message": f"Unknown message type '{msg_type}'"})

            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "heartbeat"})
                except Exception:
                    break

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(websocket)
