"""
WebSocket broadcasts of plan and envelope changes
"""

import json
import logging
from typing import Dict, List
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from dinner.core.db import get_db
from dinner.core.time import utcnow
from dinner.models import Event

logger = logging.getLogger(__name__)

class WebSocketManager:
    """Connections grouped per event so organizers see plan changes live"""

    def __init__(self):
        # event_id -> open sockets
        self.active_connections: Dict[int, List[WebSocket]] = {}

    async def connect(self, websocket: WebSocket, event_id: int):
        await websocket.accept()
        self.active_connections.setdefault(event_id, []).append(websocket)
        logger.info(f"WebSocket connected to event {event_id}. Total connections: {self.get_connection_count(event_id)}")

    def disconnect(self, websocket: WebSocket, event_id: int):
        connections = self.active_connections.get(event_id)
        if not connections or websocket not in connections:
            return
        connections.remove(websocket)
        logger.info(f"WebSocket disconnected from event {event_id}. Remaining connections: {len(connections)}")
        if not connections:
            del self.active_connections[event_id]

    async def send_personal_message(self, message: dict, websocket: WebSocket):
        await websocket.send_text(json.dumps(message, default=str))

    async def broadcast_to_event(self, event_id: int, message: dict):
        """Send a message to every socket of an event, dropping dead ones"""
        connections = list(self.active_connections.get(event_id, []))
        if not connections:
            logger.debug(f"No active connections for event {event_id}")
            return

        payload = json.dumps({**message, "sent_at": utcnow().isoformat()}, default=str)
        disconnected = []
        for websocket in connections:
            try:
                await websocket.send_text(payload)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.error(f"Error broadcasting to websocket: {e}")
                disconnected.append(websocket)

        for websocket in disconnected:
            self.disconnect(websocket, event_id)

    async def broadcast_plan_update(self, event_id: int, update_type: str, data: dict = None):
        await self.broadcast_to_event(event_id, {"type": update_type, "event_id": event_id, "data": data or {}})

    def get_connection_count(self, event_id: int) -> int:
        return len(self.active_connections.get(event_id, []))

# Global WebSocket manager instance
websocket_manager = WebSocketManager()

router = APIRouter()

@router.websocket("/events/{event_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    event_id: int,
    db: Session = Depends(get_db)
):
    """Live feed of rematches, cascades, activations and delays for one event"""
    event = db.query(Event).filter(Event.id == event_id).first()
    if not event:
        await websocket.close(code=4004, reason="Event not found")
        return

    await websocket_manager.connect(websocket, event_id)
    try:
        await websocket_manager.send_personal_message({
            "type": "connection",
            "message": f"Connected to event: {event.name}",
            "event_id": event_id,
            "active_match_plan_id": event.active_match_plan_id,
            "connection_count": websocket_manager.get_connection_count(event_id)
        }, websocket)

        while True:
            data = await websocket.receive_text()
            try:
                client_message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON received from WebSocket: {data}")
                continue

            if client_message.get("type") == "ping":
                await websocket_manager.send_personal_message(
                    {"type": "pong", "timestamp": client_message.get("timestamp")}, websocket
                )
    except WebSocketDisconnect:
        pass
    finally:
        websocket_manager.disconnect(websocket, event_id)
