# routers/websocket_router.py — Real-time board updates and reminder pushes
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Set, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from sqlalchemy import select

from auth import AuthService
from database import get_db_context
from models import Board

router = APIRouter(tags=["WebSocket"])
logger = logging.getLogger("kanban.ws")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionManager:
    """Tracks every open socket per user (one per tab) and board-channel subscriptions"""

    def __init__(self):
        self._connections: Dict[str, Set[WebSocket]] = {}  # user_id -> {ws}
        self._subscriptions: Dict[str, Set[str]] = {}  # channel -> {user_ids}

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        self._connections.setdefault(user_id, set()).add(websocket)
        logger.info(f"WS connected: user={user_id[:8]} sockets={len(self._connections[user_id])}")

    def disconnect(self, user_id: str, websocket: Optional[WebSocket] = None):
        """Drop one socket, or all of them when none is given.

        Channel subscriptions are per user and only go once the last socket closes.
        """
        sockets = self._connections.get(user_id)
        if sockets is not None and websocket is not None:
            sockets.discard(websocket)
        if sockets and websocket is not None:
            logger.info(f"WS tab closed: user={user_id[:8]} sockets={len(sockets)}")
            return
        self._connections.pop(user_id, None)
        for channel in list(self._subscriptions.keys()):
            self._subscriptions[channel].discard(user_id)
            if not self._subscriptions[channel]:
                del self._subscriptions[channel]
        logger.info(f"WS disconnected: user={user_id[:8]}")

    def subscribe(self, user_id: str, channel: str):
        self._subscriptions.setdefault(channel, set()).add(user_id)

    def unsubscribe(self, user_id: str, channel: str):
        if channel in self._subscriptions:
            self._subscriptions[channel].discard(user_id)
            if not self._subscriptions[channel]:
                del self._subscriptions[channel]

    def subscribers(self, channel: str) -> Set[str]:
        return set(self._subscriptions.get(channel, set()))

    async def send_to_user(self, user_id: str, message: dict):
        for ws in list(self._connections.get(user_id, ())):
            try:
                await ws.send_json(message)
            except (RuntimeError, WebSocketDisconnect) as e:
                logger.info(f"Dropping dead socket for {user_id[:8]}: {e}")
                self.disconnect(user_id, ws)

    async def broadcast_to_channel(self, channel: str, message: dict, exclude_user: Optional[str] = None):
        for user_id in self.subscribers(channel):
            if user_id != exclude_user:
                await self.send_to_user(user_id, message)

    def is_online(self, user_id: str) -> bool:
        return bool(self._connections.get(user_id))

    def get_stats(self) -> dict:
        return {
            "online_users": len(self._connections),
            "total_connections": sum(len(s) for s in self._connections.values()),
            "channels": len(self._subscriptions),
        }


# Global connection manager
manager = ConnectionManager()


def board_channel(board_id: str) -> str:
    return f"board:{board_id}"


async def publish_board_event(board_id: str, event: str, payload: dict, actor_id: Optional[str] = None):
    """Fan a board change out to everyone watching the board"""
    await manager.broadcast_to_channel(board_channel(board_id), {
        "type": event,
        "board_id": board_id,
        "actor_id": actor_id,
        "payload": payload,
        "timestamp": _now(),
    }, exclude_user=actor_id)


async def _can_watch(user_id: str, channel: str) -> bool:
    if not channel.startswith("board:"):
        return False
    board_id = channel.split(":", 1)[1]
    async with get_db_context() as db:
        owner = (await db.execute(
            select(Board.owner_id).where(Board.id == board_id, Board.deleted_at.is_(None))
        )).scalar_one_or_none()
    return owner == user_id


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(...),
):
    """Board change feed. Clients send {"type": "subscribe", "channel": "board:<id>"}."""
    payload = AuthService.decode_access_token(token)
    user_id = payload.get("sub") if payload else None
    if not user_id:
        await websocket.close(code=4001, reason="Authentication failed")
        return

    await manager.connect(websocket, user_id)
    await websocket.send_json({"type": "connected", "user_id": user_id, "timestamp": _now()})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                data = None
            if not isinstance(data, dict):
                await websocket.send_json({"type": "error", "detail": "Messages must be JSON objects"})
                continue
            msg_type = data.get("type", "")

            if msg_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": _now()})

            elif msg_type == "subscribe":
                channel = data.get("channel", "")
                if isinstance(channel, str) and channel and await _can_watch(user_id, channel):
                    manager.subscribe(user_id, channel)
                    await websocket.send_json({"type": "subscribed", "channel": channel})
                else:
                    await websocket.send_json({"type": "error", "detail": "Channel not available", "channel": channel})

            elif msg_type == "unsubscribe":
                channel = data.get("channel", "")
                if isinstance(channel, str) and channel:
                    manager.unsubscribe(user_id, channel)
                    await websocket.send_json({"type": "unsubscribed", "channel": channel})

    except WebSocketDisconnect:
        logger.debug(f"WS closed by client: user={user_id[:8]}")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        manager.disconnect(user_id, websocket)


@router.get("/ws/stats")
async def websocket_stats():
    """Get WebSocket connection statistics"""
    return manager.get_stats()
