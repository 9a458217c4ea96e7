"""
OBE Learning Platform
Notification dispatch: the capability handed to engines for real-time pushes
"""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as redis
from fastapi import WebSocket
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Notification, NotificationType
from ..utils.helpers import utcnow

# Configure logging
logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """Delivers JSON payloads to users in real time"""

    @abstractmethod
    async def send_to_user(self, user_id: str, message: Dict[str, Any]) -> bool:
        """Push to one user; True if the transport accepted it"""

    async def send_to_users(self, user_ids: Iterable[str], message: Dict[str, Any]) -> Dict[str, bool]:
        return {user_id: await self.send_to_user(user_id, message) for user_id in user_ids}

    @abstractmethod
    async def broadcast(self, message: Dict[str, Any]) -> None:
        ...


# WebSocket connection manager
class ConnectionManager(NotificationDispatcher):
    def __init__(self):
        self.active_connections: Dict[str, WebSocket] = {}
        self.user_connections: Dict[str, List[str]] = {}

    async def connect(self, websocket: WebSocket, user_id: str, connection_id: str):
        await websocket.accept()
        self.active_connections[connection_id] = websocket

        if user_id not in self.user_connections:
            self.user_connections[user_id] = []
        self.user_connections[user_id].append(connection_id)

        logger.info(f"WebSocket connected: user={user_id}, connection={connection_id}")

    def disconnect(self, user_id: str, connection_id: str):
        self.active_connections.pop(connection_id, None)

        if user_id in self.user_connections:
            if connection_id in self.user_connections[user_id]:
                self.user_connections[user_id].remove(connection_id)

            if not self.user_connections[user_id]:
                del self.user_connections[user_id]

        logger.info(f"WebSocket disconnected: user={user_id}, connection={connection_id}")

    async def send_to_user(self, user_id: str, message: Dict[str, Any]) -> bool:
        delivered = False
        dead_connections = []

        for connection_id in list(self.user_connections.get(user_id, [])):
            websocket = self.active_connections.get(connection_id)
            if websocket is None:
                continue
            try:
                await websocket.send_text(json.dumps(message, default=str))
                delivered = True
            except Exception as e:
                logger.warning(f"Dropping dead connection {connection_id}: {e}")
                dead_connections.append(connection_id)

        # Clean up dead connections
        for connection_id in dead_connections:
            self.disconnect(user_id, connection_id)

        return delivered

    async def broadcast(self, message: Dict[str, Any]) -> None:
        for user_id in list(self.user_connections):
            await self.send_to_user(user_id, message)


class RedisNotificationDispatcher(NotificationDispatcher):
    """Publishes to per-user Redis channels for out-of-process socket gateways"""

    def __init__(self, client: redis.Redis, channel_prefix: str = "notifications"):
        self.client = client
        self.channel_prefix = channel_prefix

    def channel_for(self, user_id: str) -> str:
        return f"{self.channel_prefix}:{user_id}"

    async def send_to_user(self, user_id: str, message: Dict[str, Any]) -> bool:
        try:
            await self.client.publish(self.channel_for(user_id), json.dumps(message, default=str))
            return True
        except redis.RedisError as e:
            logger.error(f"Redis publish failed for user {user_id}: {e}")
            return False

    async def broadcast(self, message: Dict[str, Any]) -> None:
        try:
            await self.client.publish(f"{self.channel_prefix}:all", json.dumps(message, default=str))
        except redis.RedisError as e:
            logger.error(f"Redis broadcast failed: {e}")


def build_dispatcher(backend: str, connections: ConnectionManager, redis_client: Optional[redis.Redis] = None,
                     channel_prefix: str = "notifications") -> NotificationDispatcher:
    if backend == "redis":
        if redis_client is None:
            logger.warning("Redis notification backend requested without a client; using WebSocket delivery")
            return connections
        return RedisNotificationDispatcher(redis_client, channel_prefix)
    return connections


def notification_message(notification_data: Dict[str, Any], kind: str = "notification") -> Dict[str, Any]:
    return {
        "type": kind,
        "data": notification_data,
        "timestamp": utcnow().isoformat(),
    }


async def create_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    notification_type: NotificationType,
    title: str,
    message: str,
    payload: Optional[Dict[str, Any]] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> Notification:
    """Persist a general notification and push it if a dispatcher is given"""
    notification = Notification(
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        message=message,
        payload=payload or {},
    )
    db.add(notification)
    await db.flush()

    if dispatcher is not None:
        try:
            await dispatcher.send_to_user(str(user_id), notification_message({
                "id": str(notification.id),
                "title": title,
                "message": message,
                "type": notification_type.value,
                "payload": notification.payload,
            }))
        except Exception as e:
            logger.error(f"Real-time delivery of notification {notification.id} failed: {e}")

    return notification


__all__ = [
    "NotificationDispatcher",
    "ConnectionManager",
    "RedisNotificationDispatcher",
    "build_dispatcher",
    "notification_message",
    "create_notification",
]
