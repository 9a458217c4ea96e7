"""
OBE Learning Platform
Notification API routes and the real-time WebSocket channel
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel
from sqlalchemy import desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..database.connection import get_db
from ..database.models import AlertNotification, Notification, User
from ..dependencies import require_authentication, verify_jwt_token
from ..exceptions import AppException, NotFoundException
from ..utils.helpers import utcnow

# Configure logging
logger = logging.getLogger(__name__)

# Router instance
router = APIRouter()


# Pydantic models
class AlertNotificationResponse(BaseModel):
    id: str
    alert_id: str
    title: str
    message: str
    priority: str
    alert_type: str
    is_read: bool
    is_delivered: bool
    created_at: datetime
    read_at: Optional[datetime]


class NotificationResponse(BaseModel):
    id: str
    title: str
    message: str
    notification_type: str
    payload: Dict[str, Any]
    is_read: bool
    created_at: datetime
    read_at: Optional[datetime]


def _alert_notification_response(row: AlertNotification) -> AlertNotificationResponse:
    return AlertNotificationResponse(
        id=str(row.id),
        alert_id=str(row.alert_id),
        title=row.alert.title,
        message=row.alert.message,
        priority=row.alert.priority.value,
        alert_type=row.alert.alert_type.value,
        is_read=row.is_read,
        is_delivered=row.is_delivered,
        created_at=row.created_at,
        read_at=row.read_at,
    )


# WebSocket endpoint
@router.websocket("/ws/{user_id}")
async def websocket_endpoint(
    websocket: WebSocket,
    user_id: str,
    token: str = Query(..., description="JWT token for authentication")
):
    """WebSocket endpoint for real-time notifications"""
    manager = websocket.app.state.connections

    try:
        payload = verify_jwt_token(token)
    except AppException as e:
        logger.warning(f"WebSocket rejected for user {user_id}: {e.message}")
        await websocket.close(code=4001, reason="Authentication failed")
        return

    if payload.get("sub") != user_id:
        await websocket.close(code=4001, reason="Invalid user token")
        return

    connection_id = str(uuid.uuid4())
    await manager.connect(websocket, user_id, connection_id)

    try:
        while True:
            # Keep connection alive and handle any client messages
            data = await websocket.receive_text()

            # Handle ping/pong for connection health
            if data == "ping":
                await websocket.send_text("pong")

    except WebSocketDisconnect:
        manager.disconnect(user_id, connection_id)


# API Routes
@router.get("", response_model=List[AlertNotificationResponse])
async def get_alert_notifications(
    unread_only: bool = Query(False, description="Get only unread notifications"),
    limit: int = Query(50, ge=1, le=200, description="Number of notifications to return"),
    skip: int = Query(0, ge=0, description="Number of notifications to skip"),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Alert notifications for the current user"""
    query = (
        select(AlertNotification)
        .options(selectinload(AlertNotification.alert))
        .where(AlertNotification.user_id == current_user.id)
    )
    if unread_only:
        query = query.where(AlertNotification.is_read.is_(False))

    result = await db.execute(query.order_by(desc(AlertNotification.created_at)).offset(skip).limit(limit))
    return [_alert_notification_response(row) for row in result.scalars()]


@router.get("/unread")
async def get_unread_notifications(
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Unread alert notifications plus the unread count"""
    result = await db.execute(
        select(AlertNotification)
        .options(selectinload(AlertNotification.alert))
        .where(AlertNotification.user_id == current_user.id, AlertNotification.is_read.is_(False))
        .order_by(desc(AlertNotification.created_at))
    )
    rows = [_alert_notification_response(row) for row in result.scalars()]
    return {"unread_count": len(rows), "notifications": rows}


@router.put("/{notification_id}/read")
async def mark_notification_read(
    notification_id: uuid.UUID = Path(..., description="Notification ID"),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Mark an alert notification as read"""
    result = await db.execute(
        select(AlertNotification).where(
            AlertNotification.id == notification_id,
            AlertNotification.user_id == current_user.id
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise NotFoundException("Notification not found", resource_type="notification",
                                resource_id=str(notification_id))

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await db.commit()

    return {"message": "Notification marked as read", "read_at": notification.read_at}


@router.get("/general", response_model=List[NotificationResponse])
async def get_general_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Grade-released and other non-alert notifications"""
    query = select(Notification).where(Notification.user_id == current_user.id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))

    result = await db.execute(query.order_by(desc(Notification.created_at)).limit(limit))
    return [
        NotificationResponse(
            id=str(n.id),
            title=n.title,
            message=n.message,
            notification_type=n.notification_type.value,
            payload=n.payload or {},
            is_read=n.is_read,
            created_at=n.created_at,
            read_at=n.read_at,
        )
        for n in result.scalars()
    ]


@router.put("/general/{notification_id}/read")
async def mark_general_notification_read(
    notification_id: uuid.UUID = Path(..., description="Notification ID"),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == current_user.id
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise NotFoundException("Notification not found", resource_type="notification",
                                resource_id=str(notification_id))

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await db.commit()

    return {"message": "Notification marked as read", "read_at": notification.read_at}


@router.get("/unread-count")
async def get_unread_count(
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    alerts = await db.scalar(
        select(func.count(AlertNotification.id)).where(
            AlertNotification.user_id == current_user.id, AlertNotification.is_read.is_(False)
        )
    )
    general = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user.id, Notification.is_read.is_(False)
        )
    )
    return {"alerts": alerts or 0, "general": general or 0, "total": (alerts or 0) + (general or 0)}
