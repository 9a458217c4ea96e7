"""
OBE Learning Platform
Academic alert API routes
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Path, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.connection import get_async_session, get_db
from ..database.models import (
    AcademicAlert, AlertPriority, AlertStatus, AlertType, User
)
from ..dependencies import (
    get_dispatcher,
    require_admin,
    require_authentication,
    require_staff,
    require_student
)
from ..engine.alerts import change_alert_status, query_alerts, raise_alert
from ..engine.dispatch import NotificationDispatcher
from ..engine.scheduler import run_alert_sweep

# Configure logging
logger = logging.getLogger(__name__)

# Router instance
router = APIRouter()


# Pydantic models
class AlertResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    student_id: uuid.UUID
    alert_type: AlertType
    priority: AlertPriority
    status: AlertStatus
    title: str
    message: str
    context_data: Optional[Dict[str, Any]] = None
    assigned_to_id: Optional[uuid.UUID] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime


class HelpRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    course_id: Optional[uuid.UUID] = None


class StatusChangeRequest(BaseModel):
    notes: Optional[str] = None


@router.get("", response_model=List[AlertResponse])
async def list_alerts(
    student_id: Optional[uuid.UUID] = Query(None),
    assigned_to: Optional[uuid.UUID] = Query(None),
    status: Optional[AlertStatus] = Query(None),
    alert_type: Optional[AlertType] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    skip: int = Query(0, ge=0),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Alerts visible to the current user's role, newest first"""
    return await query_alerts(
        db, current_user,
        student_id=student_id,
        assigned_to_id=assigned_to,
        status=status,
        alert_type=alert_type,
        limit=limit,
        skip=skip,
    )


@router.post("/help-request", response_model=AlertResponse, status_code=201)
async def request_help(
    request: HelpRequest,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Ask teaching staff for help"""
    alert, created = await raise_alert(
        db, current_user.id, AlertType.HELP_REQUEST,
        request.message,
        context={"course_id": str(request.course_id) if request.course_id else None},
        dispatcher=dispatcher,
        triggered_by_id=current_user.id,
        title=f"Help requested by {current_user.full_name}",
    )
    await db.commit()

    if not created:
        logger.info(f"Help request from {current_user.id} merged into open alert {alert.id}")
    return alert


async def _change_status(alert_id, target, request, current_user, db) -> AcademicAlert:
    alert = await change_alert_status(db, alert_id, current_user, target, notes=request.notes if request else None)
    await db.commit()
    logger.info(f"Alert {alert_id} {target.value} by {current_user.email}")
    return alert


@router.put("/{alert_id}/acknowledge", response_model=AlertResponse)
async def acknowledge_alert(
    request: Optional[StatusChangeRequest] = None,
    alert_id: uuid.UUID = Path(..., description="Alert ID"),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db)
):
    return await _change_status(alert_id, AlertStatus.ACKNOWLEDGED, request, current_user, db)


@router.put("/{alert_id}/resolve", response_model=AlertResponse)
async def resolve_alert(
    request: Optional[StatusChangeRequest] = None,
    alert_id: uuid.UUID = Path(..., description="Alert ID"),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db)
):
    return await _change_status(alert_id, AlertStatus.RESOLVED, request, current_user, db)


@router.put("/{alert_id}/dismiss", response_model=AlertResponse)
async def dismiss_alert(
    request: Optional[StatusChangeRequest] = None,
    alert_id: uuid.UUID = Path(..., description="Alert ID"),
    current_user: User = Depends(require_staff),
    db: AsyncSession = Depends(get_db)
):
    return await _change_status(alert_id, AlertStatus.DISMISSED, request, current_user, db)


@router.post("/sweep")
async def trigger_alert_sweep(
    current_user: User = Depends(require_admin),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher)
):
    """Run the periodic alert sweep now"""
    logger.info(f"Alert sweep triggered by {current_user.email}")
    return await run_alert_sweep(get_async_session, dispatcher)
