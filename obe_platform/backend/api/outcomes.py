"""
OBE Learning Platform
Outcome mapping and attainment API routes
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.connection import get_db
from ..database.models import User, UserRole
from ..dependencies import (
    ensure_student_access,
    require_authentication,
    require_curriculum_editor,
    require_programme_staff
)
from ..engine.attainment import AttainmentScope, query_attainment
from ..engine.mapping_graph import curriculum_matrix, matrix_to_csv, outgoing_edges, upsert_mapping
from ..exceptions import AuthorizationException, ValidationException

# Configure logging
logger = logging.getLogger(__name__)

# Router instance
router = APIRouter()


# Pydantic models
class MappingRequest(BaseModel):
    source_outcome_id: uuid.UUID
    target_outcome_id: uuid.UUID
    weight: float = Field(1.0, description="Clamped to [0, 1]")


@router.put("/mappings")
async def put_outcome_mapping(
    request: MappingRequest,
    current_user: User = Depends(require_curriculum_editor),
    db: AsyncSession = Depends(get_db)
):
    """Create or re-weight a CLO->PLO or PLO->ILO edge"""
    result = await upsert_mapping(
        db,
        request.source_outcome_id,
        request.target_outcome_id,
        request.weight,
        created_by_id=current_user.id,
    )
    await db.commit()

    if result["weight_status"] != "ok":
        result["warning"] = (
            f"Outgoing weight {result['total_outgoing_weight']} is {result['weight_status']} "
            f"the recommended range"
        )
    return result


@router.get("/attainment")
async def get_attainment(
    scope: str = Query(..., description="student_course or program"),
    student_id: Optional[uuid.UUID] = Query(None),
    course_id: Optional[uuid.UUID] = Query(None),
    program_id: Optional[uuid.UUID] = Query(None),
    outcome_id: Optional[uuid.UUID] = Query(None),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Attainment per outcome; null attainment means no graded evidence"""
    if scope == AttainmentScope.STUDENT_COURSE:
        if student_id is None and current_user.role == UserRole.STUDENT:
            student_id = current_user.id
        attainment_scope = AttainmentScope(scope, student_id=student_id, course_id=course_id)
        await ensure_student_access(db, current_user, student_id)
    elif scope == AttainmentScope.PROGRAM:
        if current_user.role == UserRole.STUDENT:
            raise AuthorizationException("Program attainment is available to staff only")
        attainment_scope = AttainmentScope(scope, program_id=program_id)
    else:
        raise ValidationException(f"Unknown attainment scope '{scope}'", field="scope", value=scope)

    rows = await query_attainment(db, attainment_scope, outcome_id)
    return {"scope": scope, "outcomes": rows}


@router.get("/matrix/{program_id}")
async def get_curriculum_matrix(
    program_id: uuid.UUID = Path(..., description="Program ID"),
    format: str = Query("json", pattern="^(json|csv)$"),
    current_user: User = Depends(require_programme_staff),
    db: AsyncSession = Depends(get_db)
):
    """PLO x course coverage grid, as JSON or CSV"""
    matrix = await curriculum_matrix(db, program_id)
    if format == "csv":
        return Response(
            content=matrix_to_csv(matrix),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="curriculum_matrix_{program_id}.csv"'}
        )
    return matrix


@router.get("/{outcome_id}/mappings")
async def get_outcome_mappings(
    outcome_id: uuid.UUID = Path(..., description="Outcome ID"),
    current_user: User = Depends(require_authentication),
    db: AsyncSession = Depends(get_db)
):
    """Edges leaving an outcome with the total weight status"""
    return await outgoing_edges(db, outcome_id)
