"""
OBE Learning Platform
Outcome mapping graph: weighted CLO -> PLO -> ILO edges
"""

import csv
import io
import logging
import uuid
from collections import defaultdict, deque
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Course, LearningOutcome, OutcomeMapping, OutcomeType, Program
from ..exceptions import InvalidOutcomeMappingException, ResourceNotFoundByIdException
from ...config import get_settings

# Configure logging
logger = logging.getLogger(__name__)

# (child type, parent type)
VALID_EDGE_TYPES = {
    (OutcomeType.CLO, OutcomeType.PLO),
    (OutcomeType.PLO, OutcomeType.ILO),
}


def validate_edge_types(source_type: OutcomeType, target_type: OutcomeType):
    if (source_type, target_type) not in VALID_EDGE_TYPES:
        raise InvalidOutcomeMappingException(
            f"{source_type.value} cannot map to {target_type.value}; allowed pairs are CLO->PLO and PLO->ILO",
            source_type=source_type.value,
            target_type=target_type.value,
        )


def clamp_weight(weight: float) -> float:
    return min(1.0, max(0.0, float(weight)))


def weight_status(total: float, lower: Optional[float] = None, upper: Optional[float] = None) -> str:
    """'under', 'ok' or 'over' against the advisory outgoing-weight band"""
    settings = get_settings()
    lower = settings.MAPPING_WEIGHT_WARN_MIN if lower is None else lower
    upper = settings.MAPPING_WEIGHT_WARN_MAX if upper is None else upper
    if total < lower:
        return "under"
    if total > upper:
        return "over"
    return "ok"


def has_path(edges: Iterable[Tuple[uuid.UUID, uuid.UUID]], start: uuid.UUID, goal: uuid.UUID) -> bool:
    """True if goal is reachable from start following source -> target edges"""
    adjacency: Dict[uuid.UUID, List[uuid.UUID]] = defaultdict(list)
    for source, target in edges:
        adjacency[source].append(target)

    seen = {start}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        if node == goal:
            return True
        for nxt in adjacency[node]:
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return False


async def _get_outcome(db: AsyncSession, outcome_id: uuid.UUID) -> LearningOutcome:
    outcome = await db.get(LearningOutcome, outcome_id)
    if outcome is None:
        raise ResourceNotFoundByIdException("learning_outcome", outcome_id)
    return outcome


async def total_outgoing_weight(db: AsyncSession, outcome_id: uuid.UUID) -> float:
    result = await db.execute(
        select(func.coalesce(func.sum(OutcomeMapping.weight), 0.0)).where(
            OutcomeMapping.source_outcome_id == outcome_id
        )
    )
    return float(result.scalar())


async def outgoing_edges(db: AsyncSession, outcome_id: uuid.UUID) -> Dict[str, Any]:
    """Edges leaving an outcome with their advisory weight status"""
    await _get_outcome(db, outcome_id)
    result = await db.execute(
        select(OutcomeMapping, LearningOutcome)
        .join(LearningOutcome, LearningOutcome.id == OutcomeMapping.target_outcome_id)
        .where(OutcomeMapping.source_outcome_id == outcome_id)
    )
    edges = [
        {
            "mapping_id": str(mapping.id),
            "target_outcome_id": str(target.id),
            "target_type": target.outcome_type.value,
            "target_title": target.title,
            "weight": mapping.weight,
        }
        for mapping, target in result.all()
    ]
    total = round(sum(edge["weight"] for edge in edges), 4)
    return {
        "outcome_id": str(outcome_id),
        "edges": edges,
        "total_weight": total,
        "weight_status": weight_status(total),
    }


async def upsert_mapping(
    db: AsyncSession,
    source_id: uuid.UUID,
    target_id: uuid.UUID,
    weight: float,
    created_by_id: Optional[uuid.UUID] = None,
) -> Dict[str, Any]:
    """Create an edge, or update its weight if the pair already exists"""

    if source_id == target_id:
        raise InvalidOutcomeMappingException("an outcome cannot map to itself")

    source = await _get_outcome(db, source_id)
    target = await _get_outcome(db, target_id)
    if not source.is_active or not target.is_active:
        raise InvalidOutcomeMappingException("inactive outcomes cannot be mapped")
    validate_edge_types(source.outcome_type, target.outcome_type)

    existing_edges = (await db.execute(
        select(OutcomeMapping.source_outcome_id, OutcomeMapping.target_outcome_id)
    )).all()
    if has_path(existing_edges, target_id, source_id):
        raise InvalidOutcomeMappingException("mapping would create a cycle")

    weight = clamp_weight(weight)
    result = await db.execute(
        select(OutcomeMapping).where(
            OutcomeMapping.source_outcome_id == source_id,
            OutcomeMapping.target_outcome_id == target_id,
        )
    )
    mapping = result.scalar_one_or_none()
    created = mapping is None

    if created:
        mapping = OutcomeMapping(
            source_outcome_id=source_id,
            target_outcome_id=target_id,
            weight=weight,
            created_by_id=created_by_id,
        )
        try:
            async with db.begin_nested():
                db.add(mapping)
        except IntegrityError:
            # Concurrent insert of the same pair; fall back to updating it
            created = False
            result = await db.execute(
                select(OutcomeMapping).where(
                    OutcomeMapping.source_outcome_id == source_id,
                    OutcomeMapping.target_outcome_id == target_id,
                )
            )
            mapping = result.scalar_one()
            mapping.weight = weight
    else:
        mapping.weight = weight

    await db.flush()
    total = await total_outgoing_weight(db, source_id)
    status = weight_status(total)
    if status != "ok":
        logger.warning(f"Outgoing weight of outcome {source_id} is {total:.2f} ({status})")

    return {
        "mapping_id": str(mapping.id),
        "source_outcome_id": str(source_id),
        "target_outcome_id": str(target_id),
        "weight": mapping.weight,
        "created": created,
        "total_outgoing_weight": round(total, 4),
        "weight_status": status,
    }


async def curriculum_matrix(db: AsyncSession, program_id: uuid.UUID) -> Dict[str, Any]:
    """PLO x course grid counting each course's active CLOs mapped to the PLO"""

    program = await db.get(Program, program_id)
    if program is None:
        raise ResourceNotFoundByIdException("program", program_id)

    plos = (await db.execute(
        select(LearningOutcome)
        .where(
            LearningOutcome.program_id == program_id,
            LearningOutcome.outcome_type == OutcomeType.PLO,
            LearningOutcome.is_active.is_(True),
        )
        .order_by(LearningOutcome.code, LearningOutcome.title)
    )).scalars().all()
    courses = (await db.execute(
        select(Course).where(Course.program_id == program_id, Course.is_active.is_(True)).order_by(Course.code)
    )).scalars().all()

    counts: Dict[Tuple[uuid.UUID, uuid.UUID], int] = defaultdict(int)
    if plos and courses:
        rows = await db.execute(
            select(OutcomeMapping.target_outcome_id, LearningOutcome.course_id)
            .join(LearningOutcome, LearningOutcome.id == OutcomeMapping.source_outcome_id)
            .where(
                OutcomeMapping.target_outcome_id.in_([p.id for p in plos]),
                LearningOutcome.outcome_type == OutcomeType.CLO,
                LearningOutcome.is_active.is_(True),
                LearningOutcome.course_id.in_([c.id for c in courses]),
            )
        )
        for plo_id, course_id in rows.all():
            counts[(plo_id, course_id)] += 1

    return {
        "program_id": str(program_id),
        "courses": [{"id": str(c.id), "code": c.code, "name": c.name} for c in courses],
        "rows": [
            {
                "plo_id": str(plo.id),
                "plo": plo.code or plo.title,
                "cells": [counts[(plo.id, course.id)] for course in courses],
            }
            for plo in plos
        ],
    }


def matrix_to_csv(matrix: Dict[str, Any]) -> str:
    """RFC 4180 CSV: header 'PLO' then course codes, one row per PLO"""
    output = io.StringIO()
    writer = csv.writer(output, lineterminator="\r\n")
    writer.writerow(["PLO"] + [course["code"] for course in matrix["courses"]])
    for row in matrix["rows"]:
        writer.writerow([row["plo"]] + row["cells"])
    return output.getvalue()


__all__ = [
    "VALID_EDGE_TYPES",
    "validate_edge_types",
    "clamp_weight",
    "weight_status",
    "has_path",
    "total_outgoing_weight",
    "outgoing_edges",
    "upsert_mapping",
    "curriculum_matrix",
    "matrix_to_csv",
]
