"""
OBE Learning Platform
Attainment rollup engine

Leaf attainment is computed per student and CLO from graded rubric criteria,
then propagated CLO -> PLO -> ILO as weight-normalized averages. Undefined
attainment (no data) is carried as None and never coerced to 0.
"""

import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import (
    Course, Enrollment, EnrollmentStatus, LearningOutcome, OutcomeMapping,
    OutcomeType, RubricCriterion, StudentPerformance, User, UserRole
)
from ..exceptions import ValidationException, ResourceNotFoundByIdException
from ..utils.helpers import round2, utcnow
from .evidence import load_criteria_by_assignment, load_effective_grades

# Configure logging
logger = logging.getLogger(__name__)

ATTAINMENT_LEVELS = [
    (85.0, "Excellent"),
    (70.0, "Satisfactory"),
    (50.0, "Developing"),
]
NOT_YET = "Not_Yet"


def classify_attainment(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    for threshold, label in ATTAINMENT_LEVELS:
        if value >= threshold:
            return label
    return NOT_YET


def weighted_average(pairs: Iterable[Tuple[Optional[float], float]]) -> Optional[float]:
    """Weight-normalized average of (value, weight) pairs.

    Pairs without a value are skipped. Returns None when nothing with data
    carries positive weight.
    """
    numerator = 0.0
    total_weight = 0.0
    for value, weight in pairs:
        if value is None:
            continue
        weight = max(0.0, float(weight))
        numerator += value * weight
        total_weight += weight

    if total_weight <= 0:
        return None
    return min(100.0, max(0.0, numerator / total_weight))


def clo_submission_score(
    criteria: Iterable[RubricCriterion],
    points_by_criterion: Dict[str, float],
    clo_id: uuid.UUID,
) -> Optional[float]:
    """Earned / max over one submission's criteria mapped to a CLO, as a percent"""
    earned = 0.0
    possible = 0.0
    for criterion in criteria:
        if criterion.outcome_id != clo_id:
            continue
        earned += points_by_criterion.get(str(criterion.id), 0.0)
        possible += criterion.max_points

    if possible <= 0:
        return None
    return earned / possible * 100


@dataclass
class OutcomeValue:
    value: Optional[float]
    sample_size: int


@dataclass
class OutcomeGraph:
    """Active outcomes and the edges between them"""

    outcomes: Dict[uuid.UUID, LearningOutcome] = field(default_factory=dict)
    # target -> [(source, weight)]
    incoming: Dict[uuid.UUID, List[Tuple[uuid.UUID, float]]] = field(default_factory=lambda: defaultdict(list))
    # source -> [target]
    outgoing: Dict[uuid.UUID, List[uuid.UUID]] = field(default_factory=lambda: defaultdict(list))

    def of_type(self, outcome_type: OutcomeType) -> List[uuid.UUID]:
        return [oid for oid, o in self.outcomes.items() if o.outcome_type == outcome_type]

    def parents(self, outcome_ids: Iterable[uuid.UUID]) -> Set[uuid.UUID]:
        found: Set[uuid.UUID] = set()
        for oid in outcome_ids:
            found.update(self.outgoing.get(oid, []))
        return found


async def load_outcome_graph(db: AsyncSession) -> OutcomeGraph:
    graph = OutcomeGraph()

    outcomes = await db.execute(select(LearningOutcome).where(LearningOutcome.is_active.is_(True)))
    for outcome in outcomes.scalars():
        graph.outcomes[outcome.id] = outcome

    edges = await db.execute(select(OutcomeMapping))
    for edge in edges.scalars():
        if edge.source_outcome_id in graph.outcomes and edge.target_outcome_id in graph.outcomes:
            graph.incoming[edge.target_outcome_id].append((edge.source_outcome_id, edge.weight))
            graph.outgoing[edge.source_outcome_id].append(edge.target_outcome_id)

    return graph


def rollup(clo_values: Dict[uuid.UUID, OutcomeValue], graph: OutcomeGraph) -> Dict[uuid.UUID, OutcomeValue]:
    """Propagate CLO attainment up to PLOs, then PLOs up to ILOs.

    A parent's sample size is the number of children that contributed data.
    """
    values: Dict[uuid.UUID, OutcomeValue] = {}
    for clo_id in graph.of_type(OutcomeType.CLO):
        values[clo_id] = clo_values.get(clo_id, OutcomeValue(None, 0))

    for level in (OutcomeType.PLO, OutcomeType.ILO):
        for outcome_id in graph.of_type(level):
            pairs = []
            for child_id, weight in graph.incoming.get(outcome_id, []):
                child = values.get(child_id)
                if child is not None:
                    pairs.append((child.value, weight))
            values[outcome_id] = OutcomeValue(
                weighted_average(pairs),
                sum(1 for value, _ in pairs if value is not None),
            )

    return values


async def collect_clo_evidence(
    db: AsyncSession,
    student_ids: Iterable[uuid.UUID],
    course_ids: Optional[Iterable[uuid.UUID]] = None,
) -> Dict[uuid.UUID, Dict[uuid.UUID, List[float]]]:
    """student -> CLO -> per-submission CLO scores"""

    grades = await load_effective_grades(db, student_ids=student_ids, course_ids=course_ids)
    criteria = await load_criteria_by_assignment(db, (g.assignment_id for g in grades))

    evidence: Dict[uuid.UUID, Dict[uuid.UUID, List[float]]] = defaultdict(lambda: defaultdict(list))
    for grade in grades:
        assignment_criteria = criteria.get(grade.assignment_id, [])
        points = grade.points_by_criterion()
        for clo_id in {c.outcome_id for c in assignment_criteria}:
            score = clo_submission_score(assignment_criteria, points, clo_id)
            if score is not None:
                evidence[grade.student_id][clo_id].append(score)

    return evidence


def clo_values_from_evidence(per_clo: Dict[uuid.UUID, List[float]]) -> Dict[uuid.UUID, OutcomeValue]:
    return {
        clo_id: OutcomeValue(sum(scores) / len(scores), len(scores))
        for clo_id, scores in per_clo.items()
        if scores
    }


async def compute_student_rollup(
    db: AsyncSession,
    student_id: uuid.UUID,
    course_ids: Optional[Iterable[uuid.UUID]] = None,
    graph: Optional[OutcomeGraph] = None,
) -> Dict[uuid.UUID, OutcomeValue]:
    graph = graph or await load_outcome_graph(db)
    evidence = await collect_clo_evidence(db, [student_id], course_ids)
    return rollup(clo_values_from_evidence(evidence.get(student_id, {})), graph)


# Cache maintenance
async def _write_performance(
    db: AsyncSession,
    student_id: uuid.UUID,
    values: Dict[uuid.UUID, OutcomeValue],
    outcome_ids: Iterable[uuid.UUID],
):
    outcome_ids = list(outcome_ids)
    if not outcome_ids:
        return

    existing = await db.execute(
        select(StudentPerformance).where(
            StudentPerformance.student_id == student_id,
            StudentPerformance.outcome_id.in_(outcome_ids)
        )
    )
    rows = {row.outcome_id: row for row in existing.scalars()}
    now = utcnow()

    for outcome_id in outcome_ids:
        value = values.get(outcome_id, OutcomeValue(None, 0))
        row = rows.get(outcome_id)
        if row is None:
            row = StudentPerformance(student_id=student_id, outcome_id=outcome_id)
            db.add(row)
        row.average_score = round2(value.value) if value.value is not None else None
        row.total_submissions = value.sample_size
        row.last_updated = now

    await db.flush()


async def recompute_for_assignment(
    db: AsyncSession,
    student_id: uuid.UUID,
    assignment_id: uuid.UUID,
) -> Dict[uuid.UUID, OutcomeValue]:
    """Rebuild cached attainment for outcomes reachable from an assignment's rubric.

    Values are recomputed from graded evidence, never patched, and written
    bottom-up: the rubric's CLOs, then their PLOs, then those PLOs' ILOs.
    """
    result = await db.execute(
        select(RubricCriterion.outcome_id).where(RubricCriterion.assignment_id == assignment_id).distinct()
    )
    clo_ids = set(result.scalars())
    if not clo_ids:
        return {}

    graph = await load_outcome_graph(db)
    values = await compute_student_rollup(db, student_id, graph=graph)

    plo_ids = {oid for oid in graph.parents(clo_ids) if graph.outcomes[oid].outcome_type == OutcomeType.PLO}
    ilo_ids = {oid for oid in graph.parents(plo_ids) if graph.outcomes[oid].outcome_type == OutcomeType.ILO}

    for layer in (clo_ids & set(graph.outcomes), plo_ids, ilo_ids):
        await _write_performance(db, student_id, values, layer)

    logger.info(
        f"Recomputed attainment for student {student_id}: "
        f"{len(clo_ids)} CLOs, {len(plo_ids)} PLOs, {len(ilo_ids)} ILOs"
    )
    return {oid: values[oid] for oid in (clo_ids | plo_ids | ilo_ids) if oid in values}


# Scoped queries
class AttainmentScope:
    """Filter applied before leaf computation.

    ``student_course`` restricts evidence to one student's work in one course;
    ``program`` averages per-student results over every actively enrolled
    student of the program's courses.
    """

    STUDENT_COURSE = "student_course"
    PROGRAM = "program"

    def __init__(
        self,
        kind: str,
        student_id: Optional[uuid.UUID] = None,
        course_id: Optional[uuid.UUID] = None,
        program_id: Optional[uuid.UUID] = None,
    ):
        if kind not in (self.STUDENT_COURSE, self.PROGRAM):
            raise ValidationException(f"Unknown attainment scope '{kind}'", field="scope", value=kind)
        if kind == self.STUDENT_COURSE and (student_id is None or course_id is None):
            raise ValidationException("student_course scope needs student_id and course_id", field="scope")
        if kind == self.PROGRAM and program_id is None:
            raise ValidationException("program scope needs program_id", field="scope")

        self.kind = kind
        self.student_id = student_id
        self.course_id = course_id
        self.program_id = program_id

    @classmethod
    def student_course(cls, student_id: uuid.UUID, course_id: uuid.UUID) -> "AttainmentScope":
        return cls(cls.STUDENT_COURSE, student_id=student_id, course_id=course_id)

    @classmethod
    def program(cls, program_id: uuid.UUID) -> "AttainmentScope":
        return cls(cls.PROGRAM, program_id=program_id)


async def _scope_members(db: AsyncSession, scope: AttainmentScope) -> Tuple[List[uuid.UUID], List[uuid.UUID]]:
    """(student ids, course ids) covered by a scope"""
    if scope.kind == AttainmentScope.STUDENT_COURSE:
        course = await db.get(Course, scope.course_id)
        if course is None:
            raise ResourceNotFoundByIdException("course", scope.course_id)
        return [scope.student_id], [scope.course_id]

    courses = await db.execute(select(Course.id).where(Course.program_id == scope.program_id))
    course_ids = list(courses.scalars())
    if not course_ids:
        return [], []

    students = await db.execute(
        select(Enrollment.student_id)
        .join(User, User.id == Enrollment.student_id)
        .where(
            Enrollment.course_id.in_(course_ids),
            Enrollment.status == EnrollmentStatus.ACTIVE,
            User.role == UserRole.STUDENT,
        )
        .distinct()
    )
    return list(students.scalars()), course_ids


def _outcomes_in_scope(graph: OutcomeGraph, course_ids: List[uuid.UUID]) -> Set[uuid.UUID]:
    """CLOs of the scoped courses plus everything they reach"""
    scoped = {oid for oid in graph.of_type(OutcomeType.CLO) if graph.outcomes[oid].course_id in course_ids}
    plos = graph.parents(scoped)
    return scoped | plos | graph.parents(plos)


def _result_row(outcome: LearningOutcome, value: Optional[float], sample_size: int) -> Dict[str, Any]:
    return {
        "outcome_id": str(outcome.id),
        "outcome_type": outcome.outcome_type.value,
        "code": outcome.code,
        "title": outcome.title,
        "attainment": round2(value) if value is not None else None,
        "level": classify_attainment(value),
        "sample_size": sample_size,
    }


async def query_attainment(
    db: AsyncSession,
    scope: AttainmentScope,
    outcome_id: Optional[uuid.UUID] = None,
) -> List[Dict[str, Any]]:
    """Attainment per outcome for a scope; one row when outcome_id is given"""

    graph = await load_outcome_graph(db)
    if outcome_id is not None and outcome_id not in graph.outcomes:
        raise ResourceNotFoundByIdException("learning_outcome", outcome_id)

    student_ids, course_ids = await _scope_members(db, scope)
    wanted = {outcome_id} if outcome_id is not None else _outcomes_in_scope(graph, course_ids)

    evidence = await collect_clo_evidence(db, student_ids, course_ids) if student_ids else {}
    per_student = [
        rollup(clo_values_from_evidence(evidence.get(student_id, {})), graph)
        for student_id in student_ids
    ]

    rows = []
    for oid in wanted:
        outcome = graph.outcomes[oid]
        if scope.kind == AttainmentScope.STUDENT_COURSE:
            value = per_student[0].get(oid, OutcomeValue(None, 0)) if per_student else OutcomeValue(None, 0)
            rows.append(_result_row(outcome, value.value, value.sample_size))
        else:
            defined = [s[oid].value for s in per_student if oid in s and s[oid].value is not None]
            cohort_value = float(np.mean(defined)) if defined else None
            rows.append(_result_row(outcome, cohort_value, len(defined)))

    type_order = {OutcomeType.CLO.value: 0, OutcomeType.PLO.value: 1, OutcomeType.ILO.value: 2}
    rows.sort(key=lambda r: (type_order[r["outcome_type"]], r["code"] or "", r["title"]))
    return rows


async def cohort_distribution(
    db: AsyncSession,
    outcome_id: uuid.UUID,
    course_id: Optional[uuid.UUID] = None,
) -> Dict[str, Any]:
    """Distribution of cached student attainment for one outcome"""

    outcome = await db.get(LearningOutcome, outcome_id)
    if outcome is None:
        raise ResourceNotFoundByIdException("learning_outcome", outcome_id)

    query = select(StudentPerformance.average_score).where(
        StudentPerformance.outcome_id == outcome_id,
        StudentPerformance.average_score.is_not(None),
    )
    if course_id is not None:
        query = query.join(
            Enrollment, Enrollment.student_id == StudentPerformance.student_id
        ).where(
            Enrollment.course_id == course_id,
            Enrollment.status == EnrollmentStatus.ACTIVE,
        )

    scores = np.array(list((await db.execute(query)).scalars()), dtype=float)

    levels = {label: 0 for _, label in ATTAINMENT_LEVELS}
    levels[NOT_YET] = 0
    for score in scores:
        levels[classify_attainment(float(score))] += 1

    if scores.size == 0:
        return {"outcome_id": str(outcome_id), "sample_size": 0, "statistics": None, "levels": levels}

    return {
        "outcome_id": str(outcome_id),
        "sample_size": int(scores.size),
        "statistics": {
            "mean": round2(np.mean(scores)),
            "median": round2(np.median(scores)),
            "std_dev": round2(np.std(scores)),
            "min": round2(np.min(scores)),
            "max": round2(np.max(scores)),
            "quartiles": {
                "q1": round2(np.percentile(scores, 25)),
                "q2": round2(np.percentile(scores, 50)),
                "q3": round2(np.percentile(scores, 75)),
            },
        },
        "levels": levels,
    }


__all__ = [
    "classify_attainment",
    "weighted_average",
    "clo_submission_score",
    "OutcomeValue",
    "OutcomeGraph",
    "load_outcome_graph",
    "rollup",
    "collect_clo_evidence",
    "compute_student_rollup",
    "recompute_for_assignment",
    "AttainmentScope",
    "query_attainment",
    "cohort_distribution",
]
