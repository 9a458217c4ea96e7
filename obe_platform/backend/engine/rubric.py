"""
OBE Learning Platform
Rubric model: criteria x performance levels x point values
"""

from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from ..exceptions import InvalidRubricException

MIN_CRITERIA = 2
MIN_LEVELS = 2


class RubricLevel(BaseModel):
    label: str
    description: str = ""
    points: float = Field(ge=0)


class RubricCriterionSpec(BaseModel):
    id: Optional[str] = None
    description: str
    max_points: Optional[float] = Field(default=None, ge=0)
    weight: float = Field(default=1.0, ge=0)
    outcome_id: Optional[str] = None
    blooms_level: Optional[str] = None
    levels: List[RubricLevel]

    @property
    def resolved_max_points(self) -> float:
        if self.max_points is not None:
            return self.max_points
        return max((level.points for level in self.levels), default=0.0)


class Rubric:
    """An ordered, validated grid of criteria.

    Every criterion must carry the same number of performance levels, and a
    rubric needs at least two criteria with at least two levels each. Level
    points may not exceed the criterion's max points.
    """

    def __init__(self, criteria: Iterable[RubricCriterionSpec]):
        self.criteria: List[RubricCriterionSpec] = list(criteria)
        self._validate()
        self._by_id = {c.id: c for c in self.criteria if c.id is not None}

    def _validate(self):
        if len(self.criteria) < MIN_CRITERIA:
            raise InvalidRubricException(
                f"at least {MIN_CRITERIA} criteria are required",
                details={"criteria_count": len(self.criteria)}
            )

        for criterion in self.criteria:
            if len(criterion.levels) < MIN_LEVELS:
                raise InvalidRubricException(
                    f"criterion '{criterion.description}' needs at least {MIN_LEVELS} levels",
                    details={"criterion": criterion.description, "level_count": len(criterion.levels)}
                )

        level_counts = {len(c.levels) for c in self.criteria}
        if len(level_counts) > 1:
            raise InvalidRubricException(
                "all criteria must have the same number of performance levels",
                details={"level_counts": {c.description: len(c.levels) for c in self.criteria}}
            )

        seen_ids = set()
        for criterion in self.criteria:
            if criterion.id is not None:
                if criterion.id in seen_ids:
                    raise InvalidRubricException(
                        f"duplicate criterion id '{criterion.id}'"
                    )
                seen_ids.add(criterion.id)

            max_points = criterion.resolved_max_points
            over = [level.label for level in criterion.levels if level.points > max_points]
            if over:
                raise InvalidRubricException(
                    f"levels {over} of '{criterion.description}' exceed max points {max_points}",
                    details={"criterion": criterion.description, "max_points": max_points}
                )

    @property
    def max_score(self) -> float:
        return sum(c.resolved_max_points for c in self.criteria)

    @property
    def level_count(self) -> int:
        return len(self.criteria[0].levels)

    def max_points(self, criterion_id: str) -> float:
        return self.criterion(criterion_id).resolved_max_points

    def criterion(self, criterion_id: str) -> RubricCriterionSpec:
        return self._by_id[criterion_id]

    def has_criterion(self, criterion_id: str) -> bool:
        return criterion_id in self._by_id

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-able copy stored on the assignment"""
        return {
            "max_score": self.max_score,
            "level_labels": [level.label for level in self.criteria[0].levels],
            "criteria": [
                {
                    "id": c.id,
                    "description": c.description,
                    "max_points": c.resolved_max_points,
                    "weight": c.weight,
                    "outcome_id": c.outcome_id,
                    "levels": [level.model_dump() for level in c.levels],
                }
                for c in self.criteria
            ],
        }

    @classmethod
    def from_rows(cls, rows) -> "Rubric":
        """Build from persisted RubricCriterion rows"""
        return cls(
            RubricCriterionSpec(
                id=str(row.id),
                description=row.description,
                max_points=row.max_points,
                weight=row.weight,
                outcome_id=str(row.outcome_id),
                blooms_level=row.blooms_level.value if row.blooms_level else None,
                levels=[RubricLevel(**level) for level in row.levels],
            )
            for row in rows
        )


__all__ = ["Rubric", "RubricCriterionSpec", "RubricLevel", "MIN_CRITERIA", "MIN_LEVELS"]
