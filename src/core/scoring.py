"""
Composite opportunity scoring.

Deterministic ladders over cluster aggregates are combined with the
oracle's base estimates into one bounded ranking value.
"""
from typing import Dict, Sequence, Tuple

from pydantic import BaseModel, Field, model_validator

# (threshold, bonus) steps; every step reached is added
MEMBER_LADDER: Sequence[Tuple[int, int]] = ((3, 5), (5, 5), (10, 10), (20, 10))
AUTHOR_LADDER: Sequence[Tuple[int, int]] = ((2, 5), (5, 5))
SOURCE_LADDER: Sequence[Tuple[int, int]] = ((2, 5), (3, 5))

REGIONAL_MAX_BOOST = 30.0

SUB_SCORES = (
    "frequency",
    "severity",
    "economic",
    "solvability",
    "competitive",
    "regional",
)


class ScoringWeights(BaseModel):
    """
    Weight vector for the composite total. Must sum to 1.0.
    """
    frequency: float = Field(0.15, ge=0.0, le=1.0)
    severity: float = Field(0.25, ge=0.0, le=1.0)
    economic: float = Field(0.20, ge=0.0, le=1.0)
    solvability: float = Field(0.15, ge=0.0, le=1.0)
    competitive: float = Field(0.10, ge=0.0, le=1.0)
    regional: float = Field(0.15, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _sums_to_one(self) -> "ScoringWeights":
        total = sum(getattr(self, name) for name in SUB_SCORES)
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0, got {total:.4f}")
        return self


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def ladder_bonus(value: int, ladder: Sequence[Tuple[int, int]]) -> int:
    return sum(bonus for threshold, bonus in ladder if value >= threshold)


def frequency_score(
    base: float,
    member_count: int,
    unique_authors: int,
    unique_sources: int,
) -> int:
    """
    Base frequency estimate plus stepped bonuses for cluster size,
    author diversity and source diversity.
    """
    score = (
        base
        + ladder_bonus(member_count, MEMBER_LADDER)
        + ladder_bonus(unique_authors, AUTHOR_LADDER)
        + ladder_bonus(unique_sources, SOURCE_LADDER)
    )
    return int(round(clamp(score)))


def regional_fit_score(base: float, region_members: int, total_members: int) -> float:
    """
    Boost the base regional estimate by up to REGIONAL_MAX_BOOST in
    proportion to the share of members from the target region.
    """
    if region_members <= 0 or total_members <= 0:
        return base
    share = min(1.0, region_members / total_members)
    return clamp(base + REGIONAL_MAX_BOOST * share)


def total_score(sub_scores: Dict[str, float], weights: ScoringWeights) -> int:
    total = sum(
        clamp(float(sub_scores[name])) * getattr(weights, name)
        for name in SUB_SCORES
    )
    return int(round(clamp(total)))
