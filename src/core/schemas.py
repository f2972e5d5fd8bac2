"""
Pydantic schemas for every structured oracle response.
"""
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Severity = Literal["low", "medium", "high", "critical"]


class FilterJudgment(BaseModel):
    """
    Pain-point classification for one raw item
    """
    is_pain_point: bool
    confidence: float = Field(..., ge=0, le=100)
    category: Literal["complaint", "ask", "rant", "how_to", "other"]
    problem_type: Optional[str] = None


class PainExtraction(BaseModel):
    """
    Structured pain statement pulled out of a passing item
    """
    problem_statement: str = Field(..., min_length=10)
    persona: Optional[str] = None
    location: Optional[str] = None
    workaround: Optional[str] = None
    willingness_to_pay: Optional[str] = None
    product_name: Optional[str] = None
    feature_gap: Optional[str] = None


class TaggingJudgment(BaseModel):
    topics: List[str] = Field(..., min_length=1, max_length=8)
    keywords: List[str] = Field(default_factory=list, max_length=15)
    persona: Optional[str] = None
    severity: Severity = "medium"

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, value):
        return value.lower().strip() if isinstance(value, str) else value


class OpportunityBrief(BaseModel):
    """
    Product brief synthesized from a cluster's members
    """
    product_name: str = Field(..., min_length=1)
    summary: str = Field(..., min_length=10)
    personas: List[str] = Field(default_factory=list)
    workarounds: List[str] = Field(default_factory=list)
    search_keywords: List[str] = Field(default_factory=list)


class SubScore(BaseModel):
    score: float = Field(..., ge=0, le=100)
    reason: str = ""


class ClusterScoreJudgment(BaseModel):
    """
    Base estimates the composite score is built from
    """
    frequency: SubScore
    severity: SubScore
    economic_value: SubScore
    solvability: SubScore
    competition: SubScore
    regional_fit: SubScore


class RelevanceJudgment(BaseModel):
    match: bool
