from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.errors import IllegalTransitionError


def _json_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return []
    return [str(v) for v in parsed] if isinstance(parsed, list) else []


class RecordState(str, Enum):
    """
    Processing state of a PainRecord.
    """
    EXTRACTED = "extracted"
    TAGGED = "tagged"
    CLUSTERED = "clustered"


LEGAL_TRANSITIONS: Dict[RecordState, frozenset] = {
    RecordState.EXTRACTED: frozenset({RecordState.TAGGED}),
    RecordState.TAGGED: frozenset({RecordState.CLUSTERED}),
    RecordState.CLUSTERED: frozenset(),
}


def check_transition(current: RecordState, target: RecordState) -> None:
    if target not in LEGAL_TRANSITIONS[current]:
        raise IllegalTransitionError(
            f"Illegal record transition {current.value} -> {target.value}"
        )


class ClusterStage(str, Enum):
    """
    Where a cluster sits in the synthesis/scoring lifecycle.
    """
    GROWING = "growing"
    NEEDS_SYNTHESIS = "needs_synthesis"
    NEEDS_SCORING = "needs_scoring"
    FRESH = "fresh"


@dataclass(frozen=True)
class RawItem:
    """
    Canonical representation of an ingested content unit.
    """
    id: int
    natural_key: str
    source_kind: str
    source_id: str
    external_id: str
    parent_id: Optional[str]
    title: str
    body: str
    author: Optional[str]
    score: int
    url: Optional[str]
    created_utc: float
    fetched_at: float
    processed: bool

    @property
    def text(self) -> str:
        return f"{self.title}\n\n{self.body}".strip()

    @classmethod
    def from_row(cls, row: Any) -> "RawItem":
        return cls(
            id=row["id"],
            natural_key=row["natural_key"],
            source_kind=row["source_kind"],
            source_id=row["source_id"],
            external_id=row["external_id"],
            parent_id=row["parent_id"],
            title=row["title"] or "",
            body=row["body"] or "",
            author=row["author"],
            score=row["score"] or 0,
            url=row["url"],
            created_utc=row["created_utc"],
            fetched_at=row["fetched_at"],
            processed=bool(row["processed"]),
        )


@dataclass(frozen=True)
class PainRecord:
    """
    Structured pain statement extracted from a passing RawItem
    or accepted through back-validation.
    """
    id: int
    natural_key: str
    origin: str
    source_kind: str
    source_id: str
    author: Optional[str]
    problem_statement: str
    persona: Optional[str]
    severity: str
    location: Optional[str]
    workaround: Optional[str]
    raw_quote: Optional[str]
    state: RecordState
    topics: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    cluster_id: Optional[int] = None
    similarity: Optional[float] = None

    @property
    def signature_text(self) -> str:
        parts = [self.problem_statement]
        if self.persona:
            parts.append(f"persona: {self.persona}")
        if self.topics:
            parts.append("topics: " + ", ".join(self.topics))
        return "\n".join(parts)

    @classmethod
    def from_row(cls, row: Any) -> "PainRecord":
        return cls(
            id=row["id"],
            natural_key=row["natural_key"],
            origin=row["origin"],
            source_kind=row["source_kind"],
            source_id=row["source_id"],
            author=row["author"],
            problem_statement=row["problem_statement"],
            persona=row["persona"],
            severity=row["severity"] or "medium",
            location=row["location"],
            workaround=row["workaround"],
            raw_quote=row["raw_quote"],
            state=RecordState(row["state"]),
            topics=_json_list(row["topics"]),
            keywords=_json_list(row["keywords"]),
            cluster_id=row["cluster_id"],
            similarity=row["similarity"],
        )


@dataclass(frozen=True)
class Cluster:
    """
    Opportunity cluster: aggregate over its member pain records.
    """
    id: int
    centroid_text: str
    member_count: int
    unique_author_count: int
    unique_source_count: int
    created_at: float
    updated_at: Optional[float]
    synthesized_at: Optional[float] = None
    scored_at: Optional[float] = None
    last_backvalidation_at: Optional[float] = None
    qualified_at: Optional[float] = None
    product_name: Optional[str] = None
    summary: Optional[str] = None
    search_keywords: List[str] = field(default_factory=list)
    brief_version: int = 0
    total_score: Optional[int] = None

    @property
    def freshness_marker(self) -> Optional[float]:
        """Latest input change a score must have seen to be trusted."""
        marks = [m for m in (self.synthesized_at, self.updated_at) if m is not None]
        return max(marks) if marks else None

    @property
    def is_score_fresh(self) -> bool:
        if self.scored_at is None or self.synthesized_at is None:
            return False
        return self.scored_at >= self.freshness_marker

    def stage(self, min_cluster_size: int) -> ClusterStage:
        if self.member_count < min_cluster_size and self.synthesized_at is None:
            return ClusterStage.GROWING
        if self.synthesized_at is None or (
            self.updated_at is not None and self.synthesized_at < self.updated_at
        ):
            return ClusterStage.NEEDS_SYNTHESIS
        if not self.is_score_fresh:
            return ClusterStage.NEEDS_SCORING
        return ClusterStage.FRESH

    @classmethod
    def from_row(cls, row: Any) -> "Cluster":
        return cls(
            id=row["id"],
            centroid_text=row["centroid_text"] or "",
            member_count=row["member_count"] or 0,
            unique_author_count=row["unique_author_count"] or 0,
            unique_source_count=row["unique_source_count"] or 0,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            synthesized_at=row["synthesized_at"],
            scored_at=row["scored_at"],
            last_backvalidation_at=row["last_backvalidation_at"],
            qualified_at=row["qualified_at"],
            product_name=row["product_name"],
            summary=row["summary"],
            search_keywords=_json_list(row["search_keywords"]),
            brief_version=row["brief_version"] or 0,
            total_score=row["total_score"],
        )


@dataclass(frozen=True)
class Alert:
    """
    Typed notification about a cluster, topic or product gap.
    """
    id: int
    alert_type: str
    entity_key: str
    severity: str
    title: str
    description: str
    cluster_id: Optional[int]
    created_at: float
    read_at: Optional[float] = None

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    @classmethod
    def from_row(cls, row: Any) -> "Alert":
        return cls(
            id=row["id"],
            alert_type=row["alert_type"],
            entity_key=row["entity_key"],
            severity=row["severity"],
            title=row["title"],
            description=row["description"] or "",
            cluster_id=row["cluster_id"],
            created_at=row["created_at"],
            read_at=row["read_at"],
        )


@dataclass
class StageResult:
    """
    Aggregate outcome of one stage invocation.
    """
    stage: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    detail: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            **self.detail,
        }
