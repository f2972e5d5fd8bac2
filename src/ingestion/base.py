"""
Base classes for Ingestion
"""
from abc import ABC, abstractmethod
from typing import List, Optional
from pydantic import BaseModel

from services.dedup import natural_key


class RawItemCandidate(BaseModel):
    """
    One content unit as returned by a source, before it is persisted.
    """
    external_id: str
    source_kind: str  # post, comment, hn_comment
    source_id: str
    text: str
    title: str = ""
    author: Optional[str] = None
    score: int = 0
    created_utc: float
    url: Optional[str] = None
    parent_id: Optional[str] = None
    num_comments: int = 0

    @property
    def natural_key(self) -> str:
        return natural_key(self.source_kind, self.external_id)

    @property
    def full_text(self) -> str:
        return f"{self.title}\n\n{self.text}".strip()


class SourceAdapter(ABC):
    """
    Base interface for all content sources.
    Raise AcquisitionError on transport failures; the caller decides what to skip.
    """

    name: str

    @abstractmethod
    async def fetch(self, source_id: str, cursor: Optional[str] = None) -> List[RawItemCandidate]:
        """
        Fetch the newest items for source_id, optionally starting after cursor.
        """
        raise NotImplementedError

    @abstractmethod
    async def search(self, query: str, limit: int = 25) -> List[RawItemCandidate]:
        """
        Search the whole source for items matching query.
        """
        raise NotImplementedError

    async def fetch_thread(self, item: RawItemCandidate, limit: int = 50) -> List[RawItemCandidate]:
        """
        Replies under item. Sources without threads return nothing.
        """
        return []
