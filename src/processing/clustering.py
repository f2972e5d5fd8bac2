"""
Cluster assignment: decides which cluster a tagged pain record joins.

The pipeline treats the returned (cluster_id, similarity) as a fact and
only reacts to the resulting membership change.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

from core.entities import PainRecord
from services.llm import OllamaClient
from services.vector_store import VectorStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignment:
    """
    cluster_id is None when the record should seed a new cluster.
    """
    cluster_id: Optional[int]
    similarity: float
    embedding: Optional[List[float]] = None


class ClusterAssigner(ABC):

    @abstractmethod
    async def assign(self, record: PainRecord) -> Assignment:
        raise NotImplementedError

    async def register(self, cluster_id: int, assignment: Assignment) -> None:
        """Called once a new cluster has been created from an assignment."""
        return None


class VectorClusterAssigner(ClusterAssigner):
    """
    Nearest-centroid assignment over a FAISS index of cluster seeds.
    The index is read from disk on first use in each invocation.
    """

    def __init__(
        self,
        llm: OllamaClient,
        index_path: str,
        similarity_threshold: float = 0.82,
    ):
        self.llm = llm
        self.index_path = index_path
        self.similarity_threshold = similarity_threshold
        self._store: Optional[VectorStore] = None

    @property
    def store(self) -> VectorStore:
        if self._store is None:
            self._store = VectorStore(self.index_path)
        return self._store

    async def assign(self, record: PainRecord) -> Assignment:
        embedding = await self.llm.embed(record.signature_text)
        matches = self.store.search(embedding, k=1)

        if matches:
            cluster_id, score = matches[0]
            if score >= self.similarity_threshold:
                return Assignment(cluster_id=cluster_id, similarity=score, embedding=embedding)
            logger.debug(f"Record {record.id}: best cluster {cluster_id} at {score:.3f} below threshold")

        return Assignment(cluster_id=None, similarity=1.0, embedding=embedding)

    async def register(self, cluster_id: int, assignment: Assignment) -> None:
        if assignment.embedding is None:
            return
        self.store.add(cluster_id, assignment.embedding)
        self.store.persist()
