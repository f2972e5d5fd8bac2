import faiss
import os
import numpy as np
from typing import List, Tuple


class VectorStore:
    """
    FAISS inner-product index keyed by cluster id.
    Vectors are L2-normalised, so scores are cosine similarities.
    """

    def __init__(self, path: str, dim: int = 768):
        self.path = path
        self.dim = dim

        if os.path.exists(path):
            self.index = faiss.read_index(path)
            self.dim = self.index.d
        else:
            self.index = self._empty_index(dim)

    @staticmethod
    def _empty_index(dim: int):
        return faiss.IndexIDMap(faiss.IndexFlatIP(dim))

    def _prepare(self, vector: List[float]) -> np.ndarray:
        if len(vector) != self.dim:
            if self.index.ntotal == 0:
                # embedding model decides the width; adopt it while empty
                self.dim = len(vector)
                self.index = self._empty_index(self.dim)
            else:
                raise ValueError(f"Vector width {len(vector)} does not match index width {self.dim}")
        vec = np.array([vector]).astype("float32")
        faiss.normalize_L2(vec)
        return vec

    def add(self, vector_id: int, vector: List[float]) -> None:
        vec = self._prepare(vector)
        self.index.add_with_ids(vec, np.array([vector_id], dtype="int64"))

    def search(self, vector: List[float], k: int = 5) -> List[Tuple[int, float]]:
        if self.index.ntotal == 0:
            return []
        vec = self._prepare(vector)
        scores, ids = self.index.search(vec, min(k, self.index.ntotal))
        return [
            (int(i), float(s))
            for i, s in zip(ids[0].tolist(), scores[0].tolist())
            if i != -1
        ]

    def persist(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        faiss.write_index(self.index, self.path)
