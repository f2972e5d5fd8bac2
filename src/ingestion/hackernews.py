"""
Hacker News comments through the Algolia search API
"""
import logging
import re
from html import unescape
from typing import Any, Dict, List, Optional

import httpx

from core.errors import AcquisitionError
from ingestion.base import SourceAdapter, RawItemCandidate

logger = logging.getLogger(__name__)

_TAG = re.compile(r"<[^>]+>")


def _strip_html(text: str) -> str:
    return unescape(_TAG.sub(" ", text or "")).strip()


class HackerNewsAdapter(SourceAdapter):
    name = "hackernews"
    BASE_URL = "https://hn.algolia.com/api/v1"

    def __init__(self, limit: int = 50, timeout: float = 30.0):
        self.limit = limit
        self.timeout = timeout

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(f"{self.BASE_URL}{path}", params=params)
                resp.raise_for_status()
                return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise AcquisitionError(f"HN request {path} failed: {e}") from e

    @staticmethod
    def _hit(hit: Dict[str, Any]) -> Optional[RawItemCandidate]:
        text = _strip_html(hit.get("comment_text") or hit.get("story_text") or "")
        title = hit.get("title") or hit.get("story_title") or ""
        if not text and not title:
            return None
        object_id = str(hit.get("objectID"))
        return RawItemCandidate(
            external_id=object_id,
            source_kind="hn_comment",
            source_id="hackernews",
            title="" if hit.get("comment_text") else title,
            text=text,
            author=hit.get("author"),
            score=int(hit.get("points") or 0),
            created_utc=float(hit.get("created_at_i") or 0),
            url=f"https://news.ycombinator.com/item?id={object_id}",
            parent_id=str(hit["story_id"]) if hit.get("story_id") else None,
        )

    def _hits(self, payload: Dict[str, Any]) -> List[RawItemCandidate]:
        items = []
        for hit in payload.get("hits", []):
            candidate = self._hit(hit)
            if candidate:
                items.append(candidate)
        return items

    async def fetch(self, source_id: str = "hackernews", cursor: Optional[str] = None) -> List[RawItemCandidate]:
        params: Dict[str, Any] = {"tags": "comment", "hitsPerPage": self.limit}
        if cursor:
            # cursor is the newest created_at_i already seen
            params["numericFilters"] = f"created_at_i>{cursor}"
        payload = await self._get_json("/search_by_date", params)
        return self._hits(payload)

    async def search(self, query: str, limit: int = 25) -> List[RawItemCandidate]:
        payload = await self._get_json(
            "/search",
            {"query": query, "tags": "(story,comment)", "hitsPerPage": limit},
        )
        return [c for c in self._hits(payload) if len(c.full_text) >= 40]
