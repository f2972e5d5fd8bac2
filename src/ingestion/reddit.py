import logging
from typing import Any, Dict, List, Optional

import httpx

from core.errors import AcquisitionError
from ingestion.base import SourceAdapter, RawItemCandidate

logger = logging.getLogger(__name__)

_DEAD_BODIES = {"[deleted]", "[removed]", ""}


class RedditAdapter(SourceAdapter):
    """
    Public Reddit JSON endpoints: subreddit listings, comment threads and search.
    """

    name = "reddit"
    BASE_URL = "https://www.reddit.com"

    def __init__(self, limit: int = 25, timeout: float = 30.0, user_agent: str = "pain-radar/1.0"):
        self.limit = limit
        self.timeout = timeout
        self.headers = {"User-Agent": user_agent}

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers) as client:
                resp = await client.get(f"{self.BASE_URL}{path}", params=params)
                resp.raise_for_status()
                return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise AcquisitionError(f"Reddit request {path} failed: {e}") from e

    @staticmethod
    def _post(data: Dict[str, Any], subreddit: str) -> RawItemCandidate:
        return RawItemCandidate(
            external_id=data["id"],
            source_kind="post",
            source_id=data.get("subreddit", subreddit),
            title=data.get("title", ""),
            text=data.get("selftext", "") or "",
            author=data.get("author"),
            score=int(data.get("score", 0)),
            created_utc=float(data.get("created_utc", 0)),
            url=f"https://reddit.com{data.get('permalink', '')}",
            num_comments=int(data.get("num_comments", 0)),
        )

    @staticmethod
    def _comment(data: Dict[str, Any], subreddit: str) -> Optional[RawItemCandidate]:
        body = (data.get("body") or "").strip()
        if body in _DEAD_BODIES:
            return None
        link_id = data.get("link_id") or ""
        return RawItemCandidate(
            external_id=data["id"],
            source_kind="comment",
            source_id=data.get("subreddit", subreddit),
            text=body,
            author=data.get("author"),
            score=int(data.get("score", 0)),
            created_utc=float(data.get("created_utc", 0)),
            url=f"https://reddit.com{data.get('permalink', '')}",
            parent_id=link_id.replace("t3_", "") or None,
        )

    async def fetch(self, source_id: str, cursor: Optional[str] = None) -> List[RawItemCandidate]:
        params: Dict[str, Any] = {"limit": self.limit}
        if cursor:
            params["after"] = cursor

        payload = await self._get_json(f"/r/{source_id}/new.json", params)
        items = [
            self._post(child["data"], source_id)
            for child in payload.get("data", {}).get("children", [])
            if child.get("kind") == "t3"
        ]
        logger.debug(f"r/{source_id}: fetched {len(items)} posts")
        return items

    async def fetch_thread(self, item: RawItemCandidate, limit: int = 50) -> List[RawItemCandidate]:
        payload = await self._get_json(
            f"/r/{item.source_id}/comments/{item.external_id}.json",
            {"limit": limit, "sort": "top", "depth": 3},
        )
        if not isinstance(payload, list) or len(payload) < 2:
            return []

        comments = []
        for child in payload[1].get("data", {}).get("children", []):
            if child.get("kind") != "t1":
                continue
            comment = self._comment(child["data"], item.source_id)
            if comment:
                comments.append(comment)
        return comments

    async def search(self, query: str, limit: int = 25) -> List[RawItemCandidate]:
        payload = await self._get_json(
            "/search.json",
            {"q": query, "type": "comment", "sort": "relevance", "limit": limit},
        )
        results = []
        for child in payload.get("data", {}).get("children", []):
            data = child.get("data", {})
            if child.get("kind") == "t1":
                candidate = self._comment(data, data.get("subreddit", ""))
            elif child.get("kind") == "t3":
                candidate = self._post(data, data.get("subreddit", ""))
            else:
                candidate = None
            if candidate and len(candidate.full_text) >= 40:
                results.append(candidate)
        return results
