from __future__ import annotations

from typing import Any, List, Optional

import httpx

from quillgate.logging import get_logger
from quillgate.service.errors import SearchError
from quillgate.storage.models import ToolDeclaration

logger = get_logger(__name__)

WEB_SEARCH_TOOL = ToolDeclaration(
    name="web_search",
    description=(
        "Search the public web for current information. Returns the top results "
        "as numbered entries with title, snippet and URL."
    ),
    parameters={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query, phrased as you would type it into a search engine.",
            }
        },
        "required": ["query"],
    },
)


def _text_field(item: dict[str, Any], name: str) -> str:
    value = item.get(name)
    if value is None:
        return ""
    # Third-party payload: fields are not always strings
    return value if isinstance(value, str) else str(value)


def format_results(items: List[dict[str, Any]]) -> str:
    """Render search hits as a numbered plain-text block for the model."""
    lines = []
    for index, item in enumerate(items, start=1):
        title = _text_field(item, "title").strip() or "(untitled)"
        snippet = " ".join(_text_field(item, "snippet").split())
        link = _text_field(item, "link")
        lines.append(f"{index}. {title}\n   {snippet}\n   {link}".rstrip())
    return "\n".join(lines)


class SearchService:
    """Web search over a JSON search API (Custom Search compatible)."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        url: str,
        api_key: Optional[str] = None,
        engine_id: Optional[str] = None,
        max_results: int = 5,
        timeout_seconds: float = 15.0,
    ) -> None:
        self.http_client = http_client
        self.url = url
        self.api_key = api_key
        self.engine_id = engine_id
        self.max_results = max_results
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.engine_id)

    async def search(self, query: str) -> str:
        query = (query or "").strip()
        if not query:
            raise SearchError("search query is empty")
        if not self.is_configured:
            raise SearchError("search is not configured")

        params = {
            "key": self.api_key,
            "cx": self.engine_id,
            "q": query,
            "num": self.max_results,
        }
        try:
            response = await self.http_client.get(
                self.url, params=params, timeout=self.timeout_seconds
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "search_status_error",
                status_code=exc.response.status_code,
                query_len=len(query),
            )
            raise SearchError(f"search returned status {exc.response.status_code}") from exc
        except httpx.TimeoutException as exc:
            logger.warning("search_timeout", query_len=len(query))
            raise SearchError("search timed out") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("search_failed", error_type=type(exc).__name__, error=str(exc))
            raise SearchError("search request failed") from exc

        if not isinstance(payload, dict):
            raise SearchError("search returned an unexpected payload")
        items = [item for item in payload.get("items") or [] if isinstance(item, dict)]
        logger.info("search_completed", query_len=len(query), results=len(items))
        if not items:
            return "No results found."
        return format_results(items[: self.max_results])
