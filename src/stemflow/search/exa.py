from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol

import aiohttp
from pydantic import BaseModel, ConfigDict

from stemflow.core.models import SearchResponse, SearchResult

logger = logging.getLogger(__name__)

EXA_API_URL = "https://api.exa.ai"
EXA_RETRYABLE_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}

_RETRYABLE_HTTP_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
    ConnectionResetError,
)


class SearchSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    exa_api_key: str = ""
    base_url: str = EXA_API_URL
    num_results: int = 5
    max_characters: int = 4000
    timeout_seconds: float = 15
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_cap_seconds: float = 8.0


class SearchClient(Protocol):
    async def search(self, query: str, *, num_results: Optional[int] = None) -> SearchResponse:
        """Never raises for upstream failures; they are reported on SearchResponse.error."""


class _RetryableSearchError(RuntimeError):
    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _result_text(item: Dict[str, Any]) -> str:
    text = item.get("text")
    if isinstance(text, str):
        return text
    highlights = item.get("highlights")
    if isinstance(highlights, list):
        return "\n".join(str(h).strip() for h in highlights if str(h).strip())
    summary = item.get("summary")
    return summary if isinstance(summary, str) else ""


def parse_search_payload(payload: object) -> List[SearchResult]:
    if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
        return []
    results: List[SearchResult] = []
    for item in payload["results"]:
        if not isinstance(item, dict):
            continue
        url = _as_str(item.get("url")) or ""
        title = _as_str(item.get("title")) or url
        if not title and not url:
            continue
        results.append(
            SearchResult(
                title=title,
                url=url,
                text=_result_text(item).strip(),
                published_date=_as_str(item.get("publishedDate")),
                author=_as_str(item.get("author")),
            )
        )
    return results


class ExaSearchClient:
    def __init__(self, settings: SearchSettings) -> None:
        self._settings = settings

    def _backoff_seconds(self, attempt: int) -> float:
        delay = self._settings.backoff_base_seconds * (2 ** (attempt - 1))
        return min(delay, self._settings.backoff_cap_seconds)

    async def search(self, query: str, *, num_results: Optional[int] = None) -> SearchResponse:
        query = (query or "").strip()
        if not query:
            return SearchResponse(error="query is required")

        body = {
            "query": query,
            "numResults": num_results or self._settings.num_results,
            "contents": {"text": {"maxCharacters": self._settings.max_characters}},
        }
        headers = {"Content-Type": "application/json"}
        if self._settings.exa_api_key:
            headers["x-api-key"] = self._settings.exa_api_key
        url = f"{self._settings.base_url.rstrip('/')}/search"
        timeout = aiohttp.ClientTimeout(total=self._settings.timeout_seconds)

        last_error: Optional[BaseException] = None
        last_status: Optional[int] = None
        max_attempts = max(1, self._settings.max_attempts)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            for attempt in range(1, max_attempts + 1):
                try:
                    payload = await self._post(session, url, body, headers)
                    results = parse_search_payload(payload)
                    logger.info("Exa search completed. query=%s results=%s", query, len(results))
                    return SearchResponse(results=tuple(results))
                except _RetryableSearchError as exc:
                    last_error, last_status = exc, exc.status
                except _RETRYABLE_HTTP_ERRORS as exc:
                    last_error, last_status = exc, None
                except aiohttp.ClientResponseError as exc:
                    logger.warning("Exa search rejected. query=%s status=%s", query, exc.status)
                    return SearchResponse(error=f"Exa search failed with status {exc.status}", status=exc.status)

                if attempt >= max_attempts:
                    break
                delay_seconds = self._backoff_seconds(attempt)
                logger.warning(
                    "Retrying Exa search. attempt=%s/%s delay_seconds=%s query=%s error=%s",
                    attempt,
                    max_attempts,
                    delay_seconds,
                    query,
                    type(last_error).__name__,
                )
                await asyncio.sleep(delay_seconds)

        return SearchResponse(
            error=f"Exa search request failed after retries. error={type(last_error).__name__ if last_error else 'unknown'}",
            status=last_status,
        )

    @staticmethod
    async def _post(session: aiohttp.ClientSession, url: str, body: dict, headers: dict) -> object:
        async with session.post(url, json=body, headers=headers) as response:
            if response.status in EXA_RETRYABLE_STATUS_CODES:
                raise _RetryableSearchError(f"Exa search failed with status {response.status}", response.status)
            response.raise_for_status()
            try:
                return await response.json(content_type=None)
            except ValueError:
                return None
