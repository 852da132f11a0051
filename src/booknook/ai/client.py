"""HTTP client for the reading assistant API (summaries, Q&A, recommendations)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx

from booknook.config import AIServiceConfig
from booknook.errors import DecodingError, HttpError, TransportError

log = logging.getLogger(__name__)

SUMMARY_PATH = "/api/v1/ai/summary"
QA_PATH = "/api/v1/ai/qa"
RECOMMENDATIONS_PATH = "/api/v1/recommendations/feed"
SYNC_PROGRESS_PATH = "/api/v1/sync/progress"

SSE_DATA_PREFIX = "data:"
SSE_DONE = "[DONE]"


# ── Request models ─────────────────────────────────────


@dataclass
class BookMetadataRequest:
    title: str
    authors: list[str]
    language: str

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "authors": list(self.authors), "language": self.language}


@dataclass
class ChapterMetadataRequest:
    title: str
    number: int
    position: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"title": self.title, "number": self.number, "position": self.position}


@dataclass
class SummaryRequest:
    type: str  # "book" or "chapter"
    book_id: str
    content: str
    metadata: BookMetadataRequest
    chapter_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "bookId": self.book_id,
            "chapterId": self.chapter_id,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
        }


@dataclass
class QuestionRequest:
    question: str
    book: BookMetadataRequest
    chapter: ChapterMetadataRequest
    paragraphs: list[str] = field(default_factory=list)
    selection: Optional[str] = None
    mode: str = "answer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "context": {
                "selection": self.selection,
                "paragraphs": list(self.paragraphs),
                "chapter": self.chapter.to_dict(),
                "book": self.book.to_dict(),
            },
            "mode": self.mode,
        }


@dataclass
class ProgressSyncRequest:
    book_id: str
    chapter_id: str
    position: float
    reading_time: int
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "bookId": self.book_id,
            "chapterId": self.chapter_id,
            "position": self.position,
            "readingTime": self.reading_time,
            "timestamp": self.timestamp,
        }


# ── Response models ────────────────────────────────────


@dataclass
class SummaryResponse:
    id: str
    summary: str
    key_points: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    estimated_reading_time: int = 0
    cached: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SummaryResponse":
        return cls(
            id=data["id"],
            summary=data["summary"],
            key_points=list(data.get("keyPoints") or []),
            keywords=list(data.get("keywords") or []),
            estimated_reading_time=int(data.get("estimatedReadingTime") or 0),
            cached=bool(data.get("cached", False)),
        )


@dataclass
class Reference:
    text: str
    chapter_title: str
    position: str
    confidence: float


@dataclass
class TokenUsage:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ResponseChunk:
    type: str
    id: Optional[str] = None
    delta: Optional[str] = None
    reference: Optional[Reference] = None
    usage: Optional[TokenUsage] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResponseChunk":
        ref = data.get("reference")
        usage = data.get("usage")
        return cls(
            type=data["type"],
            id=data.get("id"),
            delta=data.get("delta"),
            reference=Reference(
                text=ref["text"],
                chapter_title=ref["chapterTitle"],
                position=ref["position"],
                confidence=float(ref["confidence"]),
            )
            if ref
            else None,
            usage=TokenUsage(
                prompt_tokens=usage["promptTokens"],
                completion_tokens=usage["completionTokens"],
                total_tokens=usage["totalTokens"],
            )
            if usage
            else None,
        )


@dataclass
class RecommendedBook:
    id: str
    title: str
    authors: list[str]
    description: str = ""
    cover_url: Optional[str] = None
    estimated_reading_time: int = 0
    difficulty: str = ""
    tags: list[str] = field(default_factory=list)


@dataclass
class Recommendation:
    id: str
    title: str
    description: str
    reason: str
    books: list[RecommendedBook] = field(default_factory=list)


@dataclass
class RecommendationFeed:
    recommendations: list[Recommendation]
    has_more: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecommendationFeed":
        return cls(
            recommendations=[
                Recommendation(
                    id=r["id"],
                    title=r["title"],
                    description=r.get("description", ""),
                    reason=r.get("reason", ""),
                    books=[
                        RecommendedBook(
                            id=b["id"],
                            title=b["title"],
                            authors=list(b.get("authors") or []),
                            description=b.get("description", ""),
                            cover_url=b.get("coverUrl"),
                            estimated_reading_time=int(b.get("estimatedReadingTime") or 0),
                            difficulty=b.get("difficulty", ""),
                            tags=list(b.get("tags") or []),
                        )
                        for b in r.get("books") or []
                    ],
                )
                for r in data["recommendations"]
            ],
            has_more=bool(data.get("hasMore", False)),
        )


# ── Client ─────────────────────────────────────────────


class AIClient:
    def __init__(
        self, config: AIServiceConfig, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._config = config
        self._client = client

    @property
    def is_configured(self) -> bool:
        return bool(self._config.base_url and self._config.api_token)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.timeout)
        return self._client

    def _url(self, path: str) -> str:
        return f"{self._config.base_url.rstrip('/')}{path}"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        url = self._url(path)
        try:
            resp = await self._http().request(
                method, url, json=payload, params=params, headers=self._headers()
            )
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            log.error(
                "AI API error: %s %s", e.response.status_code, e.response.text[:200]
            )
            raise HttpError(e.response.status_code) from e
        except ValueError as e:
            log.error("Undecodable AI API response from %s: %s", url, e)
            raise DecodingError() from e
        except httpx.RequestError as e:
            log.error("AI API request error: %s %s -> %s", type(e).__name__, url, e)
            raise TransportError(f"{type(e).__name__} ({url})") from e

    async def summarize(self, request: SummaryRequest) -> SummaryResponse:
        data = await self._request("POST", SUMMARY_PATH, payload=request.to_dict())
        try:
            return SummaryResponse.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise DecodingError(f"Unexpected summary response: {e}") from e

    async def recommendations(
        self, type: str = "popular", limit: int = 10, offset: int = 0
    ) -> RecommendationFeed:
        data = await self._request(
            "GET",
            RECOMMENDATIONS_PATH,
            params={"type": type, "limit": limit, "offset": offset},
        )
        try:
            return RecommendationFeed.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise DecodingError(f"Unexpected recommendations response: {e}") from e

    async def sync_progress(self, request: ProgressSyncRequest) -> dict[str, Any]:
        data = await self._request("POST", SYNC_PROGRESS_PATH, payload=request.to_dict())
        if not isinstance(data, dict):
            raise DecodingError("Unexpected progress sync response")
        return data

    async def ask(self, request: QuestionRequest) -> AsyncIterator[ResponseChunk]:
        """Stream the answer as server-sent events, one chunk per ``data:`` frame.

        Frames that are not valid chunks are skipped.
        """
        url = self._url(QA_PATH)
        headers = {**self._headers(), "Accept": "text/event-stream"}
        try:
            async with self._http().stream(
                "POST", url, json=request.to_dict(), headers=headers
            ) as resp:
                if not resp.is_success:
                    body = await resp.aread()
                    log.error("AI API error: %s %s", resp.status_code, body[:200])
                    raise HttpError(resp.status_code)
                async for line in resp.aiter_lines():
                    chunk = self._parse_sse_line(line)
                    if chunk is not None:
                        yield chunk
        except httpx.RequestError as e:
            log.error("AI API request error: %s %s -> %s", type(e).__name__, url, e)
            raise TransportError(f"{type(e).__name__} ({url})") from e

    @staticmethod
    def _parse_sse_line(line: str) -> Optional[ResponseChunk]:
        line = line.strip()
        if not line.startswith(SSE_DATA_PREFIX):
            return None
        payload = line[len(SSE_DATA_PREFIX):].strip()
        if not payload or payload == SSE_DONE:
            return None
        try:
            return ResponseChunk.from_dict(json.loads(payload))
        except (ValueError, KeyError, TypeError) as e:
            log.warning("Skipping malformed answer chunk: %s", e)
            return None

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
