"""Tests for the reading assistant HTTP client."""

from __future__ import annotations

import json

import httpx
import pytest

from booknook.ai.client import (
    AIClient,
    BookMetadataRequest,
    ChapterMetadataRequest,
    ProgressSyncRequest,
    QuestionRequest,
    SummaryRequest,
)
from booknook.config import AIServiceConfig
from booknook.errors import DecodingError, HttpError, TransportError

CONFIG = AIServiceConfig(base_url="https://ai.example.com/", api_token="secret")

BOOK = BookMetadataRequest(title="Dune", authors=["Frank Herbert"], language="en")


def _client(handler) -> AIClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return AIClient(CONFIG, client=http)


def _summary_request() -> SummaryRequest:
    return SummaryRequest(type="book", book_id="b1", content="Once...", metadata=BOOK)


class TestRequests:
    @pytest.mark.asyncio
    async def test_summarize(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "id": "s1",
                    "summary": "A desert planet.",
                    "keyPoints": ["spice"],
                    "estimatedReadingTime": 5,
                    "cached": True,
                },
            )

        client = _client(handler)
        result = await client.summarize(_summary_request())
        await client.close()

        assert result.summary == "A desert planet."
        assert result.key_points == ["spice"]
        assert result.keywords == []
        assert result.cached is True

        request = seen[0]
        assert request.method == "POST"
        assert request.url == "https://ai.example.com/api/v1/ai/summary"
        assert request.headers["Authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert body["bookId"] == "b1"
        assert body["chapterId"] is None
        assert body["metadata"]["authors"] == ["Frank Herbert"]

    @pytest.mark.asyncio
    async def test_recommendations(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "recommendations": [
                        {
                            "id": "r1",
                            "title": "Classics",
                            "books": [
                                {"id": "x", "title": "Emma", "coverUrl": "http://c/e.png"}
                            ],
                        }
                    ],
                    "hasMore": True,
                },
            )

        feed = await _client(handler).recommendations(type="trending", limit=5, offset=10)

        params = seen[0].url.params
        assert seen[0].method == "GET"
        assert params["type"] == "trending"
        assert params["limit"] == "5"
        assert params["offset"] == "10"
        assert feed.has_more is True
        assert feed.recommendations[0].books[0].cover_url == "http://c/e.png"
        assert feed.recommendations[0].books[0].authors == []

    @pytest.mark.asyncio
    async def test_sync_progress(self):
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(200, json={"ok": True, "readingTime": body["readingTime"]})

        request = ProgressSyncRequest(
            book_id="b1",
            chapter_id="c1",
            position=0.5,
            reading_time=42,
            timestamp="2026-01-01T00:00:00Z",
        )
        assert await _client(handler).sync_progress(request) == {
            "ok": True,
            "readingTime": 42,
        }

    def test_not_configured(self):
        assert not AIClient(AIServiceConfig(api_token="")).is_configured
        assert AIClient(CONFIG).is_configured


class TestErrors:
    @pytest.mark.asyncio
    async def test_http_status(self):
        client = _client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(HttpError) as exc_info:
            await client.summarize(_summary_request())
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_not_json(self):
        client = _client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(DecodingError):
            await client.summarize(_summary_request())

    @pytest.mark.asyncio
    async def test_missing_fields(self):
        client = _client(lambda request: httpx.Response(200, json={"id": "s1"}))
        with pytest.raises(DecodingError):
            await client.summarize(_summary_request())

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError):
            await _client(handler).recommendations()


class TestAsk:
    def _question(self) -> QuestionRequest:
        return QuestionRequest(
            question="Who is Paul?",
            book=BOOK,
            chapter=ChapterMetadataRequest(title="Book One", number=1),
            paragraphs=["Paul Atreides..."],
        )

    @pytest.mark.asyncio
    async def test_streamed_chunks(self):
        frames = [
            {"type": "delta", "id": "a1", "delta": "Paul is "},
            {"type": "delta", "id": "a1", "delta": "the heir."},
            {
                "type": "reference",
                "reference": {
                    "text": "Paul Atreides",
                    "chapterTitle": "Book One",
                    "position": "p1",
                    "confidence": 0.9,
                },
            },
            {
                "type": "done",
                "usage": {"promptTokens": 10, "completionTokens": 5, "totalTokens": 15},
            },
        ]
        lines = [f"data: {json.dumps(f)}" for f in frames]
        lines.insert(1, ": keep-alive")
        lines.insert(2, "data: {not json")
        lines.append("data: [DONE]")
        stream = "\n\n".join(lines) + "\n\n"
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, text=stream, headers={"Content-Type": "text/event-stream"}
            )

        chunks = [chunk async for chunk in _client(handler).ask(self._question())]

        assert [c.type for c in chunks] == ["delta", "delta", "reference", "done"]
        assert "".join(c.delta for c in chunks if c.delta) == "Paul is the heir."
        assert chunks[2].reference.chapter_title == "Book One"
        assert chunks[3].usage.total_tokens == 15

        request = seen[0]
        assert request.url.path == "/api/v1/ai/qa"
        assert request.headers["Accept"] == "text/event-stream"
        body = json.loads(request.content)
        assert body["mode"] == "answer"
        assert body["context"]["chapter"]["number"] == 1
        assert body["context"]["paragraphs"] == ["Paul Atreides..."]

    @pytest.mark.asyncio
    async def test_stream_http_error(self):
        client = _client(lambda request: httpx.Response(503, text="down"))
        with pytest.raises(HttpError) as exc_info:
            async for _ in client.ask(self._question()):
                pass
        assert exc_info.value.status_code == 503

    @pytest.mark.parametrize(
        "line",
        ["", "event: ping", "data:", "data: [DONE]", 'data: {"delta": "no type"}'],
    )
    def test_ignored_lines(self, line: str):
        assert AIClient._parse_sse_line(line) is None

    @pytest.mark.asyncio
    async def test_stream_redirect_is_an_error(self):
        client = _client(
            lambda request: httpx.Response(302, headers={"Location": "https://elsewhere"})
        )
        with pytest.raises(HttpError) as exc_info:
            async for _ in client.ask(self._question()):
                pass
        assert exc_info.value.status_code == 302
