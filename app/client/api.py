"""
Async client for the playground HTTP API (httpx). Used by the fan-out coordinator
and by scripts; it never touches the database or provider SDKs.
"""
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx

from app.utils.trailer import TrailerParser

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.message = message


@dataclass(frozen=True)
class ErrorInfo:
    title: str
    description: str


def describe_error(status: int, message: str) -> ErrorInfo:
    """User-facing title/description for one provider panel's failure."""
    if status == 429:
        return ErrorInfo("Rate Limited", "Too many requests. Please wait a moment and try again.")
    if status == 401:
        return ErrorInfo("Authentication Error", "API key is invalid or missing.")
    if status == 403:
        return ErrorInfo("Access Denied", "You don't have permission to access this model.")
    if status in (500, 502, 503):
        return ErrorInfo("Service Unavailable", "The AI service is temporarily unavailable. Please try again.")
    if "timeout" in (message or "").lower():
        return ErrorInfo("Request Timeout", "The request took too long. Please try again.")
    return ErrorInfo("Error", message or "An unexpected error occurred.")


@dataclass(frozen=True)
class StreamEvent:
    kind: str  # "chunk" | "metadata"
    text: str = ""
    metadata: dict | None = None


def _ndjson_event(line: str) -> StreamEvent | None:
    """Decode one ndjson frame. Provider failures raise; a failed save only logs (metadata says saved: false)."""
    if not line.strip():
        return None
    frame = json.loads(line)
    kind = frame.pop("type", None)
    if kind == "chunk":
        return StreamEvent("chunk", text=frame.get("text") or "")
    if kind == "metadata":
        return StreamEvent("metadata", metadata=frame)
    if kind == "error":
        if frame.get("code") == "upstream_failure":
            raise ApiError(int(frame.get("status") or 500), frame.get("message") or "Stream failed")
        logger.warning("Server reported %s: %s", frame.get("code"), frame.get("message"))
        return None
    logger.debug("Ignoring unknown stream frame %r", kind)
    return None


def _error_message(body: bytes, status: int) -> str:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        text = body.decode(errors="replace").strip()
        return text or f"HTTP {status}"
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("error")
        if isinstance(detail, str):
            return detail
        if detail is not None:
            return json.dumps(detail)
    return f"HTTP {status}"


class PlaygroundClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self._headers = {"Authorization": f"Bearer {token}"}
        # Streams may legitimately go quiet for a while between chunks: no read timeout
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout, read=None),
        )

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        resp = await self._client.request(method, url, headers=self._headers, **kwargs)
        if resp.status_code >= 400:
            raise ApiError(resp.status_code, _error_message(resp.content, resp.status_code))
        return resp

    async def list_providers(self) -> list[dict]:
        resp = await self._request("GET", "/api/providers")
        return resp.json()["providers"]

    async def create_chat(
        self,
        prompt: str | None = None,
        prompt_id: str | None = None,
        chat_id: str | None = None,
    ) -> dict:
        body = {k: v for k, v in {"id": chat_id, "prompt": prompt, "promptId": prompt_id}.items() if v is not None}
        resp = await self._request("POST", "/api/chats", json=body)
        return resp.json()

    async def list_chats(self) -> list[dict]:
        resp = await self._request("GET", "/api/chats")
        return resp.json()["chats"]

    async def get_chat(self, chat_id: str) -> dict:
        resp = await self._request("GET", f"/api/chats/{chat_id}")
        return resp.json()

    async def delete_chat(self, chat_id: str) -> None:
        await self._request("DELETE", f"/api/chats/{chat_id}")

    async def create_prompt(self, chat_id: str, prompt: str, prompt_id: str | None = None) -> dict:
        body = {"prompt": prompt}
        if prompt_id:
            body["promptId"] = prompt_id
        resp = await self._request("POST", f"/api/chats/{chat_id}/prompts", json=body)
        return resp.json()

    async def stream_response(
        self,
        chat_id: str,
        prompt_id: str,
        prompt: str,
        provider: str,
        stream_format: str = "ndjson",
    ) -> AsyncIterator[StreamEvent]:
        """
        One provider's answer as events: "chunk" (display text, in order), then at most
        one "metadata". A provider failure, before or after the first chunk, raises ApiError.
        In text mode a failure after the first chunk only shows as a missing trailer.
        """
        async with self._client.stream(
            "POST",
            f"/api/chat/{chat_id}/submit",
            params={"provider": provider, "format": stream_format},
            json={"prompt": prompt, "promptId": prompt_id},
            headers=self._headers,
        ) as resp:
            if resp.status_code >= 400:
                body = await resp.aread()
                raise ApiError(resp.status_code, _error_message(body, resp.status_code))
            if stream_format == "ndjson":
                async for line in resp.aiter_lines():
                    event = _ndjson_event(line)
                    if event is not None:
                        yield event
                return
            parser = TrailerParser()
            async for text in resp.aiter_text():
                visible = parser.feed(text)
                if visible:
                    yield StreamEvent("chunk", text=visible)
            rest, metadata = parser.finish()
            if rest:
                yield StreamEvent("chunk", text=rest)
            if metadata is not None:
                yield StreamEvent("metadata", metadata=metadata)

    async def aclose(self) -> None:
        await self._client.aclose()
