"""
Upstream model clients. One capability per provider: stream text for a prompt,
report usage on completion, stop when cancelled.
- gateway: OpenAI-compatible AI gateway (openai / anthropic / xai models) via the openai SDK.
- vertex: Gemini on Vertex AI via google-genai.
Cancelling the consuming task closes the upstream HTTP stream.
"""
import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import openai
from google.genai import errors as genai_errors
from openai import AsyncOpenAI

from app.config import Settings, get_settings
from app.services.errors import UpstreamError
from app.services.providers import BACKEND_VERTEX, ProviderSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


def _token_count(usage: Any, key: str) -> int:
    """Get token count from a usage report (dict or SDK model)."""
    if usage is None:
        return 0
    if isinstance(usage, dict):
        return int(usage.get(key) or 0)
    return int(getattr(usage, key, 0) or 0)


def classify_error(exc: BaseException, provider: str | None = None) -> UpstreamError:
    """Map SDK exceptions to UpstreamError, mirroring the provider status code when there is one."""
    if isinstance(exc, UpstreamError):
        return exc
    if isinstance(exc, openai.APIStatusError):
        return UpstreamError(exc.message, exc.status_code or 500, provider)
    if isinstance(exc, openai.APITimeoutError):
        return UpstreamError("Upstream request timeout", 504, provider)
    if isinstance(exc, openai.APIConnectionError):
        return UpstreamError(f"Could not reach provider: {exc}", 500, provider)
    if isinstance(exc, genai_errors.APIError):
        return UpstreamError(exc.message or str(exc), exc.code or 500, provider)
    return UpstreamError(str(exc) or exc.__class__.__name__, 500, provider)


class UpstreamClient:
    """Streams generations from whichever backend a ProviderSpec names. Clients are created lazily."""

    def __init__(self, settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._gateway_client: AsyncOpenAI | None = None
        self._vertex_client = None

    def _gateway(self) -> AsyncOpenAI:
        if self._gateway_client is not None:
            return self._gateway_client
        if not self._settings.ai_gateway_api_key:
            raise UpstreamError("AI gateway API key is not configured", 500)
        self._gateway_client = AsyncOpenAI(
            api_key=self._settings.ai_gateway_api_key,
            base_url=self._settings.ai_gateway_base_url,
            timeout=self._settings.upstream_timeout_seconds,
            max_retries=0,
        )
        return self._gateway_client

    def _vertex(self):
        if self._vertex_client is not None:
            return self._vertex_client
        from google import genai
        from google.oauth2 import service_account

        if not self._settings.vertex_project_id:
            raise UpstreamError("vertex_project_id is not configured", 500)

        credentials = None
        if self._settings.vertex_credentials_path:
            path = Path(self._settings.vertex_credentials_path)
            if path.is_file():
                credentials = service_account.Credentials.from_service_account_file(
                    str(path),
                    scopes=["https://www.googleapis.com/auth/cloud-platform"],
                )

        self._vertex_client = genai.Client(
            vertexai=True,
            project=self._settings.vertex_project_id,
            location=self._settings.vertex_location,
            credentials=credentials,
        )
        return self._vertex_client

    async def stream_text(self, spec: ProviderSpec, prompt: str) -> AsyncIterator[TextDelta | Usage]:
        """
        Yield TextDelta for every generated piece, in order, then at most one Usage.
        Raises UpstreamError on any provider failure; CancelledError passes through.
        """
        if spec.backend == BACKEND_VERTEX:
            events = self._stream_vertex(spec, prompt)
        else:
            events = self._stream_gateway(spec, prompt)
        try:
            async for event in events:
                yield event
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise classify_error(e, spec.id) from e
        finally:
            await events.aclose()

    async def _stream_gateway(self, spec: ProviderSpec, prompt: str) -> AsyncIterator[TextDelta | Usage]:
        client = self._gateway()
        stream = await client.chat.completions.create(
            model=spec.model_id,
            messages=[{"role": "user", "content": prompt}],
            stream=True,
            stream_options={"include_usage": True},
        )
        try:
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                if usage:
                    yield Usage(
                        input_tokens=_token_count(usage, "prompt_tokens"),
                        output_tokens=_token_count(usage, "completion_tokens"),
                    )
                if not chunk.choices:
                    continue
                delta = getattr(chunk.choices[0], "delta", None)
                text = getattr(delta, "content", None)
                if text:
                    yield TextDelta(text)
        finally:
            await stream.close()

    async def _stream_vertex(self, spec: ProviderSpec, prompt: str) -> AsyncIterator[TextDelta | Usage]:
        client = self._vertex()
        from google.genai.types import GenerateContentConfig

        stream = await client.aio.models.generate_content_stream(
            model=spec.model_id,
            contents=prompt,
            config=GenerateContentConfig(temperature=0.7),
        )
        usage = None
        async for chunk in stream:
            if not chunk:
                continue
            # Gemini repeats cumulative usage on chunks; the last one wins
            usage = getattr(chunk, "usage_metadata", None) or usage
            text = getattr(chunk, "text", None)
            if text:
                yield TextDelta(text)
        if usage is not None:
            yield Usage(
                input_tokens=_token_count(usage, "prompt_token_count"),
                output_tokens=_token_count(usage, "candidates_token_count"),
            )

    async def aclose(self) -> None:
        if self._gateway_client is not None:
            try:
                await self._gateway_client.close()
            except Exception as e:
                logger.warning("Gateway client close error: %s", e)
            self._gateway_client = None
        self._vertex_client = None


_upstream_client: UpstreamClient | None = None


def get_upstream_client() -> UpstreamClient:
    """Process-wide client so HTTP connection pools are shared across requests."""
    global _upstream_client
    if _upstream_client is None:
        _upstream_client = UpstreamClient()
    return _upstream_client


async def close_upstream_client() -> None:
    global _upstream_client
    if _upstream_client is not None:
        await _upstream_client.aclose()
        _upstream_client = None
