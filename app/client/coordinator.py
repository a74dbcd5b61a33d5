"""
Client-side fan-out: one streaming request per provider for a prompt, all at once,
and a single "still answering" flag per prompt for the UI.

All mutation happens on one asyncio event loop, so StreamingState needs no locks.
A prompt is settled only after every provider reported done (success or error)
and the chat was re-fetched, so the UI never drops the live panels before the
stored responses are there to replace them.
"""
import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from app.client.api import ApiError, ErrorInfo, PlaygroundClient, describe_error
from app.services.errors import UpstreamError

logger = logging.getLogger(__name__)

SETTLE_RETRY_DELAY_SECONDS = 0.3

PANEL_STREAMING = "streaming"
PANEL_SUCCESS = "success"
PANEL_ERROR = "error"
PANEL_CANCELLED = "cancelled"


@dataclass
class ProvisionalPrompt:
    """Prompt shown before the server confirmed it. Replaced, never merged, on reconciliation."""
    id: str
    content: str
    provisional: bool = True


@dataclass
class ProviderPanel:
    provider: str
    content: str = ""
    metadata: dict | None = None
    status: str = PANEL_STREAMING
    error: ErrorInfo | None = None


@dataclass
class StreamingState:
    """Session-scoped streaming bookkeeping for one open chat."""
    streaming_prompt_ids: set[str] = field(default_factory=set)
    started_prompt_ids: set[str] = field(default_factory=set)
    completed: dict[str, set[str]] = field(default_factory=dict)
    panels: dict[tuple[str, str], ProviderPanel] = field(default_factory=dict)
    provisional_prompt: ProvisionalPrompt | None = None
    chat: dict | None = None

    @property
    def is_streaming(self) -> bool:
        return bool(self.streaming_prompt_ids)

    def reset(self) -> None:
        self.streaming_prompt_ids.clear()
        self.started_prompt_ids.clear()
        self.completed.clear()
        self.panels.clear()
        self.provisional_prompt = None
        self.chat = None


def _prompt_response_count(chat: dict | None, prompt_id: str) -> int:
    if not chat:
        return 0
    for p in chat.get("prompts") or []:
        if p.get("id") == prompt_id:
            return len(p.get("responses") or [])
    return 0


def _stored_error(message: str) -> ErrorInfo:
    # stored rows keep the message only; the rate-limit text is the one status we can recover
    status = 429 if message == UpstreamError.RATE_LIMIT_MESSAGE else 0
    return describe_error(status, message)


class FanOutCoordinator:
    def __init__(
        self,
        api: PlaygroundClient,
        chat_id: str,
        providers: list[str],
        state: StreamingState | None = None,
        settle_retry_delay: float = SETTLE_RETRY_DELAY_SECONDS,
        on_update: Callable[[str, str, str | None], None] | None = None,
        stream_format: str = "ndjson",
    ):
        if not providers:
            raise ValueError("At least one provider is required")
        self.api = api
        self.chat_id = chat_id
        self.providers = list(providers)
        self.state = state or StreamingState()
        self.settle_retry_delay = settle_retry_delay
        self._on_update = on_update
        self.stream_format = stream_format

    def _notify(self, event: str, prompt_id: str, provider: str | None = None) -> None:
        if self._on_update:
            self._on_update(event, prompt_id, provider)

    async def submit(self, text: str, prompt_id: str | None = None) -> str:
        """Create the prompt (client-generated id), show it provisionally, fan out, wait for settle."""
        if not text.strip():
            raise ValueError("Prompt cannot be empty")
        prompt_id = prompt_id or str(uuid.uuid4())
        self.state.provisional_prompt = ProvisionalPrompt(id=prompt_id, content=text)
        try:
            await self.api.create_prompt(self.chat_id, text, prompt_id)
        except Exception:
            self.state.provisional_prompt = None
            raise
        await self.begin_streaming(prompt_id, text)
        return prompt_id

    async def begin_streaming(self, prompt_id: str, prompt: str) -> None:
        """Run every provider's stream concurrently; returns once the prompt settled."""
        self.state.started_prompt_ids.add(prompt_id)
        self.state.streaming_prompt_ids.add(prompt_id)
        self.state.completed.setdefault(prompt_id, set())
        self._notify("streaming", prompt_id)
        await asyncio.gather(
            *(self._stream_provider(prompt_id, prompt, provider) for provider in self.providers)
        )

    async def _stream_provider(self, prompt_id: str, prompt: str, provider: str) -> None:
        panel = ProviderPanel(provider=provider)
        self.state.panels[(prompt_id, provider)] = panel
        try:
            async for event in self.api.stream_response(
                self.chat_id, prompt_id, prompt, provider, stream_format=self.stream_format
            ):
                if event.kind == "metadata":
                    panel.metadata = event.metadata
                elif event.text:
                    panel.content += event.text
                    self._notify("chunk", prompt_id, provider)
            panel.status = PANEL_SUCCESS
        except asyncio.CancelledError:
            panel.status = PANEL_CANCELLED
            raise
        except ApiError as e:
            panel.status = PANEL_ERROR
            panel.error = describe_error(e.status, e.message)
            logger.info("Provider %s failed for prompt %s: %s", provider, prompt_id, e)
        except httpx.TimeoutException as e:
            panel.status = PANEL_ERROR
            panel.error = describe_error(0, f"Request timeout: {e}")
        except httpx.HTTPError as e:
            panel.status = PANEL_ERROR
            panel.error = describe_error(0, str(e) or "Stream failed")
            logger.info("Provider %s stream broke for prompt %s: %s", provider, prompt_id, e)
        finally:
            await self.on_provider_done(prompt_id, provider)

    async def on_provider_done(self, prompt_id: str, provider: str) -> None:
        done = self.state.completed.setdefault(prompt_id, set())
        if provider in done:
            return
        done.add(provider)
        self._notify("done", prompt_id, provider)
        if len(done) == len(self.providers) and prompt_id in self.state.streaming_prompt_ids:
            await self._reconcile(prompt_id)

    async def _fetch_chat(self) -> dict | None:
        try:
            return await self.api.get_chat(self.chat_id)
        except (ApiError, httpx.HTTPError) as e:
            logger.warning("Reconciliation fetch for chat %s failed: %s", self.chat_id, e)
            return None

    async def _reconcile(self, prompt_id: str) -> None:
        chat = await self._fetch_chat()
        if _prompt_response_count(chat, prompt_id) == 0:
            await asyncio.sleep(self.settle_retry_delay)
            chat = await self._fetch_chat() or chat
            if _prompt_response_count(chat, prompt_id) == 0:
                logger.info("Responses for prompt %s not visible yet; settling from stream state", prompt_id)
        self._settle(prompt_id, chat)

    def _settle(self, prompt_id: str, chat: dict | None) -> None:
        if chat is not None:
            self.state.chat = chat
            self._apply_stored(prompt_id, chat)
        self.state.streaming_prompt_ids.discard(prompt_id)
        self.state.completed.pop(prompt_id, None)
        provisional = self.state.provisional_prompt
        if provisional is not None and provisional.id == prompt_id:
            self.state.provisional_prompt = None
        self._notify("settled", prompt_id)

    def _apply_stored(self, prompt_id: str, chat: dict) -> None:
        """The stored record wins over what the stream showed (a text stream can end early without saying why)."""
        for p in chat.get("prompts") or []:
            if p.get("id") != prompt_id:
                continue
            for r in p.get("responses") or []:
                panel = self.state.panels.get((prompt_id, r.get("provider")))
                if panel is None or panel.status == PANEL_CANCELLED:
                    continue
                if r.get("status") == PANEL_ERROR:
                    if panel.status != PANEL_ERROR:
                        panel.error = _stored_error(r.get("error") or "")
                    panel.status = PANEL_ERROR
                elif r.get("status") == PANEL_SUCCESS:
                    panel.status = PANEL_SUCCESS
                    panel.error = None
                    panel.content = r.get("content") or panel.content

    def pending_prompts(self, chat: dict) -> list[dict]:
        """Persisted prompts with no responses that this session has not started streaming."""
        return [
            p for p in chat.get("prompts") or []
            if not p.get("responses") and p.get("id") not in self.state.started_prompt_ids
        ]

    async def auto_detect(self, chat: dict) -> list[str]:
        """
        After loading a chat: stream any unanswered prompts (e.g. the tab was closed mid-answer).
        A provisional prompt that now exists on the server is dropped in favour of the real one.
        """
        self.state.chat = chat
        provisional = self.state.provisional_prompt
        if provisional is not None and any(
            p.get("content") == provisional.content for p in chat.get("prompts") or []
        ):
            self.state.provisional_prompt = None
        pending = self.pending_prompts(chat)
        if not pending:
            return []
        for p in pending:
            self.state.started_prompt_ids.add(p["id"])
        await asyncio.gather(*(self.begin_streaming(p["id"], p["content"]) for p in pending))
        return [p["id"] for p in pending]
