"""
Prompt answering endpoints:
- GET  /api/providers: providers that answer every prompt, in display order
- POST /api/chat/{chat_id}/submit?provider=<id>[&format=text|ndjson]: one provider's
  streamed answer to one prompt (stored answers are replayed, never regenerated)
"""
import asyncio
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.auth import get_current_user_id
from app.core.redis import get_response_cache
from app.database import get_db, SessionLocal
from app.repositories.chat_repository import ChatRepository
from app.schemas.chat import ProviderListResponse, ProviderOut, SubmitRequest
from app.services.ai_service import UpstreamClient, get_upstream_client
from app.services.ai_stream_service import CLIENT_CLOSED_REQUEST, FRAMINGS, StreamOrchestrator
from app.services.errors import GenerationInProgress, UnknownProvider, UpstreamError
from app.services.providers import registered_providers, resolve
from app.services.redis_response_cache import RedisResponseCache
from app.services.response_guard import ResponseGuard

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["ai"])
repo = ChatRepository()


def _get_orchestrator_dep(
    cache: RedisResponseCache | None = Depends(get_response_cache),
    upstream: UpstreamClient = Depends(get_upstream_client),
) -> StreamOrchestrator:
    """Orchestrator over fresh sessions: the stream outlives the request-scoped session."""
    guard = ResponseGuard(SessionLocal, repo, cache)
    return StreamOrchestrator(upstream, guard, SessionLocal, repo)


@router.get("/providers", response_model=ProviderListResponse)
def list_providers():
    return ProviderListResponse(
        providers=[
            ProviderOut(
                id=p.id,
                display_name=p.display_name,
                model_id=p.model_id,
                pricing_key=p.pricing_key,
            )
            for p in registered_providers()
        ]
    )


@router.post("/chat/{chat_id}/submit")
async def submit_prompt(
    chat_id: str,
    body: SubmitRequest,
    request: Request,
    provider: str | None = Query(None),
    format: str = Query("text"),
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    orchestrator: StreamOrchestrator = Depends(_get_orchestrator_dep),
):
    """
    Stream one provider's answer. text: raw chunks + metadata trailer; ndjson: framed events.
    Errors before the first chunk come back as JSON with the upstream status (429, 5xx).
    """
    try:
        spec = resolve(provider)
    except UnknownProvider:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid provider")
    framing = FRAMINGS.get(format)
    if framing is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid format")

    loop = asyncio.get_event_loop()
    chat = await loop.run_in_executor(None, lambda: repo.get_chat(db, chat_id, user_id))
    if chat is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    prompt_row = await loop.run_in_executor(None, lambda: repo.get_prompt(db, body.prompt_id, chat_id))
    if prompt_row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Prompt not found")

    try:
        stream = await orchestrator.open(
            prompt_id=body.prompt_id,
            prompt=prompt_row.content,
            spec=spec,
            framing=framing,
        )
    except UpstreamError as e:
        if await request.is_disconnected():
            logger.debug("Client left before streaming started (prompt=%s provider=%s)", body.prompt_id, spec.id)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        raise HTTPException(status_code=e.status_code, detail=e.message) from e
    except GenerationInProgress as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    return StreamingResponse(
        stream,
        media_type=framing.media_type,
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
