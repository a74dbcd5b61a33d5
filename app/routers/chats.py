"""
Chat history endpoints. Every query is scoped to the caller (chat.user_id);
a chat owned by someone else is indistinguishable from a missing one (404).
- POST   /api/chats                    : create (optionally with the first prompt)
- GET    /api/chats                    : recent chats
- GET    /api/chats/{chat_id}          : chat with prompts and finished responses
- DELETE /api/chats/{chat_id}          : delete (cascades)
- POST   /api/chats/{chat_id}/prompts  : add a prompt (idempotent on promptId)
"""
import asyncio
import logging
from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from app.auth import get_current_user_id
from app.config import get_settings
from app.core.redis import get_response_cache
from app.database import get_db
from app.repositories.chat_repository import ChatRepository
from app.services.providers import CATALOG
from app.services.redis_response_cache import RedisResponseCache
from app.schemas.chat import ChatCreate, ChatDetail, ChatListResponse, ChatSummary, PromptCreate, PromptOut

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chats", tags=["chats"])
repo = ChatRepository()


def _require_text(prompt: str) -> str:
    if not prompt.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Prompt cannot be empty")
    return prompt


@router.post("", response_model=ChatDetail, status_code=status.HTTP_201_CREATED)
def create_chat(
    body: ChatCreate | None = None,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    body = body or ChatCreate()
    if body.prompt is not None:
        _require_text(body.prompt)

    chat = repo.create_chat(db, user_id, body.id)
    if chat is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Chat id already in use")

    if body.prompt:
        prompt = repo.create_prompt(db, chat.id, user_id, body.prompt, body.prompt_id)
        if prompt is None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Prompt id already in use")

    logger.info("Chat %s created for user %s", chat.id, user_id)
    return ChatDetail.model_validate(repo.get_chat_detail(db, chat.id, user_id))


@router.get("", response_model=ChatListResponse)
def list_chats(
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    chats = repo.list_chats(db, user_id, limit=get_settings().chat_list_limit)
    return ChatListResponse(chats=[ChatSummary.model_validate(c) for c in chats])


@router.get("/{chat_id}", response_model=ChatDetail)
def get_chat(
    chat_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    detail = repo.get_chat_detail(db, chat_id, user_id)
    if detail is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    return ChatDetail.model_validate(detail)


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chat(
    chat_id: str,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    cache: RedisResponseCache | None = Depends(get_response_cache),
):
    loop = asyncio.get_event_loop()
    prompt_ids = await loop.run_in_executor(None, lambda: repo.prompt_ids_for_chat(db, chat_id, user_id))
    deleted = await loop.run_in_executor(None, lambda: repo.delete_chat(db, chat_id, user_id))
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")
    # Prompt ids are client-chosen: a recreated prompt must not replay this chat's answers
    if cache is not None:
        await cache.forget(prompt_ids, list(CATALOG))
    logger.info("Chat %s deleted by user %s", chat_id, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{chat_id}/prompts", response_model=PromptOut, status_code=status.HTTP_201_CREATED)
def create_prompt(
    chat_id: str,
    body: PromptCreate,
    db: Session = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    _require_text(body.prompt)
    if repo.get_chat(db, chat_id, user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat not found")

    prompt = repo.create_prompt(db, chat_id, user_id, body.prompt, body.prompt_id)
    if prompt is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Prompt id already in use")
    return PromptOut(
        id=prompt.id,
        chat_id=prompt.chat_id,
        content=prompt.content,
        created_at=prompt.created_at,
    )
