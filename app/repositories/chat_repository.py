"""
Chat persistence: Chat -> Prompt -> Response. DB as source of truth.
All operations are sync (used from sync endpoints or run_in_executor from async).
Ownership: every chat read/write filters on chat.user_id; prompts and responses
are only reached through an owned chat or by a caller that already checked it.
"""
from datetime import datetime

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from app.models.chat import Chat, derive_title
from app.models.prompt import Prompt
from app.models.response import Response, ResponseStatus, TERMINAL_STATUSES


# ---------- Chats ----------


def get_chat(db: Session, chat_id: str, user_id: str) -> Chat | None:
    return db.query(Chat).filter(Chat.id == chat_id, Chat.user_id == user_id).first()


def create_chat(db: Session, user_id: str, chat_id: str | None = None) -> Chat | None:
    """
    Create a chat. A client-supplied id that the same user already owns returns
    that chat (retry-safe); an id owned by someone else returns None.
    """
    if chat_id:
        existing = db.query(Chat).filter(Chat.id == chat_id).first()
        if existing is not None:
            return existing if existing.user_id == user_id else None
    chat = Chat(user_id=user_id)
    if chat_id:
        chat.id = chat_id
    db.add(chat)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = db.query(Chat).filter(Chat.id == chat_id).first()
        return existing if existing is not None and existing.user_id == user_id else None
    db.refresh(chat)
    return chat


def list_chats(db: Session, user_id: str, limit: int = 50) -> list[Chat]:
    """Most recently updated first."""
    return (
        db.query(Chat)
        .filter(Chat.user_id == user_id)
        .order_by(desc(Chat.updated_at))
        .limit(limit)
        .all()
    )


def get_chat_detail(db: Session, chat_id: str, user_id: str) -> dict | None:
    """
    Chat with prompts (oldest first) and their terminal responses. Pending
    reservations are left out: they are not answers yet.
    """
    chat = (
        db.query(Chat)
        .options(selectinload(Chat.prompts).selectinload(Prompt.responses))
        .filter(Chat.id == chat_id, Chat.user_id == user_id)
        .first()
    )
    if chat is None:
        return None
    return {
        "id": chat.id,
        "title": chat.title,
        "created_at": chat.created_at,
        "updated_at": chat.updated_at,
        "prompts": [
            {
                "id": p.id,
                "chat_id": p.chat_id,
                "content": p.content,
                "created_at": p.created_at,
                "responses": [
                    _response_dict(r) for r in p.responses if r.status in TERMINAL_STATUSES
                ],
            }
            for p in chat.prompts
        ],
    }


def _response_dict(r: Response) -> dict:
    return {
        "id": r.id,
        "provider": r.provider,
        "model": r.model,
        "content": r.content or "",
        "status": r.status,
        "error": r.error,
        "latency": r.latency,
        "prompt_tokens": r.prompt_tokens or 0,
        "completion_tokens": r.completion_tokens or 0,
        "total_tokens": r.total_tokens or 0,
        "cost": r.cost or 0.0,
    }


def prompt_ids_for_chat(db: Session, chat_id: str, user_id: str) -> list[str]:
    rows = (
        db.query(Prompt.id)
        .join(Chat, Chat.id == Prompt.chat_id)
        .filter(Chat.id == chat_id, Chat.user_id == user_id)
        .all()
    )
    return [row[0] for row in rows]


def delete_chat(db: Session, chat_id: str, user_id: str) -> bool:
    """Delete an owned chat; prompts and responses cascade."""
    chat = get_chat(db, chat_id, user_id)
    if chat is None:
        return False
    db.delete(chat)
    db.commit()
    return True


# ---------- Prompts ----------


def get_prompt(db: Session, prompt_id: str, chat_id: str) -> Prompt | None:
    return db.query(Prompt).filter(Prompt.id == prompt_id, Prompt.chat_id == chat_id).first()


def create_prompt(
    db: Session,
    chat_id: str,
    user_id: str,
    content: str,
    prompt_id: str | None = None,
) -> Prompt | None:
    """
    Add a prompt to an owned chat, set the chat title if it has none, bump updated_at.
    Upsert semantics on prompt_id: an existing prompt in the same chat is returned
    unchanged. Returns None if the chat is not owned or the id belongs to another chat.
    """
    chat = get_chat(db, chat_id, user_id)
    if chat is None:
        return None
    if prompt_id:
        existing = db.query(Prompt).filter(Prompt.id == prompt_id).first()
        if existing is not None:
            return existing if existing.chat_id == chat_id else None

    prompt = Prompt(chat_id=chat_id, content=content)
    if prompt_id:
        prompt.id = prompt_id
    db.add(prompt)
    if not chat.title:
        chat.title = derive_title(content)
    chat.updated_at = datetime.utcnow()
    try:
        db.commit()
    except IntegrityError:
        # Same prompt id submitted concurrently; the other insert won
        db.rollback()
        existing = db.query(Prompt).filter(Prompt.id == prompt_id).first()
        return existing if existing is not None and existing.chat_id == chat_id else None
    db.refresh(prompt)
    return prompt


# ---------- Responses ----------


def get_response(db: Session, prompt_id: str, provider: str) -> Response | None:
    return (
        db.query(Response)
        .filter(Response.prompt_id == prompt_id, Response.provider == provider)
        .first()
    )


def insert_reservation(db: Session, prompt_id: str, provider: str, model: str) -> Response | None:
    """
    Insert the pending row for (prompt_id, provider). Returns None when the unique
    constraint rejects it, i.e. another request already holds the pair.
    """
    row = Response(
        prompt_id=prompt_id,
        provider=provider,
        model=model,
        status=ResponseStatus.PENDING.value,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    db.refresh(row)
    return row


def delete_response(db: Session, response_id: str, status: str | None = None) -> bool:
    """Delete a response row, optionally only while it still has `status` (compare-and-delete)."""
    q = db.query(Response).filter(Response.id == response_id)
    if status is not None:
        q = q.filter(Response.status == status)
    deleted = q.delete(synchronize_session=False)
    db.commit()
    return deleted > 0


def complete_response(
    db: Session,
    response_id: str,
    *,
    content: str,
    latency: int,
    prompt_tokens: int,
    completion_tokens: int,
    cost: float,
) -> bool:
    """Turn a pending reservation into a success record. False if the reservation is gone."""
    updated = (
        db.query(Response)
        .filter(Response.id == response_id, Response.status == ResponseStatus.PENDING.value)
        .update(
            {
                Response.content: content,
                Response.status: ResponseStatus.SUCCESS.value,
                Response.latency: latency,
                Response.prompt_tokens: prompt_tokens,
                Response.completion_tokens: completion_tokens,
                Response.total_tokens: prompt_tokens + completion_tokens,
                Response.cost: cost,
                Response.error: None,
                Response.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated > 0


def fail_response(db: Session, response_id: str, *, error: str, latency: int | None = None) -> bool:
    """Turn a pending reservation into an error record (cleared by the next retry)."""
    updated = (
        db.query(Response)
        .filter(Response.id == response_id, Response.status == ResponseStatus.PENDING.value)
        .update(
            {
                Response.status: ResponseStatus.ERROR.value,
                Response.error: error,
                Response.content: "",
                Response.latency: latency,
                Response.updated_at: datetime.utcnow(),
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return updated > 0


class ChatRepository:
    """Thin wrapper for dependency injection; delegates to module functions."""

    @staticmethod
    def get_chat(db: Session, chat_id: str, user_id: str) -> Chat | None:
        return get_chat(db, chat_id, user_id)

    @staticmethod
    def create_chat(db: Session, user_id: str, chat_id: str | None = None) -> Chat | None:
        return create_chat(db, user_id, chat_id)

    @staticmethod
    def list_chats(db: Session, user_id: str, limit: int = 50) -> list[Chat]:
        return list_chats(db, user_id, limit)

    @staticmethod
    def get_chat_detail(db: Session, chat_id: str, user_id: str) -> dict | None:
        return get_chat_detail(db, chat_id, user_id)

    @staticmethod
    def delete_chat(db: Session, chat_id: str, user_id: str) -> bool:
        return delete_chat(db, chat_id, user_id)

    @staticmethod
    def prompt_ids_for_chat(db: Session, chat_id: str, user_id: str) -> list[str]:
        return prompt_ids_for_chat(db, chat_id, user_id)

    @staticmethod
    def get_prompt(db: Session, prompt_id: str, chat_id: str) -> Prompt | None:
        return get_prompt(db, prompt_id, chat_id)

    @staticmethod
    def create_prompt(
        db: Session,
        chat_id: str,
        user_id: str,
        content: str,
        prompt_id: str | None = None,
    ) -> Prompt | None:
        return create_prompt(db, chat_id, user_id, content, prompt_id)

    @staticmethod
    def get_response(db: Session, prompt_id: str, provider: str) -> Response | None:
        return get_response(db, prompt_id, provider)

    @staticmethod
    def insert_reservation(db: Session, prompt_id: str, provider: str, model: str) -> Response | None:
        return insert_reservation(db, prompt_id, provider, model)

    @staticmethod
    def delete_response(db: Session, response_id: str, status: str | None = None) -> bool:
        return delete_response(db, response_id, status)

    @staticmethod
    def complete_response(db: Session, response_id: str, **fields) -> bool:
        return complete_response(db, response_id, **fields)

    @staticmethod
    def fail_response(db: Session, response_id: str, *, error: str, latency: int | None = None) -> bool:
        return fail_response(db, response_id, error=error, latency=latency)
