"""A comparison chat owned by one user. Prompts (and their responses) cascade on delete."""
import uuid
from datetime import datetime

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship

from app.database import Base

TITLE_MAX_LENGTH = 50


class Chat(Base):
    __tablename__ = "chats"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(64), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow, index=True)

    prompts = relationship(
        "Prompt",
        back_populates="chat",
        order_by="Prompt.created_at",
        cascade="all, delete-orphan",
        passive_deletes=True,
        lazy="select",
    )


def derive_title(prompt: str) -> str:
    """First 50 characters of the first prompt, with an ellipsis when cut."""
    return prompt[:TITLE_MAX_LENGTH] + ("..." if len(prompt) > TITLE_MAX_LENGTH else "")
