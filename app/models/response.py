"""
One provider's answer to one prompt. At most one row per (prompt_id, provider):
the unique constraint doubles as the generation reservation ("pending" row).
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, String, Text, DateTime, Integer, Float, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from app.database import Base


class ResponseStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


TERMINAL_STATUSES = (ResponseStatus.SUCCESS.value, ResponseStatus.ERROR.value)


class Response(Base):
    __tablename__ = "responses"
    __table_args__ = (
        UniqueConstraint("prompt_id", "provider", name="uq_responses_prompt_provider"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    prompt_id = Column(
        String(36),
        ForeignKey("prompts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    provider = Column(String(32), nullable=False)
    model = Column(String(100), nullable=False)
    content = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default=ResponseStatus.PENDING.value)
    error = Column(Text, nullable=True)
    latency = Column(Integer, nullable=True)  # ms
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    prompt = relationship("Prompt", back_populates="responses")
