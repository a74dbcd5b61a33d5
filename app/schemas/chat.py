from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    """Wire format is camelCase (promptId, createdAt); Python side stays snake_case."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ---- Requests ----

class SubmitRequest(_CamelModel):
    prompt: str = Field(..., min_length=1, max_length=32000)
    prompt_id: str = Field(..., min_length=1, max_length=36)


class PromptCreate(_CamelModel):
    prompt: str = Field(..., max_length=32000)
    prompt_id: str | None = Field(None, min_length=1, max_length=36)


class ChatCreate(_CamelModel):
    id: str | None = Field(None, min_length=1, max_length=36)
    prompt: str | None = Field(None, max_length=32000)
    prompt_id: str | None = Field(None, min_length=1, max_length=36)


# ---- Responses ----

class ResponseOut(_CamelModel):
    id: str
    provider: str
    model: str
    content: str
    status: str  # "success" | "error"
    error: str | None = None
    latency: int | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0


class PromptOut(_CamelModel):
    id: str
    chat_id: str
    content: str
    created_at: datetime | None = None
    responses: list[ResponseOut] = []


class ChatSummary(_CamelModel):
    id: str
    title: str | None = None
    created_at: datetime
    updated_at: datetime


class ChatDetail(ChatSummary):
    prompts: list[PromptOut] = []


class ChatListResponse(BaseModel):
    chats: list[ChatSummary]


class ProviderOut(_CamelModel):
    id: str
    display_name: str
    model_id: str
    pricing_key: str


class ProviderListResponse(BaseModel):
    providers: list[ProviderOut]


class UsageMetadata(_CamelModel):
    """Token/cost figures carried by the metadata trailer (and the ndjson metadata frame)."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    saved: bool | None = None
