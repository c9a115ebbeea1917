"""Chat completion 响应 Schema（Pydantic v2），结构不符即视为 provider 失败。"""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from chatgraph.models import ChatMessage

CHAT_COMPLETION_OBJECT = "chat.completion"


class CompletionChoice(BaseModel):
    finish_reason: Optional[str] = None
    index: int = Field(..., ge=0)
    message: ChatMessage


class CompletionUsage(BaseModel):
    completion_tokens: int
    prompt_tokens: int
    total_tokens: int


class ChatCompletion(BaseModel):
    id: str
    object: str
    created: int
    model: str
    system_fingerprint: Optional[str] = None
    choices: List[CompletionChoice] = Field(..., min_length=1)
    usage: CompletionUsage

    @field_validator("object")
    @classmethod
    def ensure_chat_completion(cls, value: str) -> str:
        if value != CHAT_COMPLETION_OBJECT:
            raise ValueError(f"object == {value!r}, expected {CHAT_COMPLETION_OBJECT!r}")
        return value


class ChatCompletionRequest(BaseModel):
    model: str = Field(..., min_length=1)
    messages: List[ChatMessage] = Field(..., min_length=1)


__all__ = [
    "CHAT_COMPLETION_OBJECT",
    "ChatCompletion",
    "ChatCompletionRequest",
    "CompletionChoice",
    "CompletionUsage",
]
