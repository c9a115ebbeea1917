"""对话树领域模型：消息、分支边、话题标签与会话快照。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FunctionCall(BaseModel):
    name: str
    arguments: str


class ToolCall(BaseModel):
    id: str
    type: str
    function: FunctionCall


class ChatMessage(BaseModel):
    """Chat completion 线格式消息，同时也是快照 JSON 的元素。"""

    role: str = Field(..., min_length=1)
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None


class Message(ChatMessage):
    """对话树中的一个节点，id 为全局唯一自然键。"""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def to_chat(self) -> ChatMessage:
        return ChatMessage(
            role=self.role,
            content=self.content,
            tool_calls=self.tool_calls,
            tool_call_id=self.tool_call_id,
        )


class Topic(BaseModel):
    """根消息的话题，属性即 MERGE 键，至少需要一个非空字段。"""

    title: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def ensure_has_key(self) -> "Topic":
        if self.title is None and self.summary is None and self.description is None:
            raise ValueError("topic needs at least one of title/summary/description")
        return self


class Tag(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None

    @model_validator(mode="after")
    def ensure_has_key(self) -> "Tag":
        if self.name is None and self.description is None:
            raise ValueError("tag needs a name or a description")
        return self


class TopicWithTags(BaseModel):
    topic: Topic
    tags: List[Tag] = Field(default_factory=list)


class BranchEdge(BaseModel):
    """DECOHERES 边上的生成元数据，usage 在同一请求的所有分支上相同。"""

    created: Optional[datetime] = None
    model: Optional[str] = None
    system_fingerprint: Optional[str] = None
    usage_completion: Optional[int] = None
    usage_prompt: Optional[int] = None
    usage_total: Optional[int] = None
    finish_reason: Optional[str] = None
    choice_index: Optional[int] = None


class Branch(BaseModel):
    message: Message
    edge: BranchEdge = Field(default_factory=BranchEdge)


class AncestorPath(BaseModel):
    """从根到 tip 的唯一路径，附带根节点的话题与标签。"""

    messages: List[Message] = Field(..., min_length=1)
    topics: List[TopicWithTags] = Field(default_factory=list)
    tip_edge: Optional[BranchEdge] = None

    @property
    def root(self) -> Message:
        return self.messages[0]

    @property
    def tip(self) -> Message:
        return self.messages[-1]


class ConversationSnapshot(BaseModel):
    msgid: str
    sig: int = Field(..., ge=0, le=0xFFFFFFFF)
    timestamp: datetime
    transcript: str
    cypher: str


class SnapshotEdge(BranchEdge):
    timestamp: datetime


class SnapshotResult(BaseModel):
    snapshot: ConversationSnapshot
    edge: SnapshotEdge


class CreateMessagePayload(BaseModel):
    role: str = Field(..., min_length=1)
    content: Optional[str] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    parent_id: Optional[str] = None


class AskPayload(BaseModel):
    model: Optional[str] = None


class AttachTopicPayload(BaseModel):
    topic: Topic
    tags: List[Tag] = Field(default_factory=list)


class ReplayPayload(BaseModel):
    cypher: str = Field(..., min_length=1)


class MessageIdView(BaseModel):
    id: str
