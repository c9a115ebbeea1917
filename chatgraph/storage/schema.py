"""Memgraph 图模型：标签、关系类型、索引约束以及节点属性的编解码。"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Mapping

from chatgraph.models import (
    BranchEdge,
    ConversationSnapshot,
    Message,
    SnapshotEdge,
    Tag,
    Topic,
    ToolCall,
)

MESSAGE = "Message"
CONVERSATION = "Conversation"
TOPIC = "Topic"
TAG = "Tag"

DECOHERES = "DECOHERES"
INITIATES = "INITIATES"
HAS_TAG = "HAS_TAG"
SNAPSHOT = "SNAPSHOT"

INDEX_DEFINITIONS = [
    {"label": MESSAGE, "property": "id"},
    {"label": CONVERSATION, "property": "msgid"},
    {"label": TOPIC, "property": "title"},
    {"label": TAG, "property": "name"},
]

CONSTRAINT_DEFINITIONS = [
    {"label": MESSAGE, "properties": ["id"]},
    {"label": CONVERSATION, "properties": ["msgid", "sig"]},
]

EDGE_FIELDS: tuple[str, ...] = tuple(BranchEdge.model_fields)

# 回放脚本允许的节点键、Message 属性与边的端点标签
KEY_FIELDS: dict[str, frozenset[str]] = {
    MESSAGE: frozenset({"id"}),
    TOPIC: frozenset(Topic.model_fields),
    TAG: frozenset(Tag.model_fields),
}
MESSAGE_FIELDS = frozenset({"timestamp", "role", "content", "tool_calls", "tool_call_id"})
EDGE_ENDPOINTS: dict[str, tuple[str, str]] = {
    DECOHERES: (MESSAGE, MESSAGE),
    INITIATES: (TOPIC, MESSAGE),
    HAS_TAG: (TOPIC, TAG),
}


def _iso(value: datetime) -> str:
    return value.isoformat()


def dump_tool_call(tool_call: ToolCall) -> str:
    return tool_call.model_dump_json(exclude_none=True)


def message_to_props(message: Message) -> dict[str, Any]:
    props: dict[str, Any] = {
        "id": message.id,
        "timestamp": _iso(message.timestamp),
        "role": message.role,
    }
    if message.content is not None:
        props["content"] = message.content
    if message.tool_calls is not None:
        props["tool_calls"] = [dump_tool_call(tc) for tc in message.tool_calls]
    if message.tool_call_id is not None:
        props["tool_call_id"] = message.tool_call_id
    return props


def message_from_props(props: Mapping[str, Any]) -> Message:
    raw_calls = props.get("tool_calls")
    tool_calls = None
    if raw_calls is not None:
        tool_calls = [ToolCall.model_validate(json.loads(raw)) for raw in raw_calls]
    return Message(
        id=props["id"],
        role=props["role"],
        content=props.get("content"),
        tool_calls=tool_calls,
        tool_call_id=props.get("tool_call_id"),
        timestamp=props["timestamp"],
    )


def edge_to_props(edge: BranchEdge) -> dict[str, Any]:
    props: dict[str, Any] = {}
    for field in EDGE_FIELDS:
        value = getattr(edge, field)
        if value is None:
            continue
        props[field] = _iso(value) if isinstance(value, datetime) else value
    return props


def edge_from_props(props: Mapping[str, Any] | None) -> BranchEdge | None:
    if props is None:
        return None
    return BranchEdge(**{k: v for k, v in props.items() if k in EDGE_FIELDS})


def snapshot_edge_props(edge: SnapshotEdge) -> dict[str, Any]:
    props = edge_to_props(edge)
    props["timestamp"] = _iso(edge.timestamp)
    return props


def snapshot_edge_from_props(props: Mapping[str, Any]) -> SnapshotEdge:
    fields = {k: v for k, v in props.items() if k in EDGE_FIELDS}
    return SnapshotEdge(timestamp=props["timestamp"], **fields)


def snapshot_to_props(snapshot: ConversationSnapshot) -> dict[str, Any]:
    return {
        "msgid": snapshot.msgid,
        "sig": snapshot.sig,
        "timestamp": _iso(snapshot.timestamp),
        "json": snapshot.transcript,
        "cypher": snapshot.cypher,
    }


def snapshot_from_props(props: Mapping[str, Any]) -> ConversationSnapshot:
    return ConversationSnapshot(
        msgid=props["msgid"],
        sig=props["sig"],
        timestamp=props["timestamp"],
        transcript=props["json"],
        cypher=props["cypher"],
    )


def topic_key(topic: Topic) -> dict[str, str]:
    return topic.model_dump(exclude_none=True)


def tag_key(tag: Tag) -> dict[str, str]:
    return tag.model_dump(exclude_none=True)
