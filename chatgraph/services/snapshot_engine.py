"""会话快照：把 tip 的完整历史导出为 JSON transcript 与幂等 Cypher 回放脚本。

同一 tip 在历史不变时得到相同签名（CRC-32），存储按 (msgid, sig) 做 MERGE，
重复快照只刷新 SNAPSHOT 边的时间戳，不会产生第二个 Conversation 节点。
"""

from __future__ import annotations

import logging
import zlib
from datetime import datetime
from typing import Callable, List

from pydantic import BaseModel, TypeAdapter

from chatgraph.errors import IntegrityError
from chatgraph.models import (
    AncestorPath,
    ChatMessage,
    ConversationSnapshot,
    SnapshotEdge,
    SnapshotResult,
    TopicWithTags,
    utc_now,
)
from chatgraph.services.history import HistoryResolver
from chatgraph.storage.ports import ConversationStoragePort
from chatgraph.storage.replay import render_replay_script

logger = logging.getLogger(__name__)

_TRANSCRIPT = TypeAdapter(List[ChatMessage])


def signature(*inputs: str) -> int:
    crc = 0
    for text in inputs:
        crc = zlib.crc32(text.encode("utf-8"), crc)
    return crc & 0xFFFFFFFF


def _sort_key(values: dict[str, str]) -> tuple[tuple[str, str], ...]:
    return tuple(sorted(values.items()))


def canonical_topics(topics: List[TopicWithTags]) -> List[TopicWithTags]:
    """话题与标签按属性排序，保证不同存储返回顺序不同时脚本仍一致。"""
    ordered = [
        TopicWithTags(
            topic=entry.topic,
            tags=sorted(entry.tags, key=lambda tag: _sort_key(tag.model_dump(exclude_none=True))),
        )
        for entry in topics
    ]
    return sorted(ordered, key=lambda entry: _sort_key(entry.topic.model_dump(exclude_none=True)))


class SnapshotDraft(BaseModel):
    transcript: str
    cypher: str
    sig: int


class SnapshotEngine:
    def __init__(
        self,
        storage: ConversationStoragePort,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._storage = storage
        self._history = HistoryResolver(storage)
        self._clock = clock

    @staticmethod
    def build(path: AncestorPath) -> SnapshotDraft:
        transcript = _TRANSCRIPT.dump_json(
            [message.to_chat() for message in path.messages], exclude_none=True
        ).decode("utf-8")
        cypher = render_replay_script(path.messages, canonical_topics(path.topics))
        return SnapshotDraft(
            transcript=transcript, cypher=cypher, sig=signature(transcript, cypher)
        )

    def snapshot(self, tip_id: str) -> SnapshotResult | None:
        try:
            path = self._history.resolve_path(tip_id)
            draft = self.build(path)
        except (IntegrityError, ValueError):
            logger.exception("Error snapshotting the conversation at %s", tip_id)
            return None

        now = self._clock()
        snapshot = ConversationSnapshot(
            msgid=tip_id,
            sig=draft.sig,
            timestamp=now,
            transcript=draft.transcript,
            cypher=draft.cypher,
        )
        edge_meta = path.tip_edge.model_dump() if path.tip_edge is not None else {}
        edge = SnapshotEdge(timestamp=now, **edge_meta)
        result = self._storage.merge_snapshot(snapshot=snapshot, edge=edge)
        logger.info(
            "Snapshot %s of %s covers %d messages", result.snapshot.sig, tip_id, len(path.messages)
        )
        return result

    def snapshots(self, tip_id: str, limit: int = 1) -> list[SnapshotResult]:
        """列出 tip 的历史快照，按 SNAPSHOT 边时间戳倒序。"""
        if limit <= 0:
            raise ValueError("limit must be > 0")
        return self._storage.list_snapshots(tip_id=tip_id, limit=limit)
