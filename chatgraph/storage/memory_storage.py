"""进程内对话图存储：按 id 索引的消息表 + parent_id 索引。

所有写操作持有同一把锁并在草稿状态上完成后整体替换，调用要么全部生效，
要么不留痕迹。主要用于测试与本地运行（CHATGRAPH_STORAGE=memory）。
"""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Sequence

from pydantic import ValidationError

from chatgraph.errors import IntegrityError, NotFoundError, StoreError
from chatgraph.models import (
    AncestorPath,
    Branch,
    BranchEdge,
    ConversationSnapshot,
    Message,
    SnapshotEdge,
    SnapshotResult,
    Tag,
    Topic,
    TopicWithTags,
)
from chatgraph.storage.replay import MergeEdge, MergeNode, ReplayStatement, parse_replay_script
from chatgraph.storage.schema import (
    DECOHERES,
    HAS_TAG,
    INITIATES,
    MESSAGE,
    TAG,
    TOPIC,
    message_from_props,
    message_to_props,
    tag_key,
    topic_key,
)

logger = logging.getLogger(__name__)

PropKey = tuple[tuple[str, Any], ...]


def _freeze(props: dict[str, Any]) -> PropKey:
    return tuple(sorted(props.items()))


@dataclass
class _MessageRecord:
    message: Message
    parent_id: str | None = None
    edge: BranchEdge | None = None
    children: list[str] = field(default_factory=list)


@dataclass
class _GraphState:
    messages: dict[str, _MessageRecord] = field(default_factory=dict)
    topics: dict[PropKey, Topic] = field(default_factory=dict)
    tags: dict[PropKey, Tag] = field(default_factory=dict)
    initiates: dict[str, list[PropKey]] = field(default_factory=dict)
    has_tag: dict[PropKey, list[PropKey]] = field(default_factory=dict)
    snapshots: dict[tuple[str, int], ConversationSnapshot] = field(default_factory=dict)
    snapshot_edges: dict[tuple[str, int], SnapshotEdge] = field(default_factory=dict)


class InMemoryStorage:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = _GraphState()

    @staticmethod
    def _require_record(state: _GraphState, message_id: str) -> _MessageRecord:
        record = state.messages.get(message_id)
        if record is None:
            raise NotFoundError(message_id)
        return record

    @staticmethod
    def _insert(
        state: _GraphState,
        message: Message,
        *,
        parent_id: str | None,
        edge: BranchEdge | None,
    ) -> None:
        if message.id in state.messages:
            raise StoreError(f"message id already exists: {message.id}")
        state.messages[message.id] = _MessageRecord(
            message=message, parent_id=parent_id, edge=edge if parent_id else None
        )
        if parent_id is not None:
            state.messages[parent_id].children.append(message.id)

    @staticmethod
    def _is_ancestor(state: _GraphState, candidate_id: str, message_id: str) -> bool:
        seen: set[str] = set()
        current: str | None = message_id
        while current is not None and current not in seen:
            if current == candidate_id:
                return True
            seen.add(current)
            current = state.messages[current].parent_id
        return False

    def _link(self, state: _GraphState, parent_id: str, child_id: str) -> None:
        child = state.messages[child_id]
        if child.parent_id == parent_id:
            return
        if child.parent_id is not None:
            raise IntegrityError(
                f"message {child_id} already has parent {child.parent_id}"
            )
        if self._is_ancestor(state, child_id, parent_id):
            raise IntegrityError(f"linking {parent_id} -> {child_id} would create a cycle")
        child.parent_id = parent_id
        state.messages[parent_id].children.append(child_id)

    @staticmethod
    def _merge_topic(state: _GraphState, topic: Topic) -> PropKey:
        key = _freeze(topic_key(topic))
        state.topics.setdefault(key, topic)
        return key

    @staticmethod
    def _merge_tag(state: _GraphState, tag: Tag) -> PropKey:
        key = _freeze(tag_key(tag))
        state.tags.setdefault(key, tag)
        return key

    @staticmethod
    def _initiate(state: _GraphState, root_id: str, topic_ref: PropKey) -> None:
        current = state.initiates.setdefault(root_id, [])
        if current and current[0] != topic_ref:
            raise IntegrityError(f"message {root_id} already has a topic")
        if not current:
            current.append(topic_ref)

    @staticmethod
    def _append_unique(items: list[PropKey], key: PropKey) -> None:
        if key not in items:
            items.append(key)

    def get_message(self, message_id: str) -> Message | None:
        with self._lock:
            record = self._state.messages.get(message_id)
            return None if record is None else record.message

    def create_message(
        self,
        message: Message,
        *,
        parent_id: str | None = None,
        edge: BranchEdge | None = None,
    ) -> Message:
        with self._lock:
            if parent_id is not None:
                self._require_record(self._state, parent_id)
            self._insert(self._state, message, parent_id=parent_id, edge=edge)
        return message

    def attach_topic(self, *, root_id: str, topic: Topic, tags: Iterable[Tag]) -> None:
        with self._lock:
            record = self._require_record(self._state, root_id)
            if record.parent_id is not None:
                raise IntegrityError(f"topics attach to root messages only: {root_id}")
            self._initiate(self._state, root_id, _freeze(topic_key(topic)))
            topic_ref = self._merge_topic(self._state, topic)
            tag_refs = self._state.has_tag.setdefault(topic_ref, [])
            for tag in tags:
                self._append_unique(tag_refs, self._merge_tag(self._state, tag))

    def fetch_ancestor_path(self, tip_id: str) -> AncestorPath:
        with self._lock:
            state = self._state
            tip = self._require_record(state, tip_id)
            path = [tip]
            seen = {tip_id}
            current = tip
            while current.parent_id is not None:
                if current.parent_id in seen:
                    raise IntegrityError(
                        f"cycle detected above message {tip_id} at {current.parent_id}"
                    )
                seen.add(current.parent_id)
                current = self._require_record(state, current.parent_id)
                path.append(current)
            path.reverse()
            root_id = path[0].message.id
            topics = [
                TopicWithTags(
                    topic=state.topics[topic_ref],
                    tags=[state.tags[tag_ref] for tag_ref in state.has_tag.get(topic_ref, [])],
                )
                for topic_ref in state.initiates.get(root_id, [])
            ]
            return AncestorPath(
                messages=[record.message for record in path],
                topics=topics,
                tip_edge=tip.edge,
            )

    def list_children(self, parent_id: str) -> list[Branch]:
        with self._lock:
            parent = self._require_record(self._state, parent_id)
            children = [self._state.messages[child_id] for child_id in parent.children]
            return [
                Branch(message=child.message, edge=child.edge or BranchEdge())
                for child in children
            ]

    def create_branches(self, *, parent_id: str, branches: Sequence[Branch]) -> None:
        with self._lock:
            self._require_record(self._state, parent_id)
            draft = copy.deepcopy(self._state)
            for branch in branches:
                self._insert(draft, branch.message, parent_id=parent_id, edge=branch.edge)
            self._state = draft

    def merge_snapshot(
        self, *, snapshot: ConversationSnapshot, edge: SnapshotEdge
    ) -> SnapshotResult:
        key = (snapshot.msgid, snapshot.sig)
        with self._lock:
            self._require_record(self._state, snapshot.msgid)
            existing = self._state.snapshots.get(key)
            if existing is None:
                self._state.snapshots[key] = snapshot
                self._state.snapshot_edges[key] = edge
                return SnapshotResult(snapshot=snapshot, edge=edge)
            refreshed = self._state.snapshot_edges[key].model_copy(
                update={"timestamp": edge.timestamp}
            )
            self._state.snapshot_edges[key] = refreshed
            return SnapshotResult(snapshot=existing, edge=refreshed)

    def list_snapshots(self, *, tip_id: str, limit: int) -> list[SnapshotResult]:
        with self._lock:
            self._require_record(self._state, tip_id)
            results = [
                SnapshotResult(snapshot=snapshot, edge=self._state.snapshot_edges[key])
                for key, snapshot in self._state.snapshots.items()
                if key[0] == tip_id
            ]
        results.sort(key=lambda result: result.edge.timestamp, reverse=True)
        return results[:limit]

    def run_replay_script(self, script: str) -> None:
        statements = parse_replay_script(script)
        with self._lock:
            draft = copy.deepcopy(self._state)
            self._apply_statements(draft, statements)
            self._state = draft
        logger.info("Replayed %d statements", len(statements))

    def _apply_statements(
        self, state: _GraphState, statements: Sequence[ReplayStatement]
    ) -> None:
        bindings: dict[str, tuple[str, Any]] = {}
        for statement in statements:
            if isinstance(statement, MergeNode):
                bindings[statement.var] = self._apply_merge_node(state, statement)
                continue
            source = bindings.get(statement.source)
            target = bindings.get(statement.target)
            if source is None or target is None:
                raise ValueError(
                    f"unbound variable in {statement.source}->{statement.target}"
                )
            self._apply_merge_edge(state, statement, source, target)

    def _apply_merge_node(self, state: _GraphState, statement: MergeNode) -> tuple[str, Any]:
        if statement.label == MESSAGE:
            message_id = statement.key.get("id")
            if not isinstance(message_id, str):
                raise ValueError("Message MERGE requires a string id key")
            record = state.messages.get(message_id)
            props = {} if record is None else message_to_props(record.message)
            props.update(statement.assignments)
            props["id"] = message_id
            try:
                message = message_from_props(props)
            except (KeyError, ValidationError) as exc:
                raise ValueError(f"incomplete Message {message_id}: {exc}") from exc
            if record is None:
                state.messages[message_id] = _MessageRecord(message=message)
            else:
                record.message = message
            return MESSAGE, message_id
        if statement.label == TOPIC:
            return TOPIC, self._merge_topic(state, Topic(**statement.key))
        if statement.label == TAG:
            return TAG, self._merge_tag(state, Tag(**statement.key))
        raise ValueError(f"unsupported label in replay script: {statement.label}")

    def _apply_merge_edge(
        self,
        state: _GraphState,
        statement: MergeEdge,
        source: tuple[str, Any],
        target: tuple[str, Any],
    ) -> None:
        kinds = (statement.rel_type, source[0], target[0])
        if kinds == (DECOHERES, MESSAGE, MESSAGE):
            self._link(state, source[1], target[1])
        elif kinds == (INITIATES, TOPIC, MESSAGE):
            self._initiate(state, target[1], source[1])
        elif kinds == (HAS_TAG, TOPIC, TAG):
            self._append_unique(state.has_tag.setdefault(source[1], []), target[1])
        else:
            raise ValueError(f"unsupported relationship in replay script: {kinds}")
