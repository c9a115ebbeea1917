"""Memgraph storage adapter built on GQLAlchemy."""

from __future__ import annotations

import logging
import os
from typing import Any, Iterable, Mapping, Sequence

from gqlalchemy import Memgraph

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
from chatgraph.storage.replay import initiated_topics, parse_replay_script
from chatgraph.storage.schema import (
    CONSTRAINT_DEFINITIONS,
    INDEX_DEFINITIONS,
    edge_from_props,
    edge_to_props,
    message_from_props,
    message_to_props,
    snapshot_edge_from_props,
    snapshot_edge_props,
    snapshot_from_props,
    snapshot_to_props,
    tag_key,
    topic_key,
)

logger = logging.getLogger(__name__)

_ROOT_TOPICS_CLAUSE = (
    "OPTIONAL MATCH (t:Topic)-[:INITIATES]->(h) "
    "OPTIONAL MATCH (t)-[:HAS_TAG]->(g:Tag) "
    "WITH {carry}, t, collect(DISTINCT properties(g)) AS tags "
    "WITH {carry}, collect(CASE WHEN t IS NULL THEN NULL "
    "ELSE {{topic: properties(t), tags: tags}} END) AS topics "
)

_ANCESTOR_PATH_QUERY = (
    "MATCH p = (h:Message)-[:DECOHERES *]->(tip:Message {id: $tip_id}) "
    "WHERE NOT exists((:Message)-[:DECOHERES]->(h)) "
    "WITH p, h LIMIT 1 "
    + _ROOT_TOPICS_CLAUSE.format(carry="p")
    + "RETURN [n IN nodes(p) | properties(n)] AS messages, "
    "properties(last(relationships(p))) AS tip_edge, topics;"
)

_ROOT_ONLY_QUERY = (
    "MATCH (h:Message {id: $tip_id}) "
    "OPTIONAL MATCH (parent:Message)-[:DECOHERES]->(h) "
    "WITH h, count(parent) AS parents "
    + _ROOT_TOPICS_CLAUSE.format(carry="h, parents")
    + "RETURN properties(h) AS tip, parents, topics;"
)

_MERGE_SNAPSHOT_QUERY = (
    "MATCH (m:Message {id: $msgid}) "
    "MERGE (c:Conversation {msgid: $msgid, sig: $sig}) "
    "ON CREATE SET c.timestamp = $timestamp, c.json = $json, c.cypher = $cypher "
    "MERGE (m)-[r:SNAPSHOT]->(c) "
    "ON CREATE SET r += $edge "
    "SET r.timestamp = $edge_timestamp "
    "RETURN properties(c) AS snapshot, properties(r) AS edge;"
)


def _topics_from_rows(rows: Iterable[Mapping[str, Any]] | None) -> list[TopicWithTags]:
    return [
        TopicWithTags(
            topic=Topic(**row["topic"]),
            tags=[Tag(**tag) for tag in row.get("tags") or []],
        )
        for row in rows or []
    ]


def _key_pattern(prefix: str, key: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    """把属性键转成带参数的 MERGE 模式，属性名来自固定 schema 字段。"""
    if not key:
        return "", {}
    params = {f"{prefix}_{name}": value for name, value in key.items()}
    body = ", ".join(f"{name}: ${prefix}_{name}" for name in key)
    return f" {{{body}}}", params


class MemgraphStorage:  # pragma: no cover
    def __init__(self, *, host: str | None = None, port: int | None = None) -> None:
        resolved_host = host or os.getenv("MEMGRAPH_HOST")
        if not resolved_host:
            raise ValueError("MEMGRAPH_HOST is required")
        resolved_port = port
        if resolved_port is None:
            raw_port = os.getenv("MEMGRAPH_PORT")
            if not raw_port:
                raise ValueError("MEMGRAPH_PORT is required")
            try:
                resolved_port = int(raw_port)
            except ValueError as exc:
                raise ValueError("MEMGRAPH_PORT must be an integer") from exc
            if resolved_port <= 0:
                raise ValueError("MEMGRAPH_PORT must be > 0")
        self.db = Memgraph(host=resolved_host, port=resolved_port)
        self.ensure_schema()

    def close(self) -> None:
        cached = self.db._cached_connection
        if cached is None:
            return
        cached._connection.close()

    def _execute(self, query: str, params: Mapping[str, Any] | None = None) -> None:
        try:
            self.db.execute(query, dict(params or {}))
        except Exception as exc:
            raise StoreError(f"memgraph statement failed: {exc}") from exc

    def _fetch(
        self, query: str, params: Mapping[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        try:
            return list(self.db.execute_and_fetch(query, dict(params or {})))
        except Exception as exc:
            raise StoreError(f"memgraph query failed: {exc}") from exc

    def ensure_schema(self) -> None:
        for index in INDEX_DEFINITIONS:
            self._execute(f"CREATE INDEX ON :{index['label']}({index['property']});")
        for constraint in CONSTRAINT_DEFINITIONS:
            asserted = ", ".join(f"n.{prop}" for prop in constraint["properties"])
            self._execute(
                f"CREATE CONSTRAINT ON (n:{constraint['label']}) ASSERT {asserted} IS UNIQUE;"
            )

    def get_message(self, message_id: str) -> Message | None:
        rows = self._fetch(
            "MATCH (m:Message {id: $id}) RETURN properties(m) AS m LIMIT 1;",
            {"id": message_id},
        )
        if not rows:
            return None
        return message_from_props(rows[0]["m"])

    def create_message(
        self,
        message: Message,
        *,
        parent_id: str | None = None,
        edge: BranchEdge | None = None,
    ) -> Message:
        props = message_to_props(message)
        if parent_id is None:
            self._execute("CREATE (m:Message) SET m += $props;", {"props": props})
            return message
        rows = self._fetch(
            "MATCH (p:Message {id: $parent_id}) "
            "CREATE (p)-[r:DECOHERES]->(m:Message) "
            "SET m += $props, r += $edge "
            "RETURN m.id AS id;",
            {
                "parent_id": parent_id,
                "props": props,
                "edge": edge_to_props(edge or BranchEdge()),
            },
        )
        if not rows:
            raise NotFoundError(parent_id)
        return message

    def _root_topics(self, message_id: str) -> tuple[int, list[dict[str, Any]]] | None:
        """返回 (入边数, 已挂话题属性)，消息不存在时返回 None。"""
        rows = self._fetch(
            "MATCH (m:Message {id: $id}) "
            "OPTIONAL MATCH (p:Message)-[:DECOHERES]->(m) "
            "WITH m, count(p) AS parents "
            "OPTIONAL MATCH (t:Topic)-[:INITIATES]->(m) "
            "RETURN parents, collect(properties(t)) AS topics;",
            {"id": message_id},
        )
        if not rows:
            return None
        return int(rows[0]["parents"]), list(rows[0]["topics"] or [])

    @staticmethod
    def _ensure_single_topic(
        root_id: str, existing: Sequence[Mapping[str, Any]], key: Mapping[str, Any]
    ) -> None:
        if any(dict(props) != dict(key) for props in existing):
            raise IntegrityError(f"message {root_id} already has a topic")

    def attach_topic(self, *, root_id: str, topic: Topic, tags: Iterable[Tag]) -> None:
        state = self._root_topics(root_id)
        if state is None:
            raise NotFoundError(root_id)
        parents, existing = state
        if parents > 0:
            raise IntegrityError(f"topics attach to root messages only: {root_id}")
        key = topic_key(topic)
        self._ensure_single_topic(root_id, existing, key)
        topic_pattern, params = _key_pattern("topic", key)
        clauses = [
            "MATCH (m:Message {id: $root_id})",
            f"MERGE (t:Topic{topic_pattern})",
            "MERGE (t)-[:INITIATES]->(m)",
        ]
        for tag_no, tag in enumerate(tags):
            tag_pattern, tag_params = _key_pattern(f"tag{tag_no}", tag_key(tag))
            clauses.append(f"MERGE (g{tag_no}:Tag{tag_pattern})")
            clauses.append(f"MERGE (t)-[:HAS_TAG]->(g{tag_no})")
            params.update(tag_params)
        params["root_id"] = root_id
        self._execute(" ".join(clauses) + ";", params)

    def fetch_ancestor_path(self, tip_id: str) -> AncestorPath:
        rows = self._fetch(_ANCESTOR_PATH_QUERY, {"tip_id": tip_id})
        if rows:
            row = rows[0]
            return AncestorPath(
                messages=[message_from_props(props) for props in row["messages"]],
                topics=_topics_from_rows(row["topics"]),
                tip_edge=edge_from_props(row["tip_edge"]),
            )

        # tip 本身是根节点时变长路径为空，单独取根及其话题
        rows = self._fetch(_ROOT_ONLY_QUERY, {"tip_id": tip_id})
        if not rows:
            raise NotFoundError(tip_id)
        row = rows[0]
        if int(row["parents"]) > 0:
            raise IntegrityError(f"ancestor walk from {tip_id} never reaches a root message")
        return AncestorPath(
            messages=[message_from_props(row["tip"])],
            topics=_topics_from_rows(row["topics"]),
        )

    def list_children(self, parent_id: str) -> list[Branch]:
        rows = self._fetch(
            "MATCH (p:Message {id: $id}) "
            "OPTIONAL MATCH (p)-[r:DECOHERES]->(c:Message) "
            "RETURN properties(c) AS message, properties(r) AS edge "
            "ORDER BY c.timestamp ASC, r.choice_index ASC;",
            {"id": parent_id},
        )
        if not rows:
            raise NotFoundError(parent_id)
        return [
            Branch(
                message=message_from_props(row["message"]),
                edge=edge_from_props(row["edge"]) or BranchEdge(),
            )
            for row in rows
            if row["message"] is not None
        ]

    def create_branches(self, *, parent_id: str, branches: Sequence[Branch]) -> None:
        if not branches:
            return
        rows = self._fetch(
            "MATCH (p:Message {id: $parent_id}) "
            "UNWIND $rows AS row "
            "CREATE (p)-[r:DECOHERES]->(m:Message) "
            "SET m += row.message, r += row.edge "
            "RETURN count(m) AS created;",
            {
                "parent_id": parent_id,
                "rows": [
                    {
                        "message": message_to_props(branch.message),
                        "edge": edge_to_props(branch.edge),
                    }
                    for branch in branches
                ],
            },
        )
        if not rows or int(rows[0]["created"]) == 0:
            raise NotFoundError(parent_id)
        logger.debug("Created %s branches under %s", rows[0]["created"], parent_id)

    def merge_snapshot(
        self, *, snapshot: ConversationSnapshot, edge: SnapshotEdge
    ) -> SnapshotResult:
        props = snapshot_to_props(snapshot)
        edge_props = snapshot_edge_props(edge)
        params = {
            **props,
            "edge": edge_props,
            "edge_timestamp": edge_props["timestamp"],
        }
        try:
            rows = self._fetch(_MERGE_SNAPSHOT_QUERY, params)
        except StoreError as exc:
            # 并发的首次快照在 (msgid, sig) 约束上冲突，重试时 MERGE 会命中已提交的节点
            logger.warning(
                "Snapshot %s of %s conflicted, retrying: %s", snapshot.sig, snapshot.msgid, exc
            )
            rows = self._fetch(_MERGE_SNAPSHOT_QUERY, params)
        if not rows:
            raise NotFoundError(snapshot.msgid)
        row = rows[0]
        return SnapshotResult(
            snapshot=snapshot_from_props(row["snapshot"]),
            edge=snapshot_edge_from_props(row["edge"]),
        )

    def list_snapshots(self, *, tip_id: str, limit: int) -> list[SnapshotResult]:
        if self.get_message(tip_id) is None:
            raise NotFoundError(tip_id)
        rows = self._fetch(
            "MATCH (m:Message {id: $tip_id})-[r:SNAPSHOT]->(c:Conversation) "
            "RETURN properties(c) AS snapshot, properties(r) AS edge "
            "ORDER BY r.timestamp DESC LIMIT $limit;",
            {"tip_id": tip_id, "limit": limit},
        )
        return [
            SnapshotResult(
                snapshot=snapshot_from_props(row["snapshot"]),
                edge=snapshot_edge_from_props(row["edge"]),
            )
            for row in rows
        ]

    def run_replay_script(self, script: str) -> None:
        statements = parse_replay_script(script)
        for root_id, key in initiated_topics(statements).items():
            state = self._root_topics(root_id)
            if state is not None:
                self._ensure_single_topic(root_id, state[1], key)
        self._execute(script)
        logger.info("Replayed %d statements", len(statements))
