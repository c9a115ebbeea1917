"""会话快照的 Cypher 回放脚本：生成与解析。

脚本由幂等的 MERGE 语句组成，每行一条，整个脚本是一个不含分号的查询，
可以在 Memgraph 中作为单个事务执行。解析器只接受生成器产出的语法子集，
用于在没有数据库的环境（内存存储）中回放快照。
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence, Union

from chatgraph.models import Message, TopicWithTags
from chatgraph.storage.schema import (
    DECOHERES,
    EDGE_ENDPOINTS,
    HAS_TAG,
    INITIATES,
    KEY_FIELDS,
    MESSAGE,
    MESSAGE_FIELDS,
    TAG,
    TOPIC,
    message_to_props,
    tag_key,
    topic_key,
)

_IDENTIFIER = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_DECODER = json.JSONDecoder()


def _literal(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _node_pattern(var: str, label: str, key: Mapping[str, Any]) -> str:
    if not key:
        return f"({var}:{label})"
    body = ", ".join(f"{name}: {_literal(value)}" for name, value in key.items())
    return f"({var}:{label} {{{body}}})"


def render_replay_script(
    messages: Sequence[Message], topics: Sequence[TopicWithTags] = ()
) -> str:
    lines: list[str] = []
    for msg_no, message in enumerate(messages, start=1):
        var = f"m{msg_no}"
        props = message_to_props(message)
        key = {"id": props.pop("id")}
        assignments = ", ".join(
            f"{var}.{name}={_literal(value)}" for name, value in props.items()
        )
        lines.append(f"MERGE {_node_pattern(var, MESSAGE, key)} SET {assignments}")
        if msg_no > 1:
            lines.append(f"MERGE (m{msg_no - 1})-[:{DECOHERES}]->({var})")
        lines.append("")

    for topic_no, entry in enumerate(topics, start=1):
        topic_var = f"t{topic_no}"
        lines.append(f"MERGE {_node_pattern(topic_var, TOPIC, topic_key(entry.topic))}")
        lines.append(f"MERGE ({topic_var})-[:{INITIATES}]->(m1)")
        for tag_no, tag in enumerate(entry.tags, start=1):
            tag_var = f"g{topic_no}_{tag_no}"
            lines.append(f"MERGE {_node_pattern(tag_var, TAG, tag_key(tag))}")
            lines.append(f"MERGE ({topic_var})-[:{HAS_TAG}]->({tag_var})")
        lines.append("")
    return "\n".join(lines)


@dataclass(frozen=True)
class MergeNode:
    var: str
    label: str
    key: dict[str, Any] = field(default_factory=dict)
    assignments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MergeEdge:
    source: str
    rel_type: str
    target: str


ReplayStatement = Union[MergeNode, MergeEdge]


class _LineScanner:
    def __init__(self, text: str, line_no: int) -> None:
        self.text = text
        self.line_no = line_no
        self.pos = 0

    def error(self, reason: str) -> ValueError:
        return ValueError(f"replay script line {self.line_no}, col {self.pos + 1}: {reason}")

    def _skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def consume(self, token: str) -> bool:
        self._skip_ws()
        if self.text.startswith(token, self.pos):
            self.pos += len(token)
            return True
        return False

    def expect(self, token: str) -> None:
        if not self.consume(token):
            raise self.error(f"expected {token!r}")

    def identifier(self) -> str:
        self._skip_ws()
        match = _IDENTIFIER.match(self.text, self.pos)
        if match is None:
            raise self.error("expected identifier")
        self.pos = match.end()
        return match.group(0)

    def literal(self) -> Any:
        self._skip_ws()
        try:
            value, end = _DECODER.raw_decode(self.text, self.pos)
        except json.JSONDecodeError as exc:
            raise self.error(f"invalid literal: {exc.msg}") from exc
        self.pos = end
        return value

    def map_body(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.consume("}"):
            return result
        while True:
            name = self.identifier()
            self.expect(":")
            result[name] = self.literal()
            if self.consume("}"):
                return result
            self.expect(",")

    def end(self) -> None:
        self._skip_ws()
        if self.pos != len(self.text):
            raise self.error("unexpected trailing input")


def _parse_line(text: str, line_no: int) -> ReplayStatement:
    scanner = _LineScanner(text, line_no)
    scanner.expect("MERGE")
    scanner.expect("(")
    var = scanner.identifier()
    if scanner.consume(")"):
        scanner.expect("-[:")
        rel_type = scanner.identifier()
        if rel_type not in EDGE_ENDPOINTS:
            raise scanner.error(f"unsupported relationship {rel_type!r}")
        scanner.expect("]->(")
        target = scanner.identifier()
        scanner.expect(")")
        scanner.end()
        return MergeEdge(source=var, rel_type=rel_type, target=target)

    scanner.expect(":")
    label = scanner.identifier()
    if label not in KEY_FIELDS:
        raise scanner.error(f"unsupported label {label!r}")
    key: dict[str, Any] = {}
    if scanner.consume("{"):
        key = scanner.map_body()
    if not key:
        raise scanner.error(f"{label} MERGE needs a property key")
    unknown = set(key) - KEY_FIELDS[label]
    if unknown:
        raise scanner.error(f"unsupported {label} key {sorted(unknown)}")
    if not all(isinstance(value, str) for value in key.values()):
        raise scanner.error(f"{label} key values must be strings")
    scanner.expect(")")
    assignments: dict[str, Any] = {}
    if scanner.consume("SET"):
        if label != MESSAGE:
            raise scanner.error(f"SET is only allowed on {MESSAGE}")
        while True:
            target_var = scanner.identifier()
            if target_var != var:
                raise scanner.error(f"SET targets {target_var!r}, expected {var!r}")
            scanner.expect(".")
            prop = scanner.identifier()
            if prop not in MESSAGE_FIELDS:
                raise scanner.error(f"unsupported {MESSAGE} property {prop!r}")
            scanner.expect("=")
            assignments[prop] = scanner.literal()
            if not scanner.consume(","):
                break
    scanner.end()
    return MergeNode(var=var, label=label, key=key, assignments=assignments)


def _line_error(line_no: int, reason: str) -> ValueError:
    return ValueError(f"replay script line {line_no}: {reason}")


def parse_replay_script(script: str) -> list[ReplayStatement]:
    """解析回放脚本；变量必须先由节点 MERGE 绑定，边的两端标签须符合图模型。"""
    statements: list[ReplayStatement] = []
    bound: dict[str, MergeNode] = {}
    initiated: dict[str, dict[str, Any]] = {}
    # 只按 "\n" 切行，U+2028 等字符可以原样出现在字符串字面量中
    for line_no, raw in enumerate(script.split("\n"), start=1):
        line = raw.strip()
        if not line or line.startswith("//"):
            continue
        statement = _parse_line(line, line_no)
        if isinstance(statement, MergeNode):
            if statement.var in bound:
                raise _line_error(line_no, f"variable {statement.var!r} is already bound")
            bound[statement.var] = statement
        else:
            source = bound.get(statement.source)
            target = bound.get(statement.target)
            if source is None or target is None:
                raise _line_error(
                    line_no, f"unbound variable in {statement.source}->{statement.target}"
                )
            expected = EDGE_ENDPOINTS[statement.rel_type]
            if (source.label, target.label) != expected:
                raise _line_error(
                    line_no,
                    f"{statement.rel_type} must link {expected[0]} to {expected[1]}",
                )
            if statement.rel_type == INITIATES:
                root_id = target.key.get("id")
                existing = initiated.setdefault(root_id, source.key)
                if existing != source.key:
                    raise _line_error(line_no, f"message {root_id} already has a topic")
        statements.append(statement)
    return statements


def initiated_topics(statements: Sequence[ReplayStatement]) -> dict[str, dict[str, Any]]:
    """返回脚本中 INITIATES 边对应的 {根消息 id: 话题键}。"""
    nodes = {s.var: s for s in statements if isinstance(s, MergeNode)}
    return {
        nodes[s.target].key["id"]: nodes[s.source].key
        for s in statements
        if isinstance(s, MergeEdge) and s.rel_type == INITIATES
    }
