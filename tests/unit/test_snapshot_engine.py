import json
import zlib
from datetime import datetime, timedelta, timezone

import pytest

from chatgraph.errors import NotFoundError
from chatgraph.models import (
    Branch,
    BranchEdge,
    FunctionCall,
    Message,
    Tag,
    ToolCall,
    Topic,
    TopicWithTags,
)
from chatgraph.services.snapshot_engine import SnapshotEngine, canonical_topics, signature
from chatgraph.storage.memory_storage import InMemoryStorage

T0 = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


def _ticking_clock(step: timedelta = timedelta(minutes=5)):
    ticks = {"now": T0}

    def clock() -> datetime:
        current = ticks["now"]
        ticks["now"] = current + step
        return current

    return clock


def _tool_conversation(storage, make_chain) -> str:
    make_chain(storage, [("system", "You are a bot"), ("user", "What is 6*7?")])
    call = ToolCall(
        id="call-1",
        type="function",
        function=FunctionCall(name="multiply", arguments='{"a": 6, "b": 7}'),
    )
    storage.create_branches(
        parent_id="msg-1",
        branches=[
            Branch(
                message=Message(id="call", role="assistant", tool_calls=[call], timestamp=T0),
                edge=BranchEdge(model="gpt-test", usage_total=30, finish_reason="tool_calls"),
            )
        ],
    )
    storage.create_message(
        Message(id="result", role="tool", content="42", tool_call_id="call-1", timestamp=T0),
        parent_id="call",
    )
    storage.attach_topic(
        root_id="msg-0",
        topic=Topic(title="Maths", summary="Arithmetic help"),
        tags=[Tag(name="tools"), Tag(name="arithmetic")],
    )
    return "result"


def test_snapshot_of_example_conversation(storage, bot_chain):
    result = SnapshotEngine(storage, clock=lambda: T0).snapshot("msg-1")

    transcript = result.snapshot.transcript
    assert transcript == (
        '[{"role":"system","content":"You are a bot"},{"role":"user","content":"Hello"}]'
    )
    assert result.snapshot.msgid == "msg-1"
    assert result.snapshot.timestamp == T0
    assert result.edge.timestamp == T0
    assert result.snapshot.sig == zlib.crc32(
        (transcript + result.snapshot.cypher).encode("utf-8")
    ) & 0xFFFFFFFF
    assert "MERGE (m1)-[:DECOHERES]->(m2)" in result.snapshot.cypher


def test_signature_chains_inputs():
    assert signature("ab", "cd") == zlib.crc32(b"abcd")
    assert signature() == 0
    assert 0 <= signature("日本語") <= 0xFFFFFFFF


def test_snapshot_is_idempotent_per_history(storage, bot_chain):
    engine = SnapshotEngine(storage, clock=_ticking_clock())

    first = engine.snapshot("msg-1")
    second = engine.snapshot("msg-1")

    assert first.snapshot.sig == second.snapshot.sig
    assert second.snapshot.timestamp == T0
    assert second.edge.timestamp == T0 + timedelta(minutes=5)
    listed = engine.snapshots("msg-1", limit=10)
    assert len(listed) == 1
    assert listed[0].edge.timestamp == T0 + timedelta(minutes=5)


def test_snapshot_changes_when_topics_change(storage, bot_chain):
    engine = SnapshotEngine(storage, clock=_ticking_clock())
    before = engine.snapshot("msg-1")
    storage.attach_topic(root_id="msg-0", topic=Topic(title="Greeting"), tags=[])
    after = engine.snapshot("msg-1")

    assert before.snapshot.sig != after.snapshot.sig
    assert 'MERGE (t1:Topic {title: "Greeting"})' in after.snapshot.cypher
    newest_first = [r.snapshot.sig for r in engine.snapshots("msg-1", limit=5)]
    assert newest_first == [after.snapshot.sig, before.snapshot.sig]
    assert [r.snapshot.sig for r in engine.snapshots("msg-1")] == [after.snapshot.sig]


def test_snapshot_of_root_only_conversation(storage):
    storage.create_message(Message(id="solo", role="system", content="Be brief", timestamp=T0))
    storage.attach_topic(root_id="solo", topic=Topic(title="Solo"), tags=[Tag(name="one")])

    result = SnapshotEngine(storage, clock=lambda: T0).snapshot("solo")

    assert json.loads(result.snapshot.transcript) == [{"role": "system", "content": "Be brief"}]
    assert "DECOHERES" not in result.snapshot.cypher
    assert "MERGE (t1)-[:INITIATES]->(m1)" in result.snapshot.cypher
    assert "MERGE (t1)-[:HAS_TAG]->(g1_1)" in result.snapshot.cypher
    assert result.edge.model is None
    assert result.edge.usage_total is None


def test_snapshot_copies_tip_edge_metadata(storage, make_chain):
    tip_id = _tool_conversation(storage, make_chain)

    call_snapshot = SnapshotEngine(storage, clock=lambda: T0).snapshot("call")
    tip_snapshot = SnapshotEngine(storage, clock=lambda: T0).snapshot(tip_id)

    assert call_snapshot.edge.model == "gpt-test"
    assert call_snapshot.edge.usage_total == 30
    assert call_snapshot.edge.finish_reason == "tool_calls"
    assert tip_snapshot.edge.model is None


def test_snapshot_replays_into_identical_history(storage, make_chain):
    tip_id = _tool_conversation(storage, make_chain)
    original = SnapshotEngine(storage, clock=lambda: T0).snapshot(tip_id)

    restored = InMemoryStorage()
    restored.run_replay_script(original.snapshot.cypher)
    draft = SnapshotEngine.build(restored.fetch_ancestor_path(tip_id))

    assert draft.transcript == original.snapshot.transcript
    assert draft.cypher == original.snapshot.cypher
    assert draft.sig == original.snapshot.sig
    history = restored.fetch_ancestor_path(tip_id).messages
    assert history == storage.fetch_ancestor_path(tip_id).messages
    assert history[2].tool_calls[0].function.arguments == '{"a": 6, "b": 7}'


def test_canonical_topics_sorts_topics_and_tags():
    topics = [
        TopicWithTags(topic=Topic(title="b"), tags=[Tag(name="z"), Tag(name="a")]),
        TopicWithTags(topic=Topic(title="a")),
    ]
    ordered = canonical_topics(topics)
    assert [entry.topic.title for entry in ordered] == ["a", "b"]
    assert [tag.name for tag in ordered[1].tags] == ["a", "z"]


def test_snapshot_returns_none_for_corrupted_history(storage, bot_chain):
    storage._state.messages["msg-0"].parent_id = "msg-1"
    assert SnapshotEngine(storage).snapshot("msg-1") is None


def test_snapshot_unknown_tip_raises(storage):
    with pytest.raises(NotFoundError):
        SnapshotEngine(storage).snapshot("missing")


def test_snapshots_rejects_non_positive_limit(storage, bot_chain):
    with pytest.raises(ValueError, match="limit"):
        SnapshotEngine(storage).snapshots("msg-1", limit=0)


def test_snapshot_replays_content_with_unicode_separators(storage, make_chain):
    make_chain(storage, [("system", "line\u2028break"), ("user", "next\x85line\u2029end")])
    storage.attach_topic(root_id="msg-0", topic=Topic(title="sep\u2028arated"), tags=[])
    original = SnapshotEngine(storage, clock=lambda: T0).snapshot("msg-1")

    restored = InMemoryStorage()
    restored.run_replay_script(original.snapshot.cypher)

    draft = SnapshotEngine.build(restored.fetch_ancestor_path("msg-1"))
    assert draft.transcript == original.snapshot.transcript
    assert draft.sig == original.snapshot.sig
    assert [m.content for m in restored.fetch_ancestor_path("msg-1").messages] == [
        "line\u2028break",
        "next\x85line\u2029end",
    ]
