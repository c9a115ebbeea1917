from datetime import datetime, timezone

import pytest

from chatgraph.errors import IntegrityError, NotFoundError, StoreError
from chatgraph.models import ConversationSnapshot, Message, SnapshotEdge, Tag, Topic, TopicWithTags
from chatgraph.storage.memgraph_storage import MemgraphStorage
from chatgraph.storage.replay import render_replay_script

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


class RecordingMemgraph:
    """对应 gqlalchemy.Memgraph 的 execute / execute_and_fetch"""

    def __init__(self, results=()):
        self._results = list(results)
        self.fetched: list[str] = []
        self.executed: list[str] = []

    def execute_and_fetch(self, query, params=None):
        self.fetched.append(query)
        result = self._results.pop(0)
        if isinstance(result, Exception):
            raise result
        return iter(result)

    def execute(self, query, params=None):
        self.executed.append(query)


def _storage(*results) -> tuple[MemgraphStorage, RecordingMemgraph]:
    db = RecordingMemgraph(results)
    storage = MemgraphStorage.__new__(MemgraphStorage)
    storage.db = db
    return storage, db


def _snapshot_row(timestamp: datetime) -> dict:
    return {
        "snapshot": {
            "msgid": "tip",
            "sig": 7,
            "timestamp": timestamp.isoformat(),
            "json": "[]",
            "cypher": "",
        },
        "edge": {"timestamp": timestamp.isoformat(), "model": "gpt-test"},
    }


def _merge(storage: MemgraphStorage, at: datetime):
    return storage.merge_snapshot(
        snapshot=ConversationSnapshot(msgid="tip", sig=7, timestamp=at, transcript="[]", cypher=""),
        edge=SnapshotEdge(timestamp=at, model="gpt-test"),
    )


def test_merge_snapshot_retries_after_constraint_conflict():
    later = datetime(2024, 1, 2, tzinfo=timezone.utc)
    storage, db = _storage(
        RuntimeError("Unable to commit due to unique constraint violation on :Conversation"),
        [_snapshot_row(T0)],
    )

    result = _merge(storage, later)

    assert len(db.fetched) == 2
    assert db.fetched[0] == db.fetched[1]
    assert result.snapshot.timestamp == T0


def test_merge_snapshot_gives_up_after_second_failure():
    storage, _ = _storage(RuntimeError("conflict"), RuntimeError("connection reset"))
    with pytest.raises(StoreError, match="connection reset"):
        _merge(storage, T0)


def test_merge_snapshot_unknown_tip():
    storage, _ = _storage([])
    with pytest.raises(NotFoundError):
        _merge(storage, T0)


def test_attach_topic_rejects_different_topic_on_root():
    storage, db = _storage([{"parents": 0, "topics": [{"title": "A"}]}])

    with pytest.raises(IntegrityError, match="already has a topic"):
        storage.attach_topic(root_id="r", topic=Topic(title="B"), tags=[])

    assert db.executed == []


def test_attach_topic_same_topic_merges_tags():
    storage, db = _storage([{"parents": 0, "topics": [{"title": "A"}]}])

    storage.attach_topic(root_id="r", topic=Topic(title="A"), tags=[Tag(name="x")])

    assert len(db.executed) == 1
    assert "MERGE (t:Topic {title: $topic_title})" in db.executed[0]
    assert "MERGE (g0:Tag {name: $tag0_name})" in db.executed[0]


def test_attach_topic_rejects_non_root():
    storage, db = _storage([{"parents": 1, "topics": []}])
    with pytest.raises(IntegrityError, match="root"):
        storage.attach_topic(root_id="r", topic=Topic(title="A"), tags=[])
    assert db.executed == []


def test_attach_topic_unknown_root():
    storage, _ = _storage([])
    with pytest.raises(NotFoundError):
        storage.attach_topic(root_id="r", topic=Topic(title="A"), tags=[])


def _topic_script(title: str) -> str:
    root = Message(id="r", role="system", content="hi", timestamp=T0)
    return render_replay_script([root], [TopicWithTags(topic=Topic(title=title))])


def test_replay_rejects_script_outside_graph_model_before_executing():
    storage, db = _storage()
    with pytest.raises(ValueError, match="unsupported label"):
        storage.run_replay_script('MERGE (x:Admin {id: "1"}) SET x.role="root"')
    with pytest.raises(ValueError, match="unbound variable"):
        storage.run_replay_script("MERGE (a)-[:DECOHERES]->(b)")
    assert db.fetched == []
    assert db.executed == []


def test_replay_rejects_topic_conflicting_with_stored_one():
    storage, db = _storage([{"parents": 0, "topics": [{"title": "A"}]}])
    with pytest.raises(IntegrityError, match="already has a topic"):
        storage.run_replay_script(_topic_script("B"))
    assert db.executed == []


def test_replay_executes_script_for_new_root():
    storage, db = _storage([])
    script = _topic_script("A")

    storage.run_replay_script(script)

    assert db.executed == [script]
