from __future__ import annotations

from typing import Iterable, Protocol, Sequence

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
)


class ConversationStoragePort(Protocol):
    def get_message(self, message_id: str) -> Message | None: ...

    def create_message(
        self,
        message: Message,
        *,
        parent_id: str | None = None,
        edge: BranchEdge | None = None,
    ) -> Message: ...

    def attach_topic(self, *, root_id: str, topic: Topic, tags: Iterable[Tag]) -> None: ...

    def fetch_ancestor_path(self, tip_id: str) -> AncestorPath: ...

    def list_children(self, parent_id: str) -> list[Branch]: ...

    def create_branches(self, *, parent_id: str, branches: Sequence[Branch]) -> None: ...

    def merge_snapshot(
        self, *, snapshot: ConversationSnapshot, edge: SnapshotEdge
    ) -> SnapshotResult: ...

    def list_snapshots(self, *, tip_id: str, limit: int) -> list[SnapshotResult]: ...

    def run_replay_script(self, script: str) -> None: ...
