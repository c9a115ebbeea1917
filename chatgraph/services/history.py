"""历史解析：沿 DECOHERES 入边回溯到根，得到根在前、tip 在后的唯一路径。"""

from __future__ import annotations

from chatgraph.errors import IntegrityError
from chatgraph.models import AncestorPath, Message
from chatgraph.storage.ports import ConversationStoragePort


class HistoryResolver:
    def __init__(self, storage: ConversationStoragePort) -> None:
        self._storage = storage

    def resolve_path(self, tip_id: str) -> AncestorPath:
        """返回完整祖先路径（含根话题与 tip 入边），路径必须以 tip 结尾且无环。"""
        path = self._storage.fetch_ancestor_path(tip_id)
        if not path.messages:
            raise IntegrityError(f"empty history resolved for {tip_id}")
        if path.tip.id != tip_id:
            raise IntegrityError(
                f"history for {tip_id} ends at {path.tip.id}, expected the tip itself"
            )
        ids = [message.id for message in path.messages]
        if len(set(ids)) != len(ids):
            raise IntegrityError(f"cycle detected in history of {tip_id}")
        return path

    def resolve(self, tip_id: str) -> list[Message]:
        return list(self.resolve_path(tip_id).messages)
