"""分支生成：以 tip 的完整历史请求 chat completion，每个 choice 成为 tip 的一个子分支。"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Protocol, Sequence

from chatgraph.errors import IntegrityError, ProviderError
from chatgraph.ids import new_message_id
from chatgraph.llm.schemas import ChatCompletion, CompletionChoice
from chatgraph.models import Branch, BranchEdge, ChatMessage, Message, utc_now
from chatgraph.services.history import HistoryResolver
from chatgraph.storage.ports import ConversationStoragePort

logger = logging.getLogger(__name__)


class CompletionProvider(Protocol):
    default_model: str

    async def complete_chat(
        self, *, model: str, messages: Sequence[ChatMessage]
    ) -> ChatCompletion: ...


class BranchGenerator:
    def __init__(
        self,
        storage: ConversationStoragePort,
        provider: CompletionProvider,
        *,
        id_factory: Callable[[], str] = new_message_id,
    ) -> None:
        self._storage = storage
        self._provider = provider
        self._history = HistoryResolver(storage)
        self._id_factory = id_factory

    @staticmethod
    def _edge_for(completion: ChatCompletion, choice: CompletionChoice) -> BranchEdge:
        return BranchEdge(
            created=datetime.fromtimestamp(completion.created, tz=timezone.utc),
            model=completion.model,
            system_fingerprint=completion.system_fingerprint,
            usage_completion=completion.usage.completion_tokens,
            usage_prompt=completion.usage.prompt_tokens,
            usage_total=completion.usage.total_tokens,
            finish_reason=choice.finish_reason,
            choice_index=choice.index,
        )

    def _branch_for(self, completion: ChatCompletion, choice: CompletionChoice) -> Branch:
        answer = choice.message
        message = Message(
            id=self._id_factory(),
            role=answer.role,
            content=answer.content,
            tool_calls=answer.tool_calls,
            tool_call_id=answer.tool_call_id,
            timestamp=utc_now(),
        )
        return Branch(message=message, edge=self._edge_for(completion, choice))

    async def generate(self, tip_id: str, model: str | None = None) -> list[Branch]:
        """请求模型并把所有 choice 作为 tip 的新分支一次性写入，失败时返回空列表。"""
        model_name = model if model is not None else self._provider.default_model
        if not model_name.strip():
            raise ValueError("model must not be blank")

        try:
            history = self._history.resolve(tip_id)
        except IntegrityError:
            logger.exception("Cannot resolve history for quest %s", tip_id)
            return []
        logger.info(
            "Asking [%s] for quest %s: %s", model_name, tip_id, history[-1].content
        )

        try:
            completion = await self._provider.complete_chat(
                model=model_name,
                messages=[message.to_chat() for message in history],
            )
        except ProviderError as exc:
            logger.error("Error calling chat completion for quest %s: %s", tip_id, exc)
            return []

        # 逐个处理 choice，单个失败只记录日志，不影响之前已生成的分支
        branches: list[Branch] = []
        for choice in completion.choices:
            try:
                branch = self._branch_for(completion, choice)
            except ValueError:
                logger.exception("Skipping malformed choice #%s for quest %s", choice.index, tip_id)
                continue
            logger.info("Got answer #%s: %s", choice.index, branch.message.content)
            branches.append(branch)

        if not branches:
            return []
        self._storage.create_branches(parent_id=tip_id, branches=branches)
        return branches
