"""共享测试夹具：stub provider 与对话树种子数据。"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Sequence

import pytest

from chatgraph.errors import ProviderError
from chatgraph.llm.schemas import ChatCompletion
from chatgraph.models import ChatMessage, Message
from chatgraph.storage.memory_storage import InMemoryStorage

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def build_completion(
    answers: Sequence[str],
    *,
    created: int = 1_700_000_000,
    model: str = "gpt-test",
    usage: tuple[int, int, int] = (5, 10, 15),
    finish_reason: str = "stop",
) -> ChatCompletion:
    completion_tokens, prompt_tokens, total_tokens = usage
    return ChatCompletion.model_validate(
        {
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "created": created,
            "model": model,
            "system_fingerprint": "fp_test",
            "choices": [
                {
                    "index": index,
                    "finish_reason": finish_reason,
                    "message": {"role": "assistant", "content": answer},
                }
                for index, answer in enumerate(answers)
            ],
            "usage": {
                "completion_tokens": completion_tokens,
                "prompt_tokens": prompt_tokens,
                "total_tokens": total_tokens,
            },
        }
    )


class StubCompletionProvider:
    """对应 chatgraph.services.completion_client.CompletionClient"""

    default_model = "gpt-test"

    def __init__(
        self,
        completions: Sequence[ChatCompletion] = (),
        *,
        error: Exception | None = None,
    ) -> None:
        self._completions = list(completions)
        self._error = error
        self.calls: list[dict[str, object]] = []

    async def complete_chat(
        self, *, model: str, messages: Sequence[ChatMessage]
    ) -> ChatCompletion:
        self.calls.append({"model": model, "messages": list(messages)})
        await asyncio.sleep(0)
        if self._error is not None:
            raise self._error
        if not self._completions:
            raise ProviderError("no stubbed completion left")
        return self._completions.pop(0)


def seed_chain(
    storage: InMemoryStorage, turns: Sequence[tuple[str, str]], *, prefix: str = "msg"
) -> list[Message]:
    """按顺序写入一条单链对话，返回根在前的消息列表。"""
    messages: list[Message] = []
    parent_id: str | None = None
    for position, (role, content) in enumerate(turns):
        message = Message(
            id=f"{prefix}-{position}",
            role=role,
            content=content,
            timestamp=BASE_TIME + timedelta(minutes=position),
        )
        storage.create_message(message, parent_id=parent_id)
        messages.append(message)
        parent_id = message.id
    return messages


@pytest.fixture()
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture()
def bot_chain(storage: InMemoryStorage) -> list[Message]:
    return seed_chain(storage, [("system", "You are a bot"), ("user", "Hello")])


@pytest.fixture()
def make_completion():
    return build_completion


@pytest.fixture()
def make_provider():
    return StubCompletionProvider


@pytest.fixture()
def make_chain():
    return seed_chain
