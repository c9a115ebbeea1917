"""OpenAI 兼容的 chat completion 接口封装，配置显式注入."""
from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx
from pydantic import BaseModel, Field, ValidationError

from chatgraph import config
from chatgraph.errors import ProviderError
from chatgraph.llm.schemas import ChatCompletion, ChatCompletionRequest
from chatgraph.models import ChatMessage

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"


class ProviderSettings(BaseModel):
    """Provider 连接配置：endpoint、凭证与超时，一次构建后传给客户端。"""

    api_key: str | None = None
    base_url: str = Field("https://api.openai.com/v1", min_length=1)
    default_model: str = Field("gpt-3.5-turbo", min_length=1)
    connect_timeout_seconds: float = Field(10.0, gt=0)
    write_timeout_seconds: float = Field(60.0, gt=0)
    read_timeout_seconds: float = Field(300.0, gt=0)

    @classmethod
    def from_env(cls) -> "ProviderSettings":
        return cls(
            api_key=config.OPENAI_API_KEY,
            base_url=config.OPENAI_BASE_URL,
            default_model=config.CHAT_DEFAULT_MODEL,
            connect_timeout_seconds=config.CHAT_CONNECT_TIMEOUT_SECONDS,
            write_timeout_seconds=config.CHAT_WRITE_TIMEOUT_SECONDS,
            read_timeout_seconds=config.CHAT_READ_TIMEOUT_SECONDS,
        )

    def timeout(self) -> httpx.Timeout:
        return httpx.Timeout(
            self.connect_timeout_seconds,
            read=self.read_timeout_seconds,
            write=self.write_timeout_seconds,
        )


class CompletionClient:
    """轻量封装 chat completion API，每次调用为一次阻塞请求（带超时）。"""

    def __init__(
        self,
        settings: ProviderSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    @property
    def default_model(self) -> str:
        return self.settings.default_model

    @property
    def endpoint(self) -> str:
        return self.settings.base_url.rstrip("/") + CHAT_COMPLETIONS_PATH

    def _ensure_key(self) -> str:
        if not self.settings.api_key:
            raise ProviderError("OPENAI_API_KEY is required for chat completion calls")
        return self.settings.api_key

    @staticmethod
    def _build_payload(model: str, messages: Sequence[ChatMessage]) -> dict[str, Any]:
        request = ChatCompletionRequest(model=model, messages=list(messages))
        return request.model_dump(mode="json", exclude_none=True)

    async def complete_chat(
        self,
        *,
        model: str,
        messages: Sequence[ChatMessage],
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ChatCompletion:
        """调用 chat/completions 并返回已校验的响应，任何失败都转为 ProviderError."""
        api_key = self._ensure_key()
        try:
            payload = self._build_payload(model, messages)
        except ValidationError as exc:
            raise ProviderError(f"invalid chat completion request: {exc}") from exc
        logger.debug("Calling [%s] with: %s", self.endpoint, payload)

        try:
            async with httpx.AsyncClient(
                base_url=self.settings.base_url,
                timeout=self.settings.timeout(),
                transport=transport or self._transport,
            ) as client:
                response = await client.post(
                    CHAT_COMPLETIONS_PATH,
                    headers={"Authorization": f"Bearer {api_key}"},
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.error(
                "HTTP error from [%s] - %s: %s",
                self.endpoint,
                status_code,
                exc.response.text,
            )
            raise ProviderError(
                f"chat completion failed with status {status_code}",
                status_code=status_code,
            ) from exc
        except httpx.TimeoutException as exc:
            raise ProviderError(f"chat completion timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"chat completion request failed: {exc}") from exc
        except ValueError as exc:
            raise ProviderError(f"chat completion returned invalid JSON: {exc}") from exc

        try:
            return ChatCompletion.model_validate(data)
        except ValidationError as exc:
            raise ProviderError(f"malformed chat completion response: {exc}") from exc
