"""基础配置与环境变量加载器，支持 .env 文件与系统环境并存."""
from __future__ import annotations

import os
from pathlib import Path

_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


def _parse_env_line(raw: str) -> tuple[str, str] | None:
    """解析一行 KEY=VALUE，支持 export 前缀与成对引号."""
    line = raw.strip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    if line.startswith("export "):
        line = line[len("export "):]
    key, _, value = line.partition("=")
    key = key.strip()
    if not key:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return key, value


def _load_env_file(path: Path = _ENV_PATH) -> None:
    """把 .env 中的变量写入 os.environ，进程环境中已有的值优先."""
    if not path.is_file():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        parsed = _parse_env_line(raw)
        if parsed is not None:
            os.environ.setdefault(*parsed)


_load_env_file()


def _get_positive_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL: str = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
CHAT_DEFAULT_MODEL: str = os.getenv("CHAT_DEFAULT_MODEL", "gpt-3.5-turbo")
CHAT_CONNECT_TIMEOUT_SECONDS: float = _get_positive_float(
    "CHAT_CONNECT_TIMEOUT_SECONDS", 10.0
)
CHAT_WRITE_TIMEOUT_SECONDS: float = _get_positive_float("CHAT_WRITE_TIMEOUT_SECONDS", 60.0)
CHAT_READ_TIMEOUT_SECONDS: float = _get_positive_float("CHAT_READ_TIMEOUT_SECONDS", 300.0)

_ALLOWED_STORAGE_BACKENDS = {"memgraph", "memory"}


def _require_env(name: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        raise RuntimeError(f"{name} 未配置：必须显式设置。")
    return raw.strip()


def require_memgraph_host() -> str:
    return _require_env("MEMGRAPH_HOST")


def require_memgraph_port() -> int:
    raw = _require_env("MEMGRAPH_PORT")
    try:
        port = int(raw)
    except ValueError as exc:
        raise ValueError("MEMGRAPH_PORT must be an integer") from exc
    if port <= 0:
        raise ValueError("MEMGRAPH_PORT must be > 0")
    return port


def storage_backend() -> str:
    raw = os.getenv("CHATGRAPH_STORAGE", "memgraph").strip().lower()
    if raw not in _ALLOWED_STORAGE_BACKENDS:
        raise RuntimeError(
            f"CHATGRAPH_STORAGE={raw!r} 非法：必须为 memgraph/memory。"
        )
    return raw
