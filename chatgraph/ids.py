"""消息 ID 生成：随机 UUID v4，作为幂等 MERGE 的自然键。"""

from __future__ import annotations

import re
from uuid import uuid4

_MESSAGE_ID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


def new_message_id() -> str:
    return str(uuid4())


def is_message_id(value: str) -> bool:
    return bool(_MESSAGE_ID_PATTERN.match(value))
