from __future__ import annotations


class ChatGraphError(RuntimeError):
    """Base error for conversation graph failures."""


class ProviderError(ChatGraphError):
    """Completion provider unreachable, timed out, or returned an unusable response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class IntegrityError(ChatGraphError):
    """The message tree violates its invariants (cycle, empty history, second parent)."""


class NotFoundError(ChatGraphError):
    """Referenced message does not exist in the store."""

    def __init__(self, message_id: str):
        super().__init__(f"message not found: {message_id}")
        self.message_id = message_id


class StoreError(ChatGraphError):
    """Graph store failed to execute or commit a statement."""
