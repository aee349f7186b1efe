"""Append-only conversation logs, grouped by conversation id."""

from __future__ import annotations

from src.models import ConversationLog, NormalizedRecord


class ConversationNotFoundError(Exception):
    """Raised when a conversation id has no log."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ConversationStore:
    """Process-memory conversation logs. Only the webhook handler appends."""

    def __init__(self) -> None:
        self._logs: dict[str, ConversationLog] = {}

    def append(self, record: NormalizedRecord) -> ConversationLog:
        """Append a record, creating the log on first use."""
        log = self._logs.get(record.conversation_id)
        if log is None:
            log = ConversationLog(conversation_id=record.conversation_id)
            self._logs[record.conversation_id] = log
        log.messages.append(record)
        return log

    def get(self, conversation_id: str) -> ConversationLog:
        log = self._logs.get(conversation_id)
        if log is None:
            raise ConversationNotFoundError(conversation_id)
        return log

    def __len__(self) -> int:
        return len(self._logs)
