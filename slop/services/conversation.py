"""Conversation tree operations: threads, branching appends and context resolution."""

import logging
from dataclasses import dataclass
from datetime import datetime

from slop.models.conversation import Message, Role, Thread
from slop.services.store import ConversationStore

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50


class _Root:
    def __repr__(self) -> str:
        return "ROOT"


# Pass as parent_id to start a new branch instead of continuing the latest message.
ROOT = _Root()


@dataclass
class ThreadDetails:
    id: str
    created_at: datetime
    message_count: int
    preview: str


class ConversationService:
    def __init__(self, store: ConversationStore | None = None):
        self.store = store or ConversationStore()

    def create_thread(self) -> Thread:
        return self.store.create_thread()

    def get_thread(self, thread_id: str) -> Thread:
        return self.store.get_thread(thread_id)

    def find_thread(self, prefix: str) -> Thread:
        """Find the unique thread whose ID starts with `prefix`."""
        return self.store.get_thread_by_prefix(prefix)

    def find_message(self, thread_id: str, prefix: str) -> Message:
        self.store.get_thread(thread_id)
        return self.store.get_message_by_prefix(thread_id, prefix)

    def get_active_thread(self) -> Thread:
        return self.store.get_most_recent_thread()

    def list_threads(self, limit: int = 0) -> list[Thread]:
        return self.store.list_threads(limit)

    def resolve_context(self, thread_id: str, reference_message_id: str | None = None) -> list[Message]:
        """Return the linear ancestor chain ending at the reference message, oldest first.

        Without a reference the most recently created message in the thread is
        used, so an empty thread resolves to an empty context.
        """
        if reference_message_id is None:
            self.store.get_thread(thread_id)
            latest = self.store.get_latest_message(thread_id)
            if latest is None:
                return []
            reference_message_id = latest.id
        return self.store.get_messages(thread_id, reference_message_id, include_descendants=False)

    def append_message(self, thread_id: str, message: Message, parent_id: str | _Root | None = None) -> Message:
        """Append `message` to the thread.

        With no `parent_id` the message continues from the thread's latest
        message; an explicit ID branches from that message, and `ROOT`
        starts a new branch root.
        """
        if parent_id is ROOT:
            message.parent_id = None
        elif parent_id is None:
            latest = self.store.get_latest_message(thread_id)
            message.parent_id = latest.id if latest else None
        else:
            message.parent_id = parent_id
        return self.store.append_message(thread_id, message)

    def get_thread_messages(self, thread_id: str, message_id: str | None = None) -> list[Message]:
        """All messages, or a message's ancestors and descendants."""
        return self.store.get_messages(thread_id, message_id, include_descendants=True)

    def thread_details(self, thread: Thread) -> ThreadDetails:
        messages = self.store.get_messages(thread.id)

        preview = thread.summary or ""
        if not preview:
            for msg in messages:
                if msg.role == Role.HUMAN:
                    preview = msg.content
                    break
        if len(preview) > PREVIEW_LENGTH:
            preview = preview[: PREVIEW_LENGTH - 3] + "..."

        return ThreadDetails(
            id=thread.id,
            created_at=thread.created_at,
            message_count=len(messages),
            preview=preview,
        )

    def set_summary(self, thread_id: str, summary: str) -> Thread:
        return self.store.set_summary(thread_id, summary)

    def delete_thread(self, thread_id: str) -> None:
        self.store.delete_thread(thread_id)

    def delete_last_messages(self, thread_id: str, count: int) -> int:
        return self.store.delete_last_n(thread_id, count)
