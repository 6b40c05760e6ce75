"""SQLModel-backed persistence for threads and messages.

Every public method opens its own session and commits before returning, so
each call is atomic on its own. Returned objects are detached from the
session with their column attributes loaded.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.engine import Engine
from sqlmodel import Session, col, func, select

from slop.core import database
from slop.core.errors import AmbiguousIDError, CorruptHistoryError, InvalidMessageError, NotFoundError
from slop.models.conversation import Message, Role, Thread

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back out
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ConversationStore:
    def __init__(self, engine: Engine | None = None):
        self._engine = engine if engine is not None else database.engine

    def _session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    # Threads

    def create_thread(self) -> Thread:
        with self._session() as session:
            thread = Thread()
            session.add(thread)
            session.commit()
            session.refresh(thread)
            logger.debug(f"Created thread {thread.id}")
            return thread

    def get_thread(self, thread_id: str) -> Thread:
        with self._session() as session:
            thread = session.get(Thread, thread_id)
            if not thread:
                raise NotFoundError(f"Thread {thread_id} not found")
            return thread

    def get_thread_by_prefix(self, prefix: str) -> Thread:
        if not prefix:
            raise NotFoundError("Empty thread ID")
        with self._session() as session:
            matches = session.exec(
                select(Thread).where(col(Thread.id).startswith(prefix, autoescape=True)).limit(2)
            ).all()
        if not matches:
            raise NotFoundError(f"No thread matches '{prefix}'")
        if len(matches) > 1:
            raise AmbiguousIDError(prefix, len(matches))
        return matches[0]

    def get_most_recent_thread(self) -> Thread:
        with self._session() as session:
            thread = session.exec(
                select(Thread).order_by(col(Thread.created_at).desc()).limit(1)
            ).first()
        if not thread:
            raise NotFoundError("No threads exist yet")
        return thread

    def list_threads(self, limit: int = 0) -> list[Thread]:
        """Threads, newest first. A limit of 0 returns all of them."""
        query = select(Thread).order_by(col(Thread.created_at).desc())
        if limit > 0:
            query = query.limit(limit)
        with self._session() as session:
            return list(session.exec(query).all())

    def set_summary(self, thread_id: str, summary: str) -> Thread:
        with self._session() as session:
            thread = session.get(Thread, thread_id)
            if not thread:
                raise NotFoundError(f"Thread {thread_id} not found")
            thread.summary = summary
            session.add(thread)
            session.commit()
            session.refresh(thread)
            return thread

    def delete_thread(self, thread_id: str) -> None:
        with self._session() as session:
            thread = session.get(Thread, thread_id)
            if not thread:
                raise NotFoundError(f"Thread {thread_id} not found")

            # Delete messages first
            messages = session.exec(select(Message).where(Message.thread_id == thread_id)).all()
            for msg in messages:
                session.delete(msg)

            session.delete(thread)
            session.commit()
            logger.debug(f"Deleted thread {thread_id} and {len(messages)} messages")

    # Messages

    def append_message(self, thread_id: str, message: Message) -> Message:
        """Persist `message` in the thread. `message.parent_id` must already be set."""
        with self._session() as session:
            if not session.get(Thread, thread_id):
                raise NotFoundError(f"Thread {thread_id} not found")
            if message.role == Role.HUMAN and message.tool_calls:
                raise InvalidMessageError("Human messages cannot carry tool calls")
            if message.parent_id is not None:
                parent = session.get(Message, message.parent_id)
                if not parent or parent.thread_id != thread_id:
                    raise InvalidMessageError(
                        f"Parent {message.parent_id} does not belong to thread {thread_id}"
                    )

            message.thread_id = thread_id
            latest = session.exec(
                select(Message)
                .where(Message.thread_id == thread_id)
                .order_by(col(Message.created_at).desc())
                .limit(1)
            ).first()
            if latest and _aware(message.created_at) <= _aware(latest.created_at):
                message.created_at = _aware(latest.created_at) + timedelta(microseconds=1)

            session.add(message)
            session.commit()
            session.refresh(message)
            return message

    def get_message(self, thread_id: str, message_id: str) -> Message:
        with self._session() as session:
            message = session.get(Message, message_id)
        if not message or message.thread_id != thread_id:
            raise NotFoundError(f"Message {message_id} not found in thread {thread_id}")
        return message

    def get_message_by_prefix(self, thread_id: str, prefix: str) -> Message:
        if not prefix:
            raise NotFoundError("Empty message ID")
        with self._session() as session:
            matches = session.exec(
                select(Message)
                .where(Message.thread_id == thread_id)
                .where(col(Message.id).startswith(prefix, autoescape=True))
                .limit(2)
            ).all()
        if not matches:
            raise NotFoundError(f"No message in thread {thread_id} matches '{prefix}'")
        if len(matches) > 1:
            raise AmbiguousIDError(prefix, len(matches))
        return matches[0]

    def get_latest_message(self, thread_id: str) -> Message | None:
        with self._session() as session:
            return session.exec(
                select(Message)
                .where(Message.thread_id == thread_id)
                .order_by(col(Message.created_at).desc())
                .limit(1)
            ).first()

    def count_messages(self, thread_id: str) -> int:
        with self._session() as session:
            return session.exec(
                select(func.count()).select_from(Message).where(Message.thread_id == thread_id)
            ).one()

    def get_messages(
        self,
        thread_id: str,
        until_message_id: str | None = None,
        include_descendants: bool = False,
    ) -> list[Message]:
        """Messages of a thread.

        Without `until_message_id`, every message in creation order. With it,
        the ancestor chain from the branch root down to that message, plus
        (when `include_descendants` is set) everything below it in creation
        order.
        """
        with self._session() as session:
            if not session.get(Thread, thread_id):
                raise NotFoundError(f"Thread {thread_id} not found")
            messages = list(
                session.exec(
                    select(Message)
                    .where(Message.thread_id == thread_id)
                    .order_by(col(Message.created_at))
                ).all()
            )

        if until_message_id is None:
            return messages

        by_id = {m.id: m for m in messages}
        if until_message_id not in by_id:
            raise NotFoundError(f"Message {until_message_id} not found in thread {thread_id}")

        chain: list[Message] = []
        current: Message | None = by_id[until_message_id]
        while current is not None:
            if len(chain) >= len(messages):
                raise CorruptHistoryError(f"Parent chain of {until_message_id} does not terminate")
            chain.append(current)
            current = by_id.get(current.parent_id) if current.parent_id else None
        chain.reverse()

        if include_descendants:
            below: set[str] = set()
            frontier = {until_message_id}
            while frontier:
                children = {m.id for m in messages if m.parent_id in frontier and m.id not in below}
                below |= children
                frontier = children
            chain.extend(m for m in messages if m.id in below)

        return chain

    def attach_tool_results(self, message_id: str, results: list[dict[str, Any]]) -> Message:
        with self._session() as session:
            message = session.get(Message, message_id)
            if not message:
                raise NotFoundError(f"Message {message_id} not found")
            if message.role != Role.ASSISTANT or not message.tool_calls:
                raise InvalidMessageError("Tool results can only be attached to a tool-calling assistant message")
            if message.tool_results is not None:
                raise InvalidMessageError(f"Message {message_id} already has tool results")
            message.tool_results = results
            session.add(message)
            session.commit()
            session.refresh(message)
            return message

    def delete_message(self, message_id: str) -> None:
        with self._session() as session:
            message = session.get(Message, message_id)
            if not message:
                raise NotFoundError(f"Message {message_id} not found")
            session.delete(message)
            session.commit()

    def delete_last_n(self, thread_id: str, count: int) -> int:
        """Delete the `count` most recent messages. Returns how many were removed."""
        with self._session() as session:
            if not session.get(Thread, thread_id):
                raise NotFoundError(f"Thread {thread_id} not found")
            if count <= 0:
                return 0
            messages = session.exec(
                select(Message)
                .where(Message.thread_id == thread_id)
                .order_by(col(Message.created_at).desc())
                .limit(count)
            ).all()
            for msg in messages:
                session.delete(msg)
            session.commit()
            logger.debug(f"Deleted last {len(messages)} messages from thread {thread_id}")
            return len(messages)
