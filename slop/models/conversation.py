"""Thread and message models for the conversation tree."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, Relationship, SQLModel


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    HUMAN = "human"
    ASSISTANT = "assistant"


class Thread(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    created_at: datetime = Field(default_factory=_now, index=True)
    summary: Optional[str] = None

    messages: list["Message"] = Relationship(
        back_populates="thread",
        sa_relationship_kwargs={"cascade": "all, delete-orphan"},
    )


class Message(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    thread_id: str = Field(foreign_key="thread.id", index=True)
    parent_id: Optional[str] = Field(default=None, foreign_key="message.id")
    role: Role
    content: str = ""
    # [{"id", "name", "arguments"}] with arguments kept as the raw JSON string
    tool_calls: Optional[list[dict[str, Any]]] = Field(default=None, sa_column=Column(JSON))
    # [{"tool_call_id", "name", "content", "is_error"}], attached after execution
    tool_results: Optional[list[dict[str, Any]]] = Field(default=None, sa_column=Column(JSON))
    model_name: Optional[str] = None
    provider: Optional[str] = None
    created_at: datetime = Field(default_factory=_now, index=True)

    thread: Optional[Thread] = Relationship(back_populates="messages")

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)
