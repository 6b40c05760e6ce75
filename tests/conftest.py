"""Shared test fixtures."""

import asyncio
from dataclasses import dataclass, field
from typing import Any
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, create_engine

from slop.services.conversation import ConversationService
from slop.services.llm.base import BaseLLMProvider, LLMResponse, ToolCall, encode_tool_call_chunk
from slop.services.store import ConversationStore
from slop.services.streaming import OutputSink
from slop.services.tools.base import BaseTool, ToolParameter, ToolSpec
from slop.services.tools.registry import RegistryToolExecutor, ToolRegistry

# In-memory SQLite with StaticPool so all connections (including threads) share one DB
test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@pytest.fixture(autouse=True)
def setup_test_db():
    """Create all tables before each test, drop after."""
    import slop.models.conversation  # noqa: F401 - register models
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def store():
    return ConversationStore(test_engine)


@pytest.fixture
def conversations(store):
    return ConversationService(store)


@dataclass
class Step:
    """One scripted provider response: chunks to stream, then the final response."""

    response: LLMResponse
    chunks: list[bytes] = field(default_factory=list)
    hang_after_chunks: bool = False


def text_step(text: str, chunks: list[str] | None = None) -> Step:
    pieces = chunks if chunks is not None else [text]
    return Step(LLMResponse(text=text), [p.encode("utf-8") for p in pieces])


def tool_step(*calls: ToolCall, text: str = "") -> Step:
    chunks = [text.encode("utf-8")] if text else []
    chunks += [encode_tool_call_chunk(c.id, c.name, c.arguments) for c in calls]
    return Step(LLMResponse(text=text, tool_calls=list(calls)), chunks)


class ScriptedProvider(BaseLLMProvider):
    """Replays scripted steps in order, then repeats `default` if one is set."""

    provider_name = "scripted"

    def __init__(self, steps: list[Step | Exception] | None = None, default: Step | None = None, **kwargs):
        super().__init__("scripted-model", **kwargs)
        self.steps = list(steps or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []

    async def _generate(self, context, tools, options, stream, on_chunk):
        self.calls.append({"context": list(context), "tools": dict(tools), "options": options, "stream": stream})
        if self.steps:
            step = self.steps.pop(0)
        elif self.default is not None:
            step = self.default
        else:
            raise AssertionError("ScriptedProvider ran out of steps")

        if isinstance(step, Exception):
            raise step
        if stream and on_chunk:
            for chunk in step.chunks:
                await on_chunk(chunk)
        if step.hang_after_chunks:
            await asyncio.Event().wait()
        return step.response


class RecordingSink(OutputSink):
    def __init__(self):
        self.events: list[tuple] = []

    async def on_text_chunk(self, chunk: bytes) -> None:
        self.events.append(("text", chunk))

    async def on_tool_call_start(self, call_id: str, name: str) -> None:
        self.events.append(("start", call_id, name))

    async def on_tool_call_chunk(self, text: str) -> None:
        self.events.append(("tool", text))

    async def on_turn_done(self) -> None:
        self.events.append(("done",))

    @property
    def text(self) -> str:
        return b"".join(e[1] for e in self.events if e[0] == "text").decode("utf-8")


class EchoTool(BaseTool):
    def __init__(self):
        self.calls: list[dict] = []

    def definition(self) -> ToolSpec:
        return ToolSpec.from_parameters(
            "echo",
            "Echo the given text back",
            [ToolParameter(name="text", type="string", description="Text to echo")],
        )

    async def execute(self, **kwargs: Any) -> str:
        self.calls.append(kwargs)
        return f"echo: {kwargs['text']}"


class FailingTool(BaseTool):
    def definition(self) -> ToolSpec:
        return ToolSpec.from_parameters("explode", "Always fails", [])

    async def execute(self, **kwargs: Any) -> str:
        raise RuntimeError("boom")


@pytest.fixture
def echo_tool():
    return EchoTool()


@pytest.fixture
def tool_executor(echo_tool):
    registry = ToolRegistry()
    registry.register(echo_tool)
    registry.register(FailingTool())
    executor = RegistryToolExecutor(registry)
    asyncio.run(executor.initialize())
    return executor


@pytest.fixture
def provider():
    """Provider used by the app; answers every turn with three streamed tokens."""
    return ScriptedProvider(default=text_step("Hello from agent", ["Hello", " from", " agent"]))


@pytest.fixture
def client(provider, tool_executor):
    """FastAPI TestClient with all external deps patched."""
    with (
        patch("slop.core.database.engine", test_engine),
        patch("slop.services.agent.get_llm_provider", return_value=provider),
        patch("slop.main.get_tool_executor", return_value=tool_executor),
    ):
        from slop.main import app

        with TestClient(app) as c:
            yield c
