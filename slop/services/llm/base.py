"""Abstract LLM provider interface. All providers must implement this."""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from slop.core.errors import ProviderQuotaError, ProviderTransportError
from slop.models.conversation import Message
from slop.services.tools.base import ToolSpec

logger = logging.getLogger(__name__)

# Receives each streamed chunk: UTF-8 text, or a JSON-encoded tool-call fragment.
ChunkCallback = Callable[[bytes], Awaitable[None]]


@dataclass
class GenerationOptions:
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str  # raw JSON text as produced by the model

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the argument JSON. Raises ValueError when it is not an object."""
        if not self.arguments.strip():
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            raise ValueError(f"arguments must be a JSON object, got {type(value).__name__}")
        return value

    def to_record(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "ToolCall":
        return cls(id=record.get("id") or "", name=record["name"], arguments=record.get("arguments") or "")


@dataclass
class LLMResponse:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


def encode_tool_call_chunk(call_id: str | None, name: str, arguments: str) -> bytes:
    """Encode a tool-call fragment in the generic streaming shape."""
    return json.dumps([{"id": call_id, "function": {"name": name, "arguments": arguments}}]).encode("utf-8")


def loads_arguments(arguments: str) -> dict[str, Any]:
    """Best-effort decode of stored argument JSON for replaying history to a provider."""
    try:
        value = json.loads(arguments) if arguments else {}
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


class BaseLLMProvider(ABC):
    """One backend. `generate` adds bounded retries around `_generate`.

    Transient failures (transport, quota) are retried with exponential
    backoff, but only until the first chunk reaches the caller; after that a
    retry would replay output the caller has already seen.
    """

    provider_name: str = ""

    def __init__(self, model: str, *, max_retries: int = 0, retry_backoff: float = 1.0):
        self.model = model
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    async def generate(
        self,
        context: list[Message],
        tools: dict[str, ToolSpec] | None = None,
        options: GenerationOptions | None = None,
        stream: bool = False,
        on_chunk: ChunkCallback | None = None,
    ) -> LLMResponse:
        options = options or GenerationOptions()
        tools = tools or {}
        delivered = False

        async def tracking_callback(chunk: bytes) -> None:
            nonlocal delivered
            delivered = True
            if on_chunk is not None:
                await on_chunk(chunk)

        attempt = 0
        while True:
            try:
                return await self._generate(
                    context, tools, options, stream, tracking_callback if stream else None
                )
            except (ProviderTransportError, ProviderQuotaError) as e:
                if delivered or attempt >= self.max_retries:
                    raise
                delay = self.retry_backoff * (2**attempt)
                attempt += 1
                logger.warning(
                    f"{self.provider_name} call failed ({e}); retry {attempt}/{self.max_retries} in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    @abstractmethod
    async def _generate(
        self,
        context: list[Message],
        tools: dict[str, ToolSpec],
        options: GenerationOptions,
        stream: bool,
        on_chunk: ChunkCallback | None,
    ) -> LLMResponse:
        """Run one request against the backend, translating its errors to ProviderError."""
        ...
