"""OpenAI chat-completions provider."""

from typing import Any

import openai
from openai import AsyncOpenAI

from slop.core.config import settings
from slop.core.errors import ProviderAuthError, ProviderError, ProviderQuotaError, ProviderTransportError
from slop.models.conversation import Message, Role
from slop.services.llm.base import (
    BaseLLMProvider,
    ChunkCallback,
    GenerationOptions,
    LLMResponse,
    ToolCall,
    encode_tool_call_chunk,
)
from slop.services.tools.base import ToolSpec


def to_openai_messages(context: list[Message]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for msg in context:
        if msg.role == Role.HUMAN:
            messages.append({"role": "user", "content": msg.content})
            continue

        entry: dict[str, Any] = {"role": "assistant", "content": msg.content or None}
        if msg.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call["id"],
                    "type": "function",
                    "function": {"name": call["name"], "arguments": call.get("arguments") or "{}"},
                }
                for call in msg.tool_calls
            ]
        messages.append(entry)

        for result in msg.tool_results or []:
            messages.append({
                "role": "tool",
                "tool_call_id": result["tool_call_id"],
                "content": result["content"],
            })
    return messages


def to_openai_tools(tools: dict[str, ToolSpec]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": name, "description": spec.description, "parameters": spec.parameters},
        }
        for name, spec in tools.items()
    ]


def _translate_error(e: openai.OpenAIError) -> ProviderError:
    if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ProviderAuthError(f"OpenAI rejected credentials: {e}", e)
    if isinstance(e, openai.RateLimitError):
        return ProviderQuotaError(f"OpenAI rate limit: {e}", e)
    if isinstance(e, (openai.APIConnectionError, openai.InternalServerError)):
        return ProviderTransportError(f"OpenAI transport failure: {e}", e)
    return ProviderError(f"OpenAI request failed: {e}", e)


class OpenAIProvider(BaseLLMProvider):
    provider_name = "openai"

    def __init__(self, model: str = "gpt-4o", api_key: str | None = None, **kwargs):
        super().__init__(model, **kwargs)
        self._api_key = api_key or settings.openai_api_key or None
        self._client: AsyncOpenAI | None = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def _generate(
        self,
        context: list[Message],
        tools: dict[str, ToolSpec],
        options: GenerationOptions,
        stream: bool,
        on_chunk: ChunkCallback | None,
    ) -> LLMResponse:
        params: dict[str, Any] = {"model": self.model, "messages": to_openai_messages(context)}
        if options.temperature is not None:
            params["temperature"] = options.temperature
        if options.max_tokens:
            params["max_tokens"] = options.max_tokens
        if tools:
            params["tools"] = to_openai_tools(tools)

        try:
            if stream:
                return await self._stream(params, on_chunk)

            response = await self.client.chat.completions.create(**params)
            if not response.choices:
                raise ProviderError("OpenAI returned no choices")
            message = response.choices[0].message
            return LLMResponse(
                text=message.content or "",
                tool_calls=[
                    ToolCall(id=tc.id, name=tc.function.name, arguments=tc.function.arguments or "")
                    for tc in message.tool_calls or []
                ],
            )
        except openai.OpenAIError as e:
            raise _translate_error(e) from e

    async def _stream(self, params: dict[str, Any], on_chunk: ChunkCallback | None) -> LLMResponse:
        text = ""
        # index -> {id, name, arguments}
        calls: dict[int, dict[str, str]] = {}
        received = False

        stream = await self.client.chat.completions.create(**params, stream=True)
        async for chunk in stream:
            if not chunk.choices:
                continue
            received = True
            delta = chunk.choices[0].delta

            if delta.content:
                text += delta.content
                if on_chunk:
                    await on_chunk(delta.content.encode("utf-8"))

            for tc in delta.tool_calls or []:
                call = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                if tc.id:
                    call["id"] = tc.id
                fragment = ""
                if tc.function:
                    if tc.function.name:
                        call["name"] = tc.function.name
                    fragment = tc.function.arguments or ""
                    call["arguments"] += fragment
                if on_chunk:
                    await on_chunk(encode_tool_call_chunk(tc.id, call["name"], fragment))

        if not received:
            raise ProviderError("OpenAI returned an empty stream")

        return LLMResponse(
            text=text,
            tool_calls=[ToolCall(**calls[index]) for index in sorted(calls)],
        )
