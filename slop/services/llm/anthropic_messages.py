"""Anthropic Messages API provider, spoken directly over httpx."""

import json
import logging
from typing import Any

import httpx

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
    loads_arguments,
)
from slop.services.tools.base import ToolSpec

logger = logging.getLogger(__name__)

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 1024
REQUEST_TIMEOUT = 120.0


def to_anthropic_messages(context: list[Message]) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    for msg in context:
        if msg.role == Role.HUMAN:
            messages.append({"role": "user", "content": msg.content})
            continue

        blocks: list[dict[str, Any]] = []
        if msg.content:
            blocks.append({"type": "text", "text": msg.content})
        for call in msg.tool_calls or []:
            blocks.append({
                "type": "tool_use",
                "id": call["id"],
                "name": call["name"],
                "input": loads_arguments(call.get("arguments", "")),
            })
        if blocks:
            messages.append({"role": "assistant", "content": blocks})

        if msg.tool_results:
            messages.append({
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": result["tool_call_id"],
                        "content": result["content"],
                        "is_error": bool(result.get("is_error")),
                    }
                    for result in msg.tool_results
                ],
            })
    return messages


def _status_error(status: int, body: str) -> ProviderError:
    if status in (401, 403):
        return ProviderAuthError(f"Anthropic rejected credentials ({status}): {body[:200]}")
    if status in (429, 529):
        return ProviderQuotaError(f"Anthropic rate limited or overloaded ({status}): {body[:200]}")
    if status >= 500:
        return ProviderTransportError(f"Anthropic server error ({status}): {body[:200]}")
    return ProviderError(f"Anthropic request failed ({status}): {body[:200]}")


class AnthropicProvider(BaseLLMProvider):
    provider_name = "anthropic"

    def __init__(
        self,
        model: str = "claude-3-5-haiku-latest",
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ):
        super().__init__(model, **kwargs)
        self._api_key = api_key or settings.anthropic_api_key
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    def _body(
        self, context: list[Message], tools: dict[str, ToolSpec], options: GenerationOptions, stream: bool
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
            "messages": to_anthropic_messages(context),
        }
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if tools:
            body["tools"] = [
                {"name": name, "description": spec.description, "input_schema": spec.parameters}
                for name, spec in tools.items()
            ]
        if stream:
            body["stream"] = True
        return body

    async def _generate(
        self,
        context: list[Message],
        tools: dict[str, ToolSpec],
        options: GenerationOptions,
        stream: bool,
        on_chunk: ChunkCallback | None,
    ) -> LLMResponse:
        body = self._body(context, tools, options, stream)
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=REQUEST_TIMEOUT) as client:
                if stream:
                    return await self._stream(client, body, on_chunk)

                resp = await client.post(API_URL, headers=self._headers(), json=body)
                if resp.status_code >= 400:
                    raise _status_error(resp.status_code, resp.text)
                return _parse_message(resp.json())
        except httpx.TransportError as e:
            raise ProviderTransportError(f"Anthropic transport failure: {e}", e) from e

    async def _stream(
        self, client: httpx.AsyncClient, body: dict[str, Any], on_chunk: ChunkCallback | None
    ) -> LLMResponse:
        # content block index -> accumulated block
        blocks: dict[int, dict[str, Any]] = {}
        finished = False

        async with client.stream("POST", API_URL, headers=self._headers(), json=body) as resp:
            if resp.status_code >= 400:
                raw = await resp.aread()
                raise _status_error(resp.status_code, raw.decode("utf-8", errors="replace"))

            async for line in resp.aiter_lines():
                if not line.startswith("data:"):
                    continue
                try:
                    event = json.loads(line[len("data:"):].strip())
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed SSE data: {line[:100]}")
                    continue

                kind = event.get("type")
                if kind == "content_block_start":
                    block = event["content_block"]
                    if block.get("type") == "tool_use":
                        blocks[event["index"]] = {"type": "tool_use", "id": block["id"], "name": block["name"], "json": ""}
                        if on_chunk:
                            await on_chunk(encode_tool_call_chunk(block["id"], block["name"], ""))
                    else:
                        blocks[event["index"]] = {"type": "text", "text": block.get("text", "")}
                elif kind == "content_block_delta":
                    block = blocks.setdefault(event["index"], {"type": "text", "text": ""})
                    delta = event["delta"]
                    if delta.get("type") == "text_delta":
                        block["text"] += delta["text"]
                        if on_chunk:
                            await on_chunk(delta["text"].encode("utf-8"))
                    elif delta.get("type") == "input_json_delta":
                        block["json"] += delta["partial_json"]
                        if on_chunk:
                            await on_chunk(encode_tool_call_chunk(None, block["name"], delta["partial_json"]))
                elif kind == "message_stop":
                    finished = True
                elif kind == "error":
                    error = event.get("error", {})
                    if error.get("type") == "overloaded_error":
                        raise ProviderQuotaError(f"Anthropic overloaded: {error.get('message')}")
                    raise ProviderError(f"Anthropic stream error: {error.get('message')}")

        if not finished:
            raise ProviderTransportError("Anthropic stream ended before message_stop")

        text = "".join(b["text"] for _, b in sorted(blocks.items()) if b["type"] == "text")
        calls = [
            ToolCall(id=b["id"], name=b["name"], arguments=b["json"] or "{}")
            for _, b in sorted(blocks.items())
            if b["type"] == "tool_use"
        ]
        return LLMResponse(text=text, tool_calls=calls)


def _parse_message(data: dict[str, Any]) -> LLMResponse:
    content = data.get("content")
    if content is None:
        raise ProviderError("Anthropic response has no content")
    text = ""
    calls = []
    for block in content:
        if block.get("type") == "text":
            text += block.get("text", "")
        elif block.get("type") == "tool_use":
            calls.append(ToolCall(id=block["id"], name=block["name"], arguments=json.dumps(block.get("input") or {})))
    return LLMResponse(text=text, tool_calls=calls)
