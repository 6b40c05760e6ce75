"""Google Gemini LLM provider."""

import json
import uuid

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

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


def to_gemini_contents(context: list[Message]) -> list[types.Content]:
    contents = []
    for msg in context:
        if msg.role == Role.HUMAN:
            contents.append(types.Content(role="user", parts=[types.Part(text=msg.content)]))
            continue

        parts = []
        if msg.content:
            parts.append(types.Part(text=msg.content))
        for call in msg.tool_calls or []:
            parts.append(types.Part(function_call=types.FunctionCall(
                id=call.get("id") or None,
                name=call["name"],
                args=loads_arguments(call.get("arguments", "")),
            )))
        if parts:
            contents.append(types.Content(role="model", parts=parts))

        if msg.tool_results:
            contents.append(types.Content(role="user", parts=[
                types.Part(function_response=types.FunctionResponse(
                    id=result.get("tool_call_id") or None,
                    name=result["name"],
                    response={"error" if result.get("is_error") else "result": result["content"]},
                ))
                for result in msg.tool_results
            ]))
    return contents


def _translate_error(e: Exception) -> ProviderError:
    if isinstance(e, genai_errors.APIError):
        if e.code in (401, 403):
            return ProviderAuthError(f"Gemini rejected credentials: {e}", e)
        if e.code == 429:
            return ProviderQuotaError(f"Gemini quota exceeded: {e}", e)
        if isinstance(e, genai_errors.ServerError):
            return ProviderTransportError(f"Gemini server error: {e}", e)
        return ProviderError(f"Gemini request failed: {e}", e)
    return ProviderTransportError(f"Gemini transport failure: {e}", e)


class GeminiProvider(BaseLLMProvider):
    provider_name = "googleai"

    def __init__(self, model: str = "gemini-2.0-flash", api_key: str | None = None, **kwargs):
        super().__init__(model, **kwargs)
        self._api_key = api_key or settings.gemini_api_key
        self._client: genai.Client | None = None

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self._api_key)
        return self._client

    def _build_config(self, tools: dict[str, ToolSpec], options: GenerationOptions) -> types.GenerateContentConfig:
        declarations = [
            {"name": name, "description": spec.description, "parameters": spec.parameters}
            for name, spec in tools.items()
        ]
        return types.GenerateContentConfig(
            temperature=options.temperature,
            max_output_tokens=options.max_tokens,
            tools=[types.Tool(function_declarations=declarations)] if declarations else None,
        )

    async def _generate(
        self,
        context: list[Message],
        tools: dict[str, ToolSpec],
        options: GenerationOptions,
        stream: bool,
        on_chunk: ChunkCallback | None,
    ) -> LLMResponse:
        contents = to_gemini_contents(context)
        config = self._build_config(tools, options)
        text = ""
        tool_calls: list[ToolCall] = []

        try:
            if stream:
                received = False
                async for chunk in await self.client.aio.models.generate_content_stream(
                    model=self.model, contents=contents, config=config,
                ):
                    received = True
                    for part in _parts(chunk):
                        if part.function_call:
                            call = _to_tool_call(part.function_call)
                            tool_calls.append(call)
                            if on_chunk:
                                # Gemini delivers each call whole
                                await on_chunk(encode_tool_call_chunk(call.id, call.name, call.arguments))
                        elif part.text:
                            text += part.text
                            if on_chunk:
                                await on_chunk(part.text.encode("utf-8"))
                if not received:
                    raise ProviderError("Gemini returned an empty stream")
            else:
                response = await self.client.aio.models.generate_content(
                    model=self.model, contents=contents, config=config,
                )
                if not response.candidates:
                    raise ProviderError("Gemini returned no candidates")
                for part in _parts(response):
                    if part.function_call:
                        tool_calls.append(_to_tool_call(part.function_call))
                    elif part.text:
                        text += part.text
        except (genai_errors.APIError, httpx.TransportError) as e:
            raise _translate_error(e) from e

        return LLMResponse(text=text, tool_calls=tool_calls)


def _parts(response: types.GenerateContentResponse) -> list[types.Part]:
    if not response.candidates:
        return []
    content = response.candidates[0].content
    if not content or not content.parts:
        return []
    return list(content.parts)


def _to_tool_call(fc: types.FunctionCall) -> ToolCall:
    return ToolCall(
        id=fc.id or f"call_{uuid.uuid4().hex[:12]}",
        name=fc.name or "",
        arguments=json.dumps(dict(fc.args) if fc.args else {}),
    )
