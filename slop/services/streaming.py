"""Streaming demultiplexer.

Providers deliver one ordered stream of chunks in which plain text and
tool-call metadata are interleaved with no explicit discriminator. A chunk
that parses as `[{"id": ..., "function": {"name": ..., "arguments": ...}}]`
is a tool-call fragment; anything else is text. Argument JSON arrives split
at arbitrary points, so `ToolCallFormatter` rewrites it into an indented,
YAML-like form one character at a time, carrying its state across chunks.
"""

import codecs
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)

INDENT = "  "
LIST_MARKER = "- "


class ToolCallFormatter:
    """Incremental JSON-to-YAML-ish renderer for partial tool-call arguments."""

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.reset_all()

    def reset(self) -> None:
        """Clear quoting state only."""
        self.in_quote = False
        self.escaped = False

    def reset_all(self) -> None:
        """Clear all state; used between distinct tool calls."""
        self.reset()
        self.indent_level = 0
        self.in_array = False
        self.is_value = False
        self._decoder.reset()

    def feed(self, chunk: str | bytes) -> str:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)

        out: list[str] = []

        def write_indent() -> None:
            out.append(INDENT * max(self.indent_level, 0))

        for char in chunk:
            if self.escaped:
                out.append(char)
                self.escaped = False
            elif char == "\\" and self.in_quote:
                out.append(char)
                self.escaped = True
            elif char == '"':
                # Values are rendered unquoted
                self.in_quote = not self.in_quote
            elif self.in_quote:
                out.append(char)
            elif char == "[":
                self.in_array = True
                self.indent_level += 1
                out.append("\n")
                write_indent()
                out.append(LIST_MARKER)
            elif char == "]":
                self.indent_level -= 1
                self.in_array = False
            elif char == "{":
                if self.in_array:
                    write_indent()
                self.indent_level += 1
                out.append("\n")
                write_indent()
            elif char == "}":
                self.indent_level -= 1
                self.is_value = False
            elif char == ",":
                self.is_value = False
                out.append("\n")
                write_indent()
                if self.in_array:
                    out.append(LIST_MARKER)
            elif char == ":":
                self.is_value = True
                out.append(": ")
            elif char == " ":
                if self.is_value:
                    out.append(char)
            else:
                if self.in_array and not self.is_value:
                    out.append(LIST_MARKER)
                    self.is_value = True
                out.append(char)

        return "".join(out)


@dataclass
class TextChunk:
    data: bytes


@dataclass
class FunctionCallStart:
    id: str
    name: str


@dataclass
class FunctionCallFragment:
    name: str
    arguments: str


ChunkEvent = TextChunk | FunctionCallStart | FunctionCallFragment


class OutputSink(ABC):
    """Receives a turn's output as it streams."""

    @abstractmethod
    async def on_text_chunk(self, chunk: bytes) -> None:
        ...

    @abstractmethod
    async def on_tool_call_start(self, call_id: str, name: str) -> None:
        ...

    @abstractmethod
    async def on_tool_call_chunk(self, text: str) -> None:
        ...

    @abstractmethod
    async def on_turn_done(self) -> None:
        ...


class NullSink(OutputSink):
    async def on_text_chunk(self, chunk: bytes) -> None:
        pass

    async def on_tool_call_start(self, call_id: str, name: str) -> None:
        pass

    async def on_tool_call_chunk(self, text: str) -> None:
        pass

    async def on_turn_done(self) -> None:
        pass


def _probe_tool_call(chunk: bytes) -> tuple[str | None, str, str] | None:
    """Return (id, name, arguments) if the chunk is a tool-call fragment."""
    try:
        data = json.loads(chunk)
    except (ValueError, TypeError):
        return None
    if not isinstance(data, list) or not data:
        return None
    first = data[0]
    if not isinstance(first, dict):
        return None
    function = first.get("function")
    if not isinstance(function, dict):
        return None
    call_id = first.get("id")
    name = function.get("name")
    arguments = function.get("arguments")
    return (
        call_id if isinstance(call_id, str) else None,
        name if isinstance(name, str) else "",
        arguments if isinstance(arguments, str) else "",
    )


class StreamDemultiplexer:
    """Splits a provider stream into text and tool-call events for one sink.

    One instance serves one provider response. A start event is emitted once
    per distinct call id, and the formatter is fully reset at each new call
    so indentation never leaks from one call's arguments into the next.
    """

    def __init__(self, sink: OutputSink):
        self.sink = sink
        self.formatter = ToolCallFormatter()
        self.current_call_id: str | None = None
        self.current_call_name = ""

    def classify(self, chunk: bytes) -> list[ChunkEvent]:
        probed = _probe_tool_call(chunk)
        if probed is None:
            return [TextChunk(chunk)]

        call_id, name, arguments = probed
        events: list[ChunkEvent] = []
        if call_id is not None and call_id != self.current_call_id:
            self.current_call_id = call_id
            self.current_call_name = name
            events.append(FunctionCallStart(call_id, name))
        events.append(FunctionCallFragment(name or self.current_call_name, arguments))
        return events

    async def handle(self, chunk: bytes) -> None:
        for event in self.classify(chunk):
            if isinstance(event, TextChunk):
                await self.sink.on_text_chunk(event.data)
            elif isinstance(event, FunctionCallStart):
                self.formatter.reset_all()
                await self.sink.on_tool_call_start(event.id, event.name)
            else:
                rendered = self.formatter.feed(event.arguments)
                if rendered:
                    await self.sink.on_tool_call_chunk(rendered)
