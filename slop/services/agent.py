"""Agent orchestration - drives one turn of LLM calls and tool use against a thread.

A turn starts from a human message and runs until the model answers without
requesting tools:

    AWAITING_RESPONSE -> DONE
    AWAITING_RESPONSE -> AWAITING_TOOL_EXECUTION -> AWAITING_RESPONSE ...

The human message is persisted before the first provider call. Each
tool-calling assistant message is persisted with its raw calls, the calls are
executed in order, and their results are attached to that message before the
next provider call. Only one turn runs per thread at a time.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, TypeVar

from slop.core.config import ModelPreset, settings
from slop.core.errors import (
    ToolExecutionError,
    ToolExecutorUnavailableError,
    ToolLoopExceededError,
    TurnCancelledError,
)
from slop.models.conversation import Message, Role
from slop.services.conversation import ConversationService
from slop.services.llm import get_llm_provider
from slop.services.llm.base import BaseLLMProvider, GenerationOptions, LLMResponse, ToolCall, encode_tool_call_chunk
from slop.services.streaming import NullSink, OutputSink, StreamDemultiplexer
from slop.services.tools.base import ToolExecutor, ToolResult, ToolSpec

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TurnState(str, Enum):
    AWAITING_RESPONSE = "awaiting_response"
    AWAITING_TOOL_EXECUTION = "awaiting_tool_execution"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    TurnState.AWAITING_RESPONSE: {
        TurnState.DONE, TurnState.AWAITING_TOOL_EXECUTION, TurnState.FAILED, TurnState.CANCELLED,
    },
    TurnState.AWAITING_TOOL_EXECUTION: {TurnState.AWAITING_RESPONSE, TurnState.FAILED, TurnState.CANCELLED},
}


@dataclass
class SendMessageOptions:
    thread_id: str
    content: str
    parent_id: str | None = None  # None continues from the latest message; ROOT starts a new branch
    sink: OutputSink | None = None
    stream: bool = True
    cancel_event: asyncio.Event | None = None
    # Per-call overrides of the model preset
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class TurnResult:
    state: TurnState
    human_message: Message
    message: Message  # final assistant message
    tool_cycles: int


class ThreadLocks:
    """Per-thread turn locks. A lock lives only while some turn holds a reference to it."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def for_thread(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        return lock


thread_locks = ThreadLocks()


class _Turn:
    def __init__(self, thread_id: str):
        self.thread_id = thread_id
        self.state = TurnState.AWAITING_RESPONSE
        self.tool_cycles = 0

    def transition(self, new_state: TurnState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Invalid turn transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Thread {self.thread_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def finish(self, terminal: TurnState) -> None:
        """Move to a terminal failure state unless the turn already ended."""
        if self.state in _TRANSITIONS:
            self.transition(terminal)


def _check_cancel(cancel: asyncio.Event) -> None:
    if cancel.is_set():
        raise TurnCancelledError("Turn cancelled")


async def _race(awaitable: Awaitable[T], cancel: asyncio.Event) -> T:
    """Await `awaitable`, abandoning it as soon as `cancel` is set."""
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for pending in (task, waiter):
            if not pending.done():
                pending.cancel()
        await asyncio.gather(task, waiter, return_exceptions=True)

    _check_cancel(cancel)
    return task.result()


class Agent:
    """Runs turns: LLM provider + tool executor + conversation tree."""

    def __init__(
        self,
        conversations: ConversationService | None = None,
        tool_executor: ToolExecutor | None = None,
        provider: BaseLLMProvider | None = None,
        preset: ModelPreset | None = None,
        max_tool_cycles: int | None = None,
        summary_provider: BaseLLMProvider | None = None,
        locks: ThreadLocks | None = None,
    ):
        self.conversations = conversations or ConversationService()
        self.tool_executor = tool_executor
        self.preset = preset or settings.get_model()
        self.provider = provider or get_llm_provider(self.preset)
        self.max_tool_cycles = settings.max_tool_cycles if max_tool_cycles is None else max_tool_cycles
        self._summary_provider = summary_provider
        self.locks = locks or thread_locks

    def _resolve_provider(self, model: str | None) -> tuple[ModelPreset, BaseLLMProvider]:
        if model is None:
            return self.preset, self.provider
        preset = settings.get_model(model)
        return preset, get_llm_provider(preset)

    async def _collect_tools(self, preset: ModelPreset) -> dict[str, ToolSpec]:
        tools = {
            name: ToolSpec(name=name, description=cfg.description, parameters=cfg.parameters.to_schema())
            for name, cfg in preset.tools.items()
        }
        if self.tool_executor is not None:
            for spec in await self.tool_executor.list_tools():
                tools[spec.name] = spec
        return tools

    async def send_message(self, opts: SendMessageOptions) -> TurnResult:
        """Run one turn. Raises TurnCancelledError, ToolLoopExceededError or the underlying failure."""
        async with self.locks.for_thread(opts.thread_id):
            return await self._run_turn(opts)

    async def _run_turn(self, opts: SendMessageOptions) -> TurnResult:
        cancel = opts.cancel_event or asyncio.Event()
        sink = opts.sink or NullSink()
        store = self.conversations.store

        thread = self.conversations.get_thread(opts.thread_id)
        preset, provider = self._resolve_provider(opts.model)
        options = GenerationOptions(
            temperature=preset.temperature if opts.temperature is None else opts.temperature,
            max_tokens=preset.max_tokens if opts.max_tokens is None else opts.max_tokens,
        )
        # The human message outlives a cancelled or failed turn
        human = self.conversations.append_message(
            thread.id, Message(role=Role.HUMAN, content=opts.content), parent_id=opts.parent_id
        )

        turn = _Turn(thread.id)
        parent = human
        pending: Message | None = None  # tool-call message still waiting for its results
        try:
            tools = await _race(self._collect_tools(preset), cancel)
            while True:
                context = self.conversations.resolve_context(thread.id, parent.id)
                _check_cancel(cancel)
                self._log_request(turn, provider, context, tools)
                response = await self._call_provider(provider, context, tools, options, opts.stream, sink, cancel)

                if not response.tool_calls:
                    turn.transition(TurnState.DONE)
                    message = self.conversations.append_message(
                        thread.id,
                        Message(
                            role=Role.ASSISTANT,
                            content=response.text,
                            model_name=provider.model,
                            provider=provider.provider_name,
                        ),
                        parent_id=parent.id,
                    )
                    await sink.on_turn_done()
                    return TurnResult(turn.state, human, message, turn.tool_cycles)

                if turn.tool_cycles >= self.max_tool_cycles:
                    raise ToolLoopExceededError(self.max_tool_cycles)

                turn.transition(TurnState.AWAITING_TOOL_EXECUTION)
                pending = self.conversations.append_message(
                    thread.id,
                    Message(
                        role=Role.ASSISTANT,
                        content=response.text,
                        tool_calls=[call.to_record() for call in response.tool_calls],
                        model_name=provider.model,
                        provider=provider.provider_name,
                    ),
                    parent_id=parent.id,
                )

                results = []
                for call in response.tool_calls:
                    _check_cancel(cancel)
                    results.append(await self._execute_tool(call, cancel))
                    _check_cancel(cancel)

                parent = store.attach_tool_results(pending.id, results)
                pending = None
                turn.tool_cycles += 1
                turn.transition(TurnState.AWAITING_RESPONSE)

        except (TurnCancelledError, asyncio.CancelledError):
            turn.finish(TurnState.CANCELLED)
            if pending is not None:
                store.delete_message(pending.id)
            logger.info(f"Turn in thread {thread.id} cancelled after {turn.tool_cycles} tool cycles")
            raise
        except Exception as e:
            turn.finish(TurnState.FAILED)
            if pending is not None:
                store.delete_message(pending.id)
            logger.error(f"Turn in thread {thread.id} failed: {type(e).__name__}: {e}")
            raise

    async def _call_provider(
        self,
        provider: BaseLLMProvider,
        context: list[Message],
        tools: dict[str, ToolSpec],
        options: GenerationOptions,
        stream: bool,
        sink: OutputSink,
        cancel: asyncio.Event,
    ) -> LLMResponse:
        demux = StreamDemultiplexer(sink)

        async def on_chunk(chunk: bytes) -> None:
            _check_cancel(cancel)
            await demux.handle(chunk)

        response = await _race(
            provider.generate(context, tools, options, stream=stream, on_chunk=on_chunk), cancel
        )

        if not stream:
            if response.text:
                await sink.on_text_chunk(response.text.encode("utf-8"))
            for call in response.tool_calls:
                await demux.handle(encode_tool_call_chunk(call.id, call.name, call.arguments))

        usage = f"{len(response.text)} chars, {len(response.tool_calls)} tool calls"
        logger.info(f"=== LLM Response === {usage}")
        return response

    async def _execute_tool(self, call: ToolCall, cancel: asyncio.Event) -> dict[str, Any]:
        try:
            arguments = call.parsed_arguments()
        except ValueError as e:
            result = ToolResult(content=f"Invalid arguments for {call.name}: {e}", is_error=True)
        else:
            if self.tool_executor is None:
                raise ToolExecutorUnavailableError(f"No tool executor available to run {call.name}")
            logger.info(f"Tool call: {call.name}({arguments})")
            try:
                result = await _race(self.tool_executor.call_tool(call.name, arguments), cancel)
            except ToolExecutionError as e:
                result = ToolResult(content=f"Error executing {e}", is_error=True)

        if result.is_error:
            logger.warning(f"Tool {call.name} failed: {result.content[:200]}")
        return {
            "tool_call_id": call.id,
            "name": call.name,
            "content": result.content,
            "is_error": result.is_error,
        }

    def _log_request(
        self, turn: _Turn, provider: BaseLLMProvider, context: list[Message], tools: dict[str, ToolSpec]
    ) -> None:
        msg_summary = []
        for msg in context:
            parts = [msg.content[:200]] if msg.content else []
            parts += [f"[call:{c['name']}]" for c in msg.tool_calls or []]
            parts += [f"[result:{r['name']}]" for r in msg.tool_results or []]
            msg_summary.append(f"  {msg.role.value}: {' | '.join(parts)}")

        logger.info(
            f"=== LLM API Call (tool cycle {turn.tool_cycles}/{self.max_tool_cycles}) ===\n"
            f"  Model: {provider.provider_name}/{provider.model}\n"
            f"  Tools: {len(tools)} ({', '.join(tools)})\n"
            f"  Messages ({len(context)}):\n" + "\n".join(msg_summary)
        )

    async def summarize_thread(self, thread_id: str) -> str:
        """Ask the internal model for a short summary of the thread and store it."""
        messages = self.conversations.store.get_messages(thread_id)
        transcript = "\n".join(f"{m.role.value}: {m.content}" for m in messages if m.content)

        provider = self._summary_provider or get_llm_provider(settings.get_model(settings.internal_model))
        prompt = Message(role=Role.HUMAN, content=f"{settings.summary_prompt}\n\n{transcript}")
        response = await provider.generate([prompt], options=GenerationOptions(max_tokens=64))

        summary = response.text.strip()
        self.conversations.set_summary(thread_id, summary)
        return summary
