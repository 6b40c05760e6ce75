import asyncio
import codecs
import json
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from slop.core.errors import NotFoundError, SlopError, TurnCancelledError
from slop.services.agent import Agent, SendMessageOptions
from slop.services.streaming import OutputSink

router = APIRouter()
logger = logging.getLogger(__name__)


class WebSocketSink(OutputSink):
    """Forwards a turn's stream to the client as JSON frames."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    async def on_text_chunk(self, chunk: bytes) -> None:
        text = self._decoder.decode(chunk)
        if text:
            await self.websocket.send_json({"type": "text", "data": text})

    async def on_tool_call_start(self, call_id: str, name: str) -> None:
        await self.websocket.send_json({"type": "tool_call_start", "id": call_id, "name": name})

    async def on_tool_call_chunk(self, text: str) -> None:
        await self.websocket.send_json({"type": "tool_call_chunk", "data": text})

    async def on_turn_done(self) -> None:
        await self.websocket.send_json({"type": "done"})


def _parse_frame(raw: str) -> dict:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {"content": raw}
    return data if isinstance(data, dict) else {"content": raw}


async def _watch_for_cancel(websocket: WebSocket, turn: asyncio.Task, cancel: asyncio.Event) -> bool:
    """Listen for cancel frames while a turn runs. Returns True if the client went away."""
    while not turn.done():
        receive = asyncio.ensure_future(websocket.receive_text())
        done, _ = await asyncio.wait({turn, receive}, return_when=asyncio.FIRST_COMPLETED)
        if receive not in done:
            receive.cancel()
            await asyncio.gather(receive, return_exceptions=True)
            break
        try:
            raw = receive.result()
        except WebSocketDisconnect:
            cancel.set()
            return True
        if _parse_frame(raw).get("type") == "cancel":
            cancel.set()
        else:
            logger.debug("Ignoring frame received while a turn is running")
    return False


@router.websocket("/ws")
async def chat_websocket(websocket: WebSocket):
    await websocket.accept()
    thread_id: str | None = None

    try:
        try:
            agent = Agent(tool_executor=getattr(websocket.app.state, "tool_executor", None))
        except SlopError as e:
            logger.error(f"Chat session could not start: {type(e).__name__}: {e}")
            await websocket.send_json({"type": "error", "error": type(e).__name__, "detail": str(e)})
            await websocket.close()
            return
        conversations = agent.conversations

        while True:
            data = _parse_frame(await websocket.receive_text())
            if data.get("type") == "cancel":
                continue  # nothing running

            # Switch threads when the client names one (full ID or unique prefix)
            if data.get("thread_id"):
                try:
                    thread_id = conversations.find_thread(data["thread_id"]).id
                except NotFoundError as e:
                    await websocket.send_json({"type": "error", "error": type(e).__name__, "detail": str(e)})
                    continue

            if thread_id is None:
                thread_id = conversations.create_thread().id

            cancel = asyncio.Event()
            opts = SendMessageOptions(
                thread_id=thread_id,
                content=data.get("content", ""),
                parent_id=data.get("parent_id"),
                sink=WebSocketSink(websocket),
                stream=bool(data.get("stream", True)),
                cancel_event=cancel,
                model=data.get("model"),
            )
            turn = asyncio.ensure_future(agent.send_message(opts))
            if await _watch_for_cancel(websocket, turn, cancel):
                await asyncio.gather(turn, return_exceptions=True)
                logger.info(f"Client disconnected; turn in thread {thread_id} abandoned")
                return

            try:
                result = await turn
            except TurnCancelledError:
                await websocket.send_json({"type": "cancelled", "thread_id": thread_id})
                continue
            except SlopError as e:
                await websocket.send_json({"type": "error", "error": type(e).__name__, "detail": str(e)})
                continue

            await websocket.send_json({
                "type": "end",
                "thread_id": thread_id,
                "message_id": result.message.id,
                "tool_cycles": result.tool_cycles,
            })

    except WebSocketDisconnect:
        pass
