"""REST API for thread history management."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from slop.core.errors import AmbiguousIDError, NotFoundError, ProviderError, UnsupportedProviderError
from slop.models.conversation import Message, Thread
from slop.services.agent import Agent
from slop.services.conversation import ConversationService

router = APIRouter()
logger = logging.getLogger(__name__)


class TruncateRequest(BaseModel):
    count: int = Field(gt=0)


class SummaryRequest(BaseModel):
    summary: str


def get_conversations() -> ConversationService:
    return ConversationService()


def _thread_dict(thread: Thread) -> dict:
    return {
        "id": thread.id,
        "created_at": thread.created_at.isoformat(),
        "summary": thread.summary,
    }


def _message_dict(m: Message) -> dict:
    return {
        "id": m.id,
        "parent_id": m.parent_id,
        "role": m.role.value,
        "content": m.content,
        "tool_calls": m.tool_calls,
        "tool_results": m.tool_results,
        "model_name": m.model_name,
        "provider": m.provider,
        "created_at": m.created_at.isoformat(),
    }


def _find_thread(conversations: ConversationService, prefix: str) -> Thread:
    try:
        return conversations.find_thread(prefix)
    except AmbiguousIDError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except NotFoundError as e:
        logger.debug(f"Thread lookup '{prefix}' failed: {e}")
        raise HTTPException(status_code=404, detail="Thread not found")


@router.post("/")
async def create_thread(conversations: ConversationService = Depends(get_conversations)):
    return _thread_dict(conversations.create_thread())


@router.get("/")
async def list_threads(limit: int = 0, conversations: ConversationService = Depends(get_conversations)):
    threads = conversations.list_threads(limit)
    result = []
    for thread in threads:
        details = conversations.thread_details(thread)
        result.append({
            **_thread_dict(thread),
            "message_count": details.message_count,
            "preview": details.preview,
        })
    return result


@router.get("/active")
async def get_active_thread(conversations: ConversationService = Depends(get_conversations)):
    try:
        thread = conversations.get_active_thread()
    except NotFoundError:
        raise HTTPException(status_code=404, detail="No threads yet")
    return _thread_dict(thread)


@router.get("/{prefix}")
async def get_thread(prefix: str, conversations: ConversationService = Depends(get_conversations)):
    thread = _find_thread(conversations, prefix)
    messages = conversations.get_thread_messages(thread.id)
    return {**_thread_dict(thread), "messages": [_message_dict(m) for m in messages]}


@router.get("/{prefix}/context")
async def get_context(
    prefix: str,
    message: str | None = None,
    conversations: ConversationService = Depends(get_conversations),
):
    """The linear context path ending at `message` (a message ID prefix), or at the latest message."""
    thread = _find_thread(conversations, prefix)
    reference_id = None
    if message:
        try:
            reference_id = conversations.find_message(thread.id, message).id
        except AmbiguousIDError as e:
            raise HTTPException(status_code=409, detail=str(e))
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Message not found")
    context = conversations.resolve_context(thread.id, reference_id)
    return [_message_dict(m) for m in context]


@router.delete("/{prefix}")
async def delete_thread(prefix: str, conversations: ConversationService = Depends(get_conversations)):
    thread = _find_thread(conversations, prefix)
    conversations.delete_thread(thread.id)
    logger.debug(f"Deleted thread {thread.id}")
    return {"status": "deleted"}


@router.post("/{prefix}/truncate")
async def truncate_thread(
    prefix: str,
    body: TruncateRequest,
    conversations: ConversationService = Depends(get_conversations),
):
    thread = _find_thread(conversations, prefix)
    deleted = conversations.delete_last_messages(thread.id, body.count)
    return {"deleted": deleted}


@router.put("/{prefix}/summary")
async def set_summary(
    prefix: str,
    body: SummaryRequest,
    conversations: ConversationService = Depends(get_conversations),
):
    thread = _find_thread(conversations, prefix)
    return _thread_dict(conversations.set_summary(thread.id, body.summary))


@router.post("/{prefix}/summarize")
async def summarize_thread(
    prefix: str,
    request: Request,
    conversations: ConversationService = Depends(get_conversations),
):
    thread = _find_thread(conversations, prefix)
    try:
        agent = Agent(conversations=conversations, tool_executor=getattr(request.app.state, "tool_executor", None))
        summary = await agent.summarize_thread(thread.id)
    except (ProviderError, UnsupportedProviderError) as e:
        logger.error(f"Summary for thread {thread.id} failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return {"id": thread.id, "summary": summary}
