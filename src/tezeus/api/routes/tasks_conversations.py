"""Worker route for queue distribution of new conversations.

POST /tasks/conversations/distribute runs the queue distribution of a
conversation opened by an inbound webhook, then enqueues the queue greeting.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from tezeus.api.task_auth import require_task_auth
from tezeus.domain.conversations import ConversationNotFoundError
from tezeus.domain.outgoing_messages import enqueue_send
from tezeus.domain.queue_distribution import (
    EmptyQueueError,
    QueueNotFoundError,
    distribute_to_queue,
)
from tezeus.infra.db import txn
from tezeus.observability.correlation import get_correlation_id
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context
from tezeus.tasks.client import TasksClient

router = APIRouter(prefix="/tasks/conversations", tags=["tasks"])

logger = get_logger(__name__)

_tasks_client = TasksClient()


def _get_tasks_client() -> TasksClient:
    """Get tasks client (allows override in tests)."""
    return _tasks_client


@router.post("/distribute")
async def distribute_task(request: Request) -> JSONResponse:
    """Distribute a conversation through its connection's queue.

    Expected payload: conversation_id, optional queue_id.

    Returns:
        200 with the distribution result. Configuration problems (unknown
        queue, empty queue) are acknowledged with 200 so they are not retried.
        400 if conversation_id is missing.
        401 if task auth fails.
        404 if the conversation does not exist.
    """
    require_task_auth(request)
    correlation_id = get_correlation_id()

    try:
        payload: dict[str, Any] = await request.json()
    except Exception:
        return JSONResponse(status_code=400, content={"error": "invalid json"})

    conversation_id = payload.get("conversation_id")
    if not conversation_id:
        return JSONResponse(status_code=400, content={"error": "conversation_id is required"})

    try:
        with txn() as cur:
            result = distribute_to_queue(
                cur,
                conversation_id=conversation_id,
                queue_id=payload.get("queue_id"),
            )
    except ConversationNotFoundError:
        return JSONResponse(status_code=404, content={"error": "Conversation not found"})
    except (QueueNotFoundError, EmptyQueueError) as e:
        logger.warning(
            "queue distribution skipped",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    conversation_id=conversation_id,
                    reason=type(e).__name__,
                )
            },
        )
        return JSONResponse(status_code=200, content={"success": False, "error": type(e).__name__})

    greeting_id = result.pop("greeting_message_id", None)
    if greeting_id:
        enqueue_send(
            _get_tasks_client(),
            message_id=greeting_id,
            workspace_id=result["workspace_id"],
            correlation_id=correlation_id,
        )
    return JSONResponse(status_code=200, content=result)
