"""Conversation endpoints for the inbox.

Inbox reads (list, timeline, assignment history), send (202, delivered by
the worker), accept, end, reopen, assign and queue routing. All routes are
scoped to the X-Workspace-Id workspace.
"""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel

from tezeus.api.rbac import WorkspaceRoleContext, require_workspace_role
from tezeus.domain.conversations import (
    ConversationAlreadyAssignedError,
    ConversationNotFoundError,
    InvalidAssigneeError,
    accept_conversation,
    assign_conversation,
    end_conversation,
    load_conversation,
    reopen,
)
from tezeus.domain.inbox import (
    InvalidCursorError,
    assignment_history,
    list_conversations,
    list_messages,
)
from tezeus.domain.outgoing_messages import (
    InvalidMessageError,
    create_outgoing_message,
    enqueue_send,
)
from tezeus.domain.queue_distribution import (
    EmptyQueueError,
    QueueNotFoundError,
    distribute_to_queue,
)
from tezeus.infra.db import txn
from tezeus.infra.repositories.connections_repository import get_default_connection
from tezeus.infra.repositories.conversations_repository import set_connection
from tezeus.observability.correlation import get_correlation_id
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context
from tezeus.tasks.client import TasksClient

router = APIRouter(prefix="/conversations", tags=["conversations"])

logger = get_logger(__name__)

_tasks_client = TasksClient()


def _get_tasks_client() -> TasksClient:
    """Get tasks client (allows override in tests)."""
    return _tasks_client


class SendMessageRequest(BaseModel):
    content: str | None = None
    message_type: str = "text"
    file_url: str | None = None
    file_name: str | None = None
    mime_type: str | None = None
    reply_to_message_id: str | None = None
    quoted_message: dict[str, Any] | None = None
    client_message_id: str | None = None


class AssignRequest(BaseModel):
    target_user_id: str | None = None


class QueueRequest(BaseModel):
    queue_id: str | None = None


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail="Conversation not found")


@router.get("")
def get_inbox(
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
    status: Literal["open", "closed"] | None = Query(None, description="Filter by status"),
    assigned_user_id: str | None = Query(None, description="Filter by assignee"),
    cursor: str | None = Query(None, description="next_cursor of the previous page"),
    limit: int = Query(50, ge=1, le=200),
) -> dict:
    """List the workspace inbox, most recent activity first.

    Users see conversations assigned to them or unassigned; admins and
    masters see all.
    """
    try:
        with txn() as cur:
            return list_conversations(
                cur,
                workspace_id=ctx.workspace_id,
                user_id=ctx.user.id,
                role=ctx.role,
                limit=limit,
                status=status,
                assigned_user_id=assigned_user_id,
                cursor=cursor,
            )
    except InvalidCursorError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{conversation_id}/messages")
def get_messages(
    conversation_id: str = Path(..., description="Conversation UUID"),
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
    before: str | None = Query(None, description="next_before of the previous page"),
    limit: int = Query(50, ge=1, le=200),
) -> dict:
    try:
        with txn() as cur:
            return list_messages(
                cur,
                workspace_id=ctx.workspace_id,
                conversation_id=conversation_id,
                limit=limit,
                before=before,
            )
    except ConversationNotFoundError:
        raise _not_found()
    except InvalidCursorError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{conversation_id}/assignments")
def get_assignment_history(
    conversation_id: str = Path(..., description="Conversation UUID"),
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    """Assignment history, newest first."""
    try:
        with txn() as cur:
            return assignment_history(cur, workspace_id=ctx.workspace_id, conversation_id=conversation_id)
    except ConversationNotFoundError:
        raise _not_found()


@router.post("/{conversation_id}/messages", status_code=202)
def send_message(
    conversation_id: str = Path(..., description="Conversation UUID"),
    body: SendMessageRequest = ...,
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    """Store an outgoing message and enqueue its delivery.

    Returns 202 with status ``sending``, or ``duplicate`` when the
    client_message_id was already used.
    """
    correlation_id = get_correlation_id()

    try:
        with txn() as cur:
            conversation = load_conversation(
                cur,
                workspace_id=ctx.workspace_id,
                conversation_id=conversation_id,
                lock=False,
            )
            if not conversation["connection_id"]:
                connection = get_default_connection(cur, workspace_id=ctx.workspace_id)
                if connection is None:
                    raise HTTPException(status_code=400, detail="No connected WhatsApp connection")
                set_connection(cur, conversation_id=conversation_id, connection_id=connection["id"])

            message = create_outgoing_message(
                cur,
                conversation_id=conversation_id,
                workspace_id=ctx.workspace_id,
                content=body.content,
                message_type=body.message_type,
                sender_id=ctx.user.id,
                file_url=body.file_url,
                file_name=body.file_name,
                mime_type=body.mime_type,
                reply_to_message_id=body.reply_to_message_id,
                quoted_message=body.quoted_message,
                client_message_id=body.client_message_id,
            )
    except ConversationNotFoundError:
        raise _not_found()
    except InvalidMessageError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if message.duplicate:
        return {"status": "duplicate", "message_id": message.message_id}

    enqueue_send(
        _get_tasks_client(),
        message_id=message.message_id,
        workspace_id=ctx.workspace_id,
        correlation_id=correlation_id,
    )
    logger.info(
        "outgoing message enqueued",
        extra={
            "extra_fields": safe_log_context(
                correlationId=correlation_id,
                workspace_id=ctx.workspace_id,
                conversation_id=conversation_id,
                message_id=message.message_id,
                message_type=body.message_type,
            )
        },
    )
    return {
        "message_id": message.message_id,
        "external_id": message.external_id,
        "status": "sending",
    }


@router.post("/{conversation_id}/accept")
def accept(
    conversation_id: str = Path(..., description="Conversation UUID"),
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    """Claim an unassigned conversation. 409 when someone already holds it."""
    try:
        with txn() as cur:
            return accept_conversation(
                cur,
                workspace_id=ctx.workspace_id,
                conversation_id=conversation_id,
                user_id=ctx.user.id,
            )
    except ConversationNotFoundError:
        raise _not_found()
    except ConversationAlreadyAssignedError as e:
        raise HTTPException(
            status_code=409,
            detail={"error": "Conversation already assigned", "assigned_user_id": e.assigned_user_id},
        )


@router.post("/{conversation_id}/end")
def end(
    conversation_id: str = Path(..., description="Conversation UUID"),
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    try:
        with txn() as cur:
            return end_conversation(
                cur,
                workspace_id=ctx.workspace_id,
                conversation_id=conversation_id,
                user_id=ctx.user.id,
            )
    except ConversationNotFoundError:
        raise _not_found()


@router.post("/{conversation_id}/reopen")
def reopen_route(
    conversation_id: str = Path(..., description="Conversation UUID"),
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    try:
        with txn() as cur:
            return reopen(cur, workspace_id=ctx.workspace_id, conversation_id=conversation_id)
    except ConversationNotFoundError:
        raise _not_found()


@router.post("/{conversation_id}/assign")
def assign(
    conversation_id: str = Path(..., description="Conversation UUID"),
    body: AssignRequest = ...,
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    """Assign, transfer or unassign (empty, "none" or "null" target)."""
    try:
        with txn() as cur:
            return assign_conversation(
                cur,
                workspace_id=ctx.workspace_id,
                conversation_id=conversation_id,
                target_user_id=body.target_user_id,
                changed_by=ctx.user.id,
            )
    except ConversationNotFoundError:
        raise _not_found()
    except InvalidAssigneeError:
        raise HTTPException(status_code=400, detail="Target user is not a workspace member")


@router.post("/{conversation_id}/queue")
def route_to_queue(
    conversation_id: str = Path(..., description="Conversation UUID"),
    body: QueueRequest = ...,
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    """Distribute through a queue (explicit, else the connection's queue)."""
    try:
        with txn() as cur:
            load_conversation(cur, workspace_id=ctx.workspace_id, conversation_id=conversation_id)
            result = distribute_to_queue(
                cur,
                conversation_id=conversation_id,
                queue_id=body.queue_id,
                changed_by=ctx.user.id,
            )
    except ConversationNotFoundError:
        raise _not_found()
    except QueueNotFoundError:
        raise HTTPException(status_code=404, detail="Queue not found or inactive")
    except EmptyQueueError:
        raise HTTPException(status_code=400, detail="Queue has no active members")

    greeting_id = result.pop("greeting_message_id", None)
    if greeting_id:
        enqueue_send(
            _get_tasks_client(),
            message_id=greeting_id,
            workspace_id=ctx.workspace_id,
            correlation_id=get_correlation_id(),
        )
    return result
