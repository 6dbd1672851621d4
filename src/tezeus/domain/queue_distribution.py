"""Queue distribution - route a conversation to a queue and pick an assignee.

Distribution types:
- sequencial: round-robin over active members, index persisted on the queue
- aleatoria: uniform random member
- ordenada: always the first member
- nao_distribuir: link the queue (and its AI agent) without assigning anyone
Unknown types behave like ``ordenada``.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from tezeus.infra.db import savepoint
from tezeus.infra.repositories.connections_repository import get_connection
from tezeus.infra.repositories.conversations_repository import (
    get_conversation,
    set_queue_assignment,
    set_queue_only,
)
from tezeus.infra.repositories.pipeline_repository import set_responsible_for_conversation
from tezeus.infra.repositories.queues_repository import (
    get_active_queue,
    list_active_member_ids,
    set_last_assigned_index,
)
from tezeus.observability.logging import get_logger
from tezeus.observability.redaction import safe_log_context

from .conversations import ConversationNotFoundError, record_history
from .outgoing_messages import create_outgoing_message

logger = get_logger(__name__)

SEQUENTIAL = "sequencial"
RANDOM = "aleatoria"
ORDERED = "ordenada"
NO_DISTRIBUTION = "nao_distribuir"


class QueueNotFoundError(Exception):
    """Raised when the queue does not exist or is inactive."""

    pass


class EmptyQueueError(Exception):
    """Raised when a distributing queue has no active members."""

    pass


@dataclass(frozen=True)
class Selection:
    user_id: str
    reason: str
    next_index: int | None = None


def select_assignee(
    distribution_type: str,
    member_ids: list[str],
    last_index: int | None,
    rng: random.Random | None = None,
) -> Selection:
    """Pick the member who gets the conversation.

    Args:
        distribution_type: Queue distribution type.
        member_ids: Active members in ``order_position`` order.
        last_index: Queue's ``last_assigned_user_index``.
        rng: Random source for ``aleatoria``.

    Returns:
        Selection. ``next_index`` is set only for ``sequencial``, and must be
        persisted as the new ``last_assigned_user_index``.

    Raises:
        EmptyQueueError: No members.
    """
    count = len(member_ids)
    if count == 0:
        raise EmptyQueueError("Queue has no active users")

    if distribution_type == SEQUENTIAL:
        next_index = ((last_index or 0) + 1) % count
        return Selection(member_ids[next_index], f"Sequencial (índice {next_index + 1}/{count})", next_index)

    if distribution_type == RANDOM:
        index = (rng or random).randrange(count)
        return Selection(member_ids[index], f"Aleatória (usuário {index + 1}/{count})")

    if distribution_type == ORDERED:
        return Selection(member_ids[0], "Ordenada (sempre o primeiro)")

    return Selection(member_ids[0], "Padrão (primeiro usuário)")


def _queue_greeting(cur: PgCursor, conversation: dict[str, Any], text: str) -> str | None:
    try:
        with savepoint(cur, "queue_greeting"):
            return create_outgoing_message(
                cur,
                conversation_id=conversation["id"],
                workspace_id=conversation["workspace_id"],
                content=text,
                sender_type="system",
            ).message_id
    except Exception:
        logger.exception(
            "queue greeting not created",
            extra={"extra_fields": safe_log_context(conversation_id=conversation["id"])},
        )
        return None


def distribute_to_queue(
    cur: PgCursor,
    *,
    conversation_id: str,
    queue_id: str | None = None,
    changed_by: str | None = None,
    rng: random.Random | None = None,
) -> dict[str, Any]:
    """Route a conversation through a queue.

    The queue is ``queue_id``, else the queue of the conversation's
    connection. When the queue has a description it is queued as a
    greeting; the returned ``greeting_message_id`` must be enqueued for
    sending once the transaction commits.

    Raises:
        ConversationNotFoundError: Unknown conversation.
        QueueNotFoundError: Unknown or inactive queue.
        EmptyQueueError: Distributing queue without active members.
    """
    conversation = get_conversation(cur, conversation_id=conversation_id, lock=True)
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)

    target_queue_id = queue_id
    if not target_queue_id and conversation["connection_id"]:
        connection = get_connection(cur, connection_id=conversation["connection_id"])
        target_queue_id = connection["queue_id"] if connection else None

    if not target_queue_id:
        return {"success": True, "action": "no_queue", "conversation_id": conversation_id}

    # Row lock keeps concurrent round-robin picks from reusing an index
    queue = get_active_queue(
        cur,
        queue_id=target_queue_id,
        workspace_id=conversation["workspace_id"],
        lock=True,
    )
    if queue is None:
        raise QueueNotFoundError(target_queue_id)

    previous_queue_id = conversation["queue_id"]
    queue_changed = previous_queue_id != queue["id"]

    if queue["distribution_type"] == NO_DISTRIBUTION:
        set_queue_only(cur, conversation_id=conversation_id, queue_id=queue["id"], agent_id=queue["ai_agent_id"])
        if queue_changed:
            record_history(
                cur,
                conversation_id=conversation_id,
                action="queue_transfer",
                from_user_id=conversation["assigned_user_id"],
                to_user_id=conversation["assigned_user_id"],
                from_queue_id=previous_queue_id,
                to_queue_id=queue["id"],
                changed_by=changed_by,
            )
        logger.info(
            "conversation linked to queue without distribution",
            extra={
                "extra_fields": safe_log_context(
                    conversation_id=conversation_id,
                    queue_id=queue["id"],
                    agent_active=queue["ai_agent_id"] is not None,
                )
            },
        )
        return {
            "success": True,
            "action": "no_distribution",
            "conversation_id": conversation_id,
            "workspace_id": conversation["workspace_id"],
            "queue_id": queue["id"],
            "queue_name": queue["name"],
            "agente_ativo": queue["ai_agent_id"] is not None,
            "agent_active_id": queue["ai_agent_id"],
        }

    members = list_active_member_ids(cur, queue_id=queue["id"])
    selection = select_assignee(
        queue["distribution_type"],
        members,
        queue["last_assigned_user_index"],
        rng,
    )
    if selection.next_index is not None:
        set_last_assigned_index(cur, queue_id=queue["id"], index=selection.next_index)

    set_queue_assignment(
        cur,
        conversation_id=conversation_id,
        assigned_user_id=selection.user_id,
        queue_id=queue["id"],
        agent_id=queue["ai_agent_id"],
    )

    previous_user_id = conversation["assigned_user_id"]
    record_history(
        cur,
        conversation_id=conversation_id,
        action="transfer" if previous_user_id else "assign",
        from_user_id=previous_user_id,
        to_user_id=selection.user_id,
        from_queue_id=previous_queue_id,
        to_queue_id=queue["id"],
        changed_by=changed_by,
    )
    if queue_changed:
        record_history(
            cur,
            conversation_id=conversation_id,
            action="queue_transfer",
            from_user_id=previous_user_id,
            to_user_id=selection.user_id,
            from_queue_id=previous_queue_id,
            to_queue_id=queue["id"],
            changed_by=changed_by,
        )

    cards_updated = set_responsible_for_conversation(
        cur, conversation_id=conversation_id, user_id=selection.user_id
    )

    greeting_message_id = None
    description = (queue["description"] or "").strip()
    if description:
        greeting_message_id = _queue_greeting(cur, conversation, description)

    logger.info(
        "conversation assigned via queue",
        extra={
            "extra_fields": safe_log_context(
                conversation_id=conversation_id,
                queue_id=queue["id"],
                distribution_type=queue["distribution_type"],
                assigned_user_id=selection.user_id,
            )
        },
    )

    return {
        "success": True,
        "action": "assigned",
        "conversation_id": conversation_id,
        "workspace_id": conversation["workspace_id"],
        "assigned_user_id": selection.user_id,
        "queue_id": queue["id"],
        "queue_name": queue["name"],
        "distribution_type": queue["distribution_type"],
        "selection_reason": selection.reason,
        "pipeline_cards_updated": cards_updated,
        "greeting_message_id": greeting_message_id,
    }
