"""Pipeline card endpoint: create the open CRM card of a contact."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from tezeus.api.rbac import WorkspaceRoleContext, require_workspace_role
from tezeus.domain.conversations import ConversationNotFoundError
from tezeus.domain.pipeline_cards import (
    ContactNotFoundError,
    ContactWithoutIdentifierError,
    DuplicateOpenCardError,
    PipelineNotFoundError,
    ensure_card,
)
from tezeus.infra.db import txn

router = APIRouter(prefix="/pipeline-cards", tags=["pipeline"])


class CreateCardRequest(BaseModel):
    contact_id: str
    conversation_id: str | None = None
    pipeline_id: str | None = None


@router.post("", status_code=201)
def create_card(
    body: CreateCardRequest,
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    """Create a card in the first column of the pipeline.

    409 ``duplicate_open_card`` when the contact already has an open card in
    that pipeline.
    """
    try:
        with txn() as cur:
            card = ensure_card(
                cur,
                workspace_id=ctx.workspace_id,
                contact_id=body.contact_id,
                conversation_id=body.conversation_id,
                pipeline_id=body.pipeline_id,
            )
    except ContactNotFoundError:
        raise HTTPException(status_code=404, detail="Contact not found")
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except ContactWithoutIdentifierError:
        raise HTTPException(status_code=400, detail="Contact has no phone or email")
    except PipelineNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DuplicateOpenCardError as e:
        raise HTTPException(
            status_code=409,
            detail={"error": "duplicate_open_card", "existing_card": e.existing_card},
        )
    return {"success": True, **card}
