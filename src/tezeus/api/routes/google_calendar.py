"""Google Calendar connection endpoints for the current workspace member."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from tezeus.api.rbac import WorkspaceRoleContext, require_workspace_role
from tezeus.google_calendar import integration
from tezeus.google_calendar.oauth import OAuthConfigError, OAuthExchangeError

router = APIRouter(prefix="/integrations/google-calendar", tags=["integrations"])


class ExchangeCodeRequest(BaseModel):
    code: str
    state: str


def _config_error(e: OAuthConfigError) -> HTTPException:
    return HTTPException(status_code=500, detail=str(e))


@router.get("/status")
def status(ctx: WorkspaceRoleContext = Depends(require_workspace_role("user"))) -> dict:
    try:
        return integration.get_status(workspace_id=ctx.workspace_id, user_id=ctx.user.id)
    except OAuthConfigError as e:
        raise _config_error(e)


@router.post("/auth-url")
def auth_url(ctx: WorkspaceRoleContext = Depends(require_workspace_role("user"))) -> dict:
    try:
        return integration.create_auth_url(workspace_id=ctx.workspace_id, user_id=ctx.user.id)
    except OAuthConfigError as e:
        raise _config_error(e)


@router.post("/exchange-code")
def exchange_code(
    body: ExchangeCodeRequest,
    ctx: WorkspaceRoleContext = Depends(require_workspace_role("user")),
) -> dict:
    try:
        return integration.exchange_code(
            workspace_id=ctx.workspace_id,
            user_id=ctx.user.id,
            code=body.code,
            state=body.state,
        )
    except integration.InvalidStateError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OAuthExchangeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except OAuthConfigError as e:
        raise _config_error(e)


@router.post("/disconnect")
def disconnect(ctx: WorkspaceRoleContext = Depends(require_workspace_role("user"))) -> dict:
    return integration.disconnect(workspace_id=ctx.workspace_id, user_id=ctx.user.id)
