"""Identity and workspace scope of the authenticated user."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from tezeus.api.auth import CurrentUser, get_current_user
from tezeus.infra.db import txn
from tezeus.infra.repositories.members_repository import list_user_workspaces

router = APIRouter(tags=["me"])


@router.get("/me")
def get_me(user: CurrentUser = Depends(get_current_user)) -> dict:
    """Return the user with the workspaces they belong to and their role in each."""
    with txn() as cur:
        workspaces = list_user_workspaces(cur, user_id=user.id)

    return {
        "id": user.id,
        "auth_user_id": user.auth_user_id,
        "email": user.email,
        "name": user.name,
        "profile": user.profile,
        "workspaces": workspaces,
    }
