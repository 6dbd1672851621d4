"""RBAC (Role-Based Access Control) by workspace.

Provides:
- Role hierarchy: user < admin < master
- require_workspace_role(): FastAPI dependency for workspace-scoped routes

The workspace comes from the X-Workspace-Id header. Users whose system
profile is ``master`` act as master in every workspace.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from fastapi import Depends, Header, HTTPException

from tezeus.api.auth import CurrentUser, get_current_user
from tezeus.infra.db import txn
from tezeus.infra.repositories.members_repository import get_member_role

# Lower index = less privilege
ROLE_HIERARCHY = ["user", "admin", "master"]


@dataclass
class WorkspaceRoleContext:
    """Context returned by require_workspace_role."""

    user: CurrentUser
    workspace_id: str
    role: str


def _role_level(role: str) -> int:
    try:
        return ROLE_HIERARCHY.index(role)
    except ValueError:
        return -1


def _get_user_role_for_workspace(user: CurrentUser, workspace_id: str) -> str | None:
    if user.profile == "master":
        return "master"
    with txn() as cur:
        return get_member_role(cur, workspace_id=workspace_id, user_id=user.id)


def require_workspace_role(min_role: str) -> Callable[..., WorkspaceRoleContext]:
    """Create a dependency that requires a minimum role in the workspace.

    Usage:
        @router.post("/something")
        def endpoint(ctx: WorkspaceRoleContext = Depends(require_workspace_role("user"))):
            ...
    """
    min_level = _role_level(min_role)
    if min_level < 0:
        raise ValueError(f"Invalid role: {min_role}")

    def dependency(
        workspace_id: str = Header(..., alias="X-Workspace-Id"),
        user: CurrentUser = Depends(get_current_user),
    ) -> WorkspaceRoleContext:
        role = _get_user_role_for_workspace(user, workspace_id)

        if role is None:
            raise HTTPException(status_code=403, detail="No access to workspace")

        if _role_level(role) < min_level:
            raise HTTPException(status_code=403, detail="Insufficient role")

        return WorkspaceRoleContext(user=user, workspace_id=workspace_id, role=role)

    return dependency
