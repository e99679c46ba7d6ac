from enum import Enum
from typing import Optional

from fastapi import Depends, HTTPException, Request

from opsflow.deps.auth import Actor, require_auth
from opsflow.models.workflow import AssignedRole, StepState


class Role(Enum):
    ADMIN = "admin"
    DEPARTMENT_HEAD = "department_head"
    MANAGER = "manager"
    EMPLOYEE = "employee"


_RANK = {
    Role.EMPLOYEE: 1,
    Role.MANAGER: 2,
    Role.DEPARTMENT_HEAD: 2,
    Role.ADMIN: 3,
}


def actor_role(actor: Actor) -> Role:
    try:
        return Role(actor.role)
    except ValueError as exc:
        raise HTTPException(status_code=403, detail="Invalid role claim") from exc


def require_role(role: Role):
    def dependency(request: Request, actor: Actor = Depends(require_auth)) -> Actor:
        user_role = actor_role(actor)

        if _RANK[user_role] < _RANK[role]:
            raise HTTPException(status_code=403, detail="Insufficient role")

        request.state.role = user_role.value
        return actor

    return dependency


def can_act_on_step(actor: Actor, step: Optional[StepState]) -> bool:
    """Admins act on any step; otherwise the assignee, or a role match when unassigned."""
    if actor_role(actor) is Role.ADMIN:
        return True
    if step is None:
        return False
    if step.assigned_to:
        return str(step.assigned_to) == actor.user_id
    if step.assigned_role == AssignedRole.SPECIFIC_USER.value:
        return False
    if step.assigned_department and actor.department_id != step.assigned_department:
        return False
    return step.assigned_role == actor.role
