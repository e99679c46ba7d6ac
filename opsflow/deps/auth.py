from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from opsflow.services.auth_service import verify_token


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str
    department_id: Optional[str] = None


def _parse_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing Authorization header")

    parts = auth_header.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1].strip():
        raise HTTPException(status_code=401, detail="Invalid Authorization header")

    return parts[1].strip()


def require_auth(request: Request) -> Actor:
    token = _parse_bearer_token(request)

    try:
        claims = verify_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    department_id = claims.get("department_id")
    actor = Actor(
        user_id=str(claims.get("sub")),
        role=str(claims.get("role")).lower(),
        department_id=None if department_id is None else str(department_id),
    )

    request.state.user_id = actor.user_id
    request.state.role = actor.role
    request.state.department_id = actor.department_id

    return actor
