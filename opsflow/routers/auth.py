from typing import Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

import os
from opsflow.core.authorization import Role
from opsflow.services.auth_service import create_access_token

router = APIRouter(prefix="/auth", tags=["auth"])


class TokenRequest(BaseModel):
    user_id: str
    role: str = Role.EMPLOYEE.value
    department_id: Optional[str] = None


@router.post("/token")
def issue_token(payload: TokenRequest):
    env = os.getenv("ENV", "dev").lower()
    if env not in {"dev", "local", "test"}:
        raise HTTPException(status_code=404, detail="Not Found")
    try:
        role = Role(payload.role.lower())
        token = create_access_token(
            user_id=str(payload.user_id),
            role=role.value,
            department_id=payload.department_id,
        )
    except Exception as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    return {
        "access_token": token,
        "token_type": "bearer",
    }
