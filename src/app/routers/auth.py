# src/app/routers/auth.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from src.app.deps import CurrentUser, get_current_user, get_user_repository
from src.app.infra.db.base import UserRepository

router = APIRouter(prefix="/auth", tags=["auth"])


class MeResponse(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    is_admin: bool = False


@router.get("/me", response_model=MeResponse)
async def me(
    user: CurrentUser = Depends(get_current_user),
    users: UserRepository = Depends(get_user_repository),
) -> MeResponse:
    account = await run_in_threadpool(users.get_by_id, user.user_id)
    return MeResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        is_admin=bool(account and account.is_admin),
    )
