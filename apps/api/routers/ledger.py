"""Rewards ledger read endpoints."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.rewards_ledger import LedgerSourceCategory
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services.rewards_ledger import UserNotFound, get_balance, query_entries

router = APIRouter()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@router.get("/entries")
async def list_ledger_entries(
    user_id: Optional[str] = Query(default=None),
    source_category: Optional[LedgerSourceCategory] = Query(default=None),
    since: Optional[datetime] = Query(default=None),
    until: Optional[datetime] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, user_id)
    result = await query_entries(
        db,
        user_id=scoped_user_id,
        source_category=source_category,
        since=_as_utc(since),
        until=_as_utc(until),
        page=page,
        limit=limit,
    )
    return result.to_dict()


@router.get("/balance")
async def ledger_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth, user_id)
    try:
        balance = await get_balance(scoped_user_id, db)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"user_id": scoped_user_id, "balance": balance}
