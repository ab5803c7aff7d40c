"""Rewards ledger: the only writer of user coin balances.

Every balance change is posted as one append-only ``RewardLedgerEntry`` carrying
a before/after snapshot. The balance update is a compare-and-swap on
``users.coins`` inside the same transaction as the entry insert, so two posts
for the same user can never both observe the same ``balance_before``; the
loser of a race is rolled back and retried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.rewards_ledger import LedgerSourceAction, LedgerSourceCategory, RewardLedgerEntry
from models.user import User

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class LedgerError(Exception):
    """Base exception for ledger operations."""


class InsufficientFunds(LedgerError):
    """Raised when a post would leave a balance below zero under a non-negative policy."""

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(f"Insufficient coins for user {user_id}. Required: {required}, available: {available}.")


class ConcurrentModification(LedgerError):
    """Raised when the balance changed between read and write."""


class UserNotFound(LedgerError):
    """Raised when the ledger is asked to post for an unknown user."""


class IdempotencyConflict(LedgerError):
    """Raised when an idempotency key is reused for a different post.

    Carries the existing entry's owner, reference and delta as plain values so
    callers can inspect them after the session is rolled back.
    """

    def __init__(self, key: str, user_id: str, reference_id: Optional[str], delta: int):
        self.key = key
        self.user_id = user_id
        self.reference_id = reference_id
        self.delta = delta
        super().__init__(f"Idempotency key {key} reused with different semantics.")


@dataclass
class LedgerPage:
    entries: List[RewardLedgerEntry]
    total: int
    page: int
    limit: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
        }


@dataclass
class ChainBreak:
    entry_id: Optional[int]
    reason: str


@dataclass
class ChainReport:
    user_id: str
    entries_checked: int = 0
    live_balance: int = 0
    breaks: List[ChainBreak] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.breaks


async def get_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.coins).where(User.id == user_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise UserNotFound(f"User {user_id} not found.")
    return int(balance)


async def _find_by_idempotency_key(db: AsyncSession, key: str) -> Optional[RewardLedgerEntry]:
    result = await db.execute(select(RewardLedgerEntry).where(RewardLedgerEntry.idempotency_key == key))
    return result.scalar_one_or_none()


async def _post_once(
    db: AsyncSession,
    *,
    user_id: str,
    delta: int,
    source_category: LedgerSourceCategory,
    source_action: LedgerSourceAction,
    reference_id: Optional[str],
    message: Optional[str],
    idempotency_key: Optional[str],
    allow_negative: bool,
) -> RewardLedgerEntry:
    balance_before = await get_balance(user_id, db)
    balance_after = balance_before + delta
    if balance_after < 0 and delta < 0 and not allow_negative:
        raise InsufficientFunds(user_id, required=-delta, available=balance_before)

    earned = delta if delta > 0 else 0
    spent = -delta if delta < 0 else 0
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.coins == balance_before)
        .values(
            coins=balance_after,
            total_coins_earned=User.total_coins_earned + earned,
            total_coins_spent=User.total_coins_spent + spent,
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrentModification(f"Balance for user {user_id} changed during post.")

    entry = RewardLedgerEntry(
        user_id=user_id,
        delta=delta,
        balance_before=balance_before,
        balance_after=balance_after,
        source_category=source_category,
        source_action=source_action,
        reference_id=str(reference_id) if reference_id is not None else None,
        message=message,
        idempotency_key=idempotency_key,
    )
    db.add(entry)
    await db.flush()
    return entry


async def post_entry(
    db: AsyncSession,
    *,
    user_id: str,
    delta: int,
    source_category: LedgerSourceCategory,
    source_action: LedgerSourceAction,
    reference_id: Optional[str] = None,
    message: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    allow_negative: Optional[bool] = None,
) -> RewardLedgerEntry:
    """Atomically apply ``delta`` to a user's balance and append the ledger entry.

    Commits on success. On any failure the transaction is rolled back, so either
    both the balance change and the entry exist or neither does. When
    ``idempotency_key`` matches an existing entry, that entry is returned and no
    balance change is made.
    """
    delta = int(delta)
    if delta == 0:
        raise ValueError("Ledger delta must be non-zero.")
    if allow_negative is None:
        allow_negative = bool(settings.LEDGER_ALLOW_NEGATIVE_BALANCE)

    max_attempts = max(int(settings.LEDGER_POST_MAX_RETRIES), 1)
    for attempt in range(1, max_attempts + 1):
        try:
            if idempotency_key:
                existing = await _find_by_idempotency_key(db, idempotency_key)
                if existing is not None:
                    if existing.user_id != user_id or existing.delta != delta:
                        raise IdempotencyConflict(
                            idempotency_key, existing.user_id, existing.reference_id, int(existing.delta)
                        )
                    return existing
            entry = await _post_once(
                db,
                user_id=user_id,
                delta=delta,
                source_category=source_category,
                source_action=source_action,
                reference_id=reference_id,
                message=message,
                idempotency_key=idempotency_key,
                allow_negative=allow_negative,
            )
            await db.commit()
        except (ConcurrentModification, IntegrityError) as exc:
            await db.rollback()
            if attempt >= max_attempts:
                if isinstance(exc, IntegrityError):
                    raise ConcurrentModification(f"Ledger post for user {user_id} lost a race.") from exc
                raise
            logger.info("ledger_post_retry user=%s attempt=%s reason=%s", user_id, attempt, exc.__class__.__name__)
            continue
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "ledger_post user=%s delta=%s category=%s action=%s balance_after=%s entry=%s",
            user_id,
            delta,
            source_category.value,
            source_action.value,
            entry.balance_after,
            entry.id,
        )
        return entry

    raise ConcurrentModification(f"Ledger post for user {user_id} exhausted retries.")


async def query_entries(
    db: AsyncSession,
    *,
    user_id: Optional[str] = None,
    source_category: Optional[LedgerSourceCategory] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = 1,
    limit: int = 50,
) -> LedgerPage:
    """Return ledger entries newest-first with filtering and pagination."""
    conditions = []
    if user_id:
        conditions.append(RewardLedgerEntry.user_id == user_id)
    if source_category is not None:
        conditions.append(RewardLedgerEntry.source_category == source_category)
    if since is not None:
        conditions.append(RewardLedgerEntry.created_at >= since)
    if until is not None:
        conditions.append(RewardLedgerEntry.created_at <= until)

    page = max(1, int(page or 1))
    limit = min(MAX_PAGE_SIZE, max(1, int(limit or 50)))

    total_result = await db.execute(select(func.count(RewardLedgerEntry.id)).where(*conditions))
    total = int(total_result.scalar() or 0)

    result = await db.execute(
        select(RewardLedgerEntry)
        .where(*conditions)
        .order_by(RewardLedgerEntry.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return LedgerPage(entries=list(result.scalars().all()), total=total, page=page, limit=limit)


async def verify_chain(
    user_id: str,
    db: AsyncSession,
    *,
    initial_balance: Optional[int] = None,
) -> ChainReport:
    """Check that a user's entries form an unbroken before/after chain ending at the live balance."""
    report = ChainReport(user_id=user_id, live_balance=await get_balance(user_id, db))
    result = await db.execute(
        select(RewardLedgerEntry)
        .where(RewardLedgerEntry.user_id == user_id)
        .order_by(RewardLedgerEntry.id.asc())
    )
    previous_after = initial_balance
    for entry in result.scalars().all():
        report.entries_checked += 1
        if previous_after is not None and entry.balance_before != previous_after:
            report.breaks.append(
                ChainBreak(entry.id, f"balance_before {entry.balance_before} != previous balance_after {previous_after}")
            )
        if entry.balance_after != entry.balance_before + entry.delta:
            report.breaks.append(ChainBreak(entry.id, "balance_after does not equal balance_before + delta"))
        previous_after = entry.balance_after

    if report.entries_checked and previous_after != report.live_balance:
        report.breaks.append(
            ChainBreak(None, f"live balance {report.live_balance} != last balance_after {previous_after}")
        )
    return report
