"""Server billing lifecycle reconciliation.

One reconciliation pass runs four phases in a fixed order:

1. backfill   - give every active/suspended server without ``expiry_at`` one
2. billing    - charge due active servers through the rewards ledger and
                advance ``expiry_at`` from the previous due date
3. suspend    - suspend active servers that are still due after billing
4. delete     - delete servers suspended for longer than the grace period

Suspend must observe post-billing expiry and delete must observe this pass's
suspensions, so the order is not configurable. Every server is handled and
committed on its own; a failure is counted and logged, and the server is picked
up again on the next pass because every selection predicate is re-evaluated
from scratch.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import and_, inspect, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.rewards_ledger import LedgerSourceAction, LedgerSourceCategory
from models.server import ManagedServer, ServerStatus
from services.billing_cycle import BillingCycle, add_cycle, parse_billing_cycle
from services.provisioning import Provisioner, get_provisioner
from services.rewards_ledger import IdempotencyConflict, LedgerError, post_entry

logger = logging.getLogger(__name__)

MAX_PHASE_LOGS = 50

REASON_INSUFFICIENT_BALANCE = "Insufficient balance"
REASON_BILLING_EXPIRED = "Billing expired"


class LifecycleError(RuntimeError):
    """Base error for lifecycle reconciliation."""


class StoreUnavailable(LifecycleError):
    """Raised when the server store cannot be reached."""


@dataclass
class PhaseResult:
    processed: int = 0
    mutated: int = 0
    errors: int = 0
    logs: List[str] = field(default_factory=list)

    def log(self, message: str) -> None:
        if len(self.logs) < MAX_PHASE_LOGS:
            self.logs.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "mutated": self.mutated,
            "errors": self.errors,
            "logs": list(self.logs),
        }


@dataclass
class BillingResult(PhaseResult):
    charged: int = 0
    failed_charges: int = 0
    deferred: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "charged": self.charged,
                "failed_charges": self.failed_charges,
                "deferred": list(self.deferred),
                "conflicts": list(self.conflicts),
            }
        )
        return payload


@dataclass
class PassSummary:
    now: datetime
    backfill: PhaseResult
    billing: BillingResult
    suspend: PhaseResult
    delete: PhaseResult

    @property
    def counts(self) -> Dict[str, int]:
        return {
            "backfilled": self.backfill.mutated,
            "billed": self.billing.charged,
            "suspended": self.suspend.mutated,
            "deleted": self.delete.mutated,
        }

    @property
    def errors(self) -> int:
        return self.backfill.errors + self.billing.errors + self.suspend.errors + self.delete.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.now.isoformat(),
            "backfilled": self.backfill.mutated,
            "billing": self.billing.to_dict(),
            "suspend": self.suspend.to_dict(),
            "delete": self.delete.to_dict(),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def billing_idempotency_key(server_id: str, due_at: datetime) -> str:
    return f"billing:{server_id}:{_as_utc(due_at).isoformat()}"


async def _select_ids(db: AsyncSession, query) -> List[str]:
    try:
        result = await db.execute(query)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise StoreUnavailable(f"Server store query failed: {exc}") from exc
    return list(result.scalars().all())


async def _load_server(db: AsyncSession, server_id: str) -> Optional[ManagedServer]:
    return await db.get(ManagedServer, server_id, populate_existing=True)


async def _record_failure(db: AsyncSession, result: PhaseResult, phase: str, server_id: str, exc: Exception) -> None:
    await db.rollback()
    result.errors += 1
    if isinstance(exc, SQLAlchemyError):
        exc = StoreUnavailable(str(exc))
    result.log(f"{phase} error for {server_id}: {exc}")
    logger.warning("lifecycle_%s_failed server=%s error=%s", phase, server_id, exc)


async def ensure_expiry(server: ManagedServer, db: AsyncSession, *, now: Optional[datetime] = None) -> datetime:
    """Set ``expiry_at`` to one cycle from ``now`` when missing and return it."""
    if server.expiry_at is not None:
        return _as_utc(server.expiry_at)
    now = _as_utc(now) or _utcnow()
    expiry = add_cycle(now, server.billing_cycle)
    server.expiry_at = expiry
    await db.commit()
    return expiry


async def backfill_expiry(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> PhaseResult:
    """Backfill ``expiry_at`` for up to ``limit`` servers missing it.

    Rows that fail (e.g. an invalid billing cycle) are skipped for the rest of
    the pass so they cannot starve newer servers behind them.
    """
    now = _as_utc(now) or _utcnow()
    batch_size = max(int(limit if limit is not None else settings.LIFECYCLE_BACKFILL_BATCH_SIZE), 1)
    result = PhaseResult()
    seen: List[str] = []

    while result.mutated < batch_size:
        query = (
            select(ManagedServer.id)
            .where(
                ManagedServer.expiry_at.is_(None),
                ManagedServer.status.in_([ServerStatus.ACTIVE, ServerStatus.SUSPENDED]),
            )
            .order_by(ManagedServer.created_at.asc(), ManagedServer.id.asc())
            .limit(batch_size - result.mutated)
        )
        if seen:
            query = query.where(ManagedServer.id.not_in(seen))
        try:
            server_ids = await _select_ids(db, query)
        except StoreUnavailable as exc:
            result.errors += 1
            result.log(f"backfill fatal: {exc}")
            return result
        if not server_ids:
            break

        for server_id in server_ids:
            seen.append(server_id)
            result.processed += 1
            try:
                server = await _load_server(db, server_id)
                if server is None or server.expiry_at is not None:
                    continue
                await ensure_expiry(server, db, now=now)
                result.mutated += 1
            except Exception as exc:
                await _record_failure(db, result, "backfill", server_id, exc)
    return result


async def _charge_cycle(db: AsyncSession, server: ManagedServer, due_at: datetime, price: int) -> None:
    await post_entry(
        db,
        user_id=server.user_id,
        delta=-price,
        source_category=LedgerSourceCategory.BILLING,
        source_action=LedgerSourceAction.SPEND,
        reference_id=server.id,
        message=f"Server {server.id} billing ({server.billing_cycle})",
        idempotency_key=billing_idempotency_key(server.id, due_at),
    )


async def _bill_server(
    db: AsyncSession,
    server: ManagedServer,
    cycle: BillingCycle,
    *,
    now: datetime,
    max_cycles: int,
    result: BillingResult,
) -> bool:
    """Charge every due cycle of one server. Returns True when it mutated the server."""
    server_id, user_id = server.id, server.user_id
    due_at = _as_utc(server.expiry_at)
    price = max(int(server.price_per_cycle or 0), 0)
    charged_here = 0

    while due_at <= now:
        if charged_here >= max_cycles:
            result.deferred.append(server.id)
            result.log(f"Server {server.id} reached {max_cycles} cycles this pass; remaining cycles deferred")
            break

        next_due = add_cycle(due_at, cycle)
        charged_amount = price
        if price > 0:
            try:
                await _charge_cycle(db, server, due_at, price)
            except IdempotencyConflict as exc:
                if exc.user_id != user_id or exc.reference_id != server_id:
                    result.conflicts.append(server_id)
                    raise
                # Cycle already paid at an earlier price.
                charged_amount = -exc.delta
                result.log(f"Cycle {due_at.isoformat()} of {server_id} already charged {charged_amount}")
            except LedgerError as exc:
                # Rolled back by the ledger; reload before recording the overdue amount.
                await db.refresh(server)
                cycles_behind = max(1, math.ceil((now - due_at) / cycle.duration))
                server.overdue_amount = price * cycles_behind
                await db.commit()
                result.failed_charges += 1
                result.log(f"Charge failed for {server.id}: {exc}")
                logger.info("lifecycle_charge_failed server=%s user=%s error=%s", server.id, server.user_id, exc)
                return True
            if inspect(server).expired_attributes:
                await db.refresh(server)

        server.expiry_at = next_due
        server.last_billed_at = now
        server.total_billed = int(server.total_billed or 0) + charged_amount
        server.overdue_amount = 0
        await db.commit()
        charged_here += 1
        result.charged += 1
        due_at = next_due

    return charged_here > 0


async def process_billing_cycles(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    max_cycles: Optional[int] = None,
) -> BillingResult:
    """Charge every active server whose ``expiry_at`` has passed.

    Expiry advances from the previous due date, never from ``now``, so a server
    charged N times ends at ``original_expiry + N * cycle`` however many passes it
    took. A failed charge leaves ``expiry_at`` untouched.
    """
    now = _as_utc(now) or _utcnow()
    cycle_cap = max(int(max_cycles if max_cycles is not None else settings.LIFECYCLE_MAX_CYCLES_PER_PASS), 1)
    result = BillingResult()

    try:
        server_ids = await _select_ids(
            db,
            select(ManagedServer.id)
            .where(
                ManagedServer.status == ServerStatus.ACTIVE,
                ManagedServer.expiry_at.is_not(None),
                ManagedServer.expiry_at <= now,
            )
            .order_by(ManagedServer.expiry_at.asc(), ManagedServer.id.asc()),
        )
    except StoreUnavailable as exc:
        result.errors += 1
        result.log(f"billing fatal: {exc}")
        return result

    for server_id in server_ids:
        result.processed += 1
        try:
            server = await _load_server(db, server_id)
            if server is None or server.status != ServerStatus.ACTIVE or server.expiry_at is None:
                continue
            if _as_utc(server.expiry_at) > now:
                continue
            cycle = parse_billing_cycle(server.billing_cycle)
            if await _bill_server(db, server, cycle, now=now, max_cycles=cycle_cap, result=result):
                result.mutated += 1
        except Exception as exc:
            await _record_failure(db, result, "billing", server_id, exc)
    return result


async def suspend_expired(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    provisioner: Optional[Provisioner] = None,
    exclude_ids: Iterable[str] = (),
) -> PhaseResult:
    """Suspend active servers whose ``expiry_at`` is still due after billing."""
    now = _as_utc(now) or _utcnow()
    provisioner = provisioner or get_provisioner()
    excluded = set(exclude_ids)
    result = PhaseResult()

    try:
        server_ids = await _select_ids(
            db,
            select(ManagedServer.id)
            .where(
                ManagedServer.status == ServerStatus.ACTIVE,
                ManagedServer.expiry_at.is_not(None),
                ManagedServer.expiry_at <= now,
            )
            .order_by(ManagedServer.expiry_at.asc(), ManagedServer.id.asc()),
        )
    except StoreUnavailable as exc:
        result.errors += 1
        result.log(f"suspend fatal: {exc}")
        return result

    for server_id in server_ids:
        if server_id in excluded:
            continue
        result.processed += 1
        try:
            server = await _load_server(db, server_id)
            if server is None or server.status != ServerStatus.ACTIVE:
                continue
            if server.expiry_at is None or _as_utc(server.expiry_at) > now:
                continue

            try:
                await provisioner.suspend_server(server)
            except Exception as exc:
                result.log(f"Suspend panel failed for {server_id}: {exc}")
                logger.warning("lifecycle_panel_suspend_failed server=%s error=%s", server_id, exc)

            server.status = ServerStatus.SUSPENDED
            server.suspended_at = now
            server.suspension_reason = (
                REASON_INSUFFICIENT_BALANCE if int(server.overdue_amount or 0) > 0 else REASON_BILLING_EXPIRED
            )
            await db.commit()
            result.mutated += 1
            logger.info("lifecycle_suspended server=%s reason=%s", server_id, server.suspension_reason)
        except Exception as exc:
            await _record_failure(db, result, "suspend", server_id, exc)
    return result


async def delete_after_grace(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    provisioner: Optional[Provisioner] = None,
    grace_period: Optional[timedelta] = None,
) -> PhaseResult:
    """Delete servers suspended longer than the grace period.

    A server is marked ``pending_deletion`` before the panel is asked to delete
    it and only becomes ``deleted`` once the panel confirms. Servers left
    pending by a failed panel call are retried on the next pass.
    """
    now = _as_utc(now) or _utcnow()
    provisioner = provisioner or get_provisioner()
    if grace_period is None:
        grace_period = timedelta(hours=max(int(settings.LIFECYCLE_GRACE_PERIOD_HOURS), 0))
    cutoff = now - grace_period
    result = PhaseResult()

    try:
        server_ids = await _select_ids(
            db,
            select(ManagedServer.id)
            .where(
                or_(
                    and_(
                        ManagedServer.status == ServerStatus.SUSPENDED,
                        ManagedServer.suspended_at.is_not(None),
                        ManagedServer.suspended_at <= cutoff,
                    ),
                    ManagedServer.status == ServerStatus.PENDING_DELETION,
                )
            )
            .order_by(ManagedServer.suspended_at.asc(), ManagedServer.id.asc()),
        )
    except StoreUnavailable as exc:
        result.errors += 1
        result.log(f"delete fatal: {exc}")
        return result

    for server_id in server_ids:
        result.processed += 1
        try:
            server = await _load_server(db, server_id)
            if server is None or server.status not in (ServerStatus.SUSPENDED, ServerStatus.PENDING_DELETION):
                continue
            if server.status == ServerStatus.SUSPENDED:
                if server.suspended_at is None or _as_utc(server.suspended_at) > cutoff:
                    continue
                server.status = ServerStatus.PENDING_DELETION
                await db.commit()

            try:
                await provisioner.delete_server(server)
            except Exception as exc:
                result.errors += 1
                result.log(f"Error deleting {server_id}: {exc}")
                logger.warning("lifecycle_panel_delete_failed server=%s error=%s", server_id, exc)
                continue

            server.status = ServerStatus.DELETED
            server.deleted_at = now
            await db.commit()
            result.mutated += 1
            logger.info("lifecycle_deleted server=%s", server_id)
        except Exception as exc:
            await _record_failure(db, result, "delete", server_id, exc)
    return result


async def run_reconciliation_pass(
    db: AsyncSession,
    *,
    now: Optional[datetime] = None,
    provisioner: Optional[Provisioner] = None,
    grace_period: Optional[timedelta] = None,
) -> PassSummary:
    """Run backfill, billing, suspension and deletion once, in that order."""
    now = _as_utc(now) or _utcnow()
    provisioner = provisioner or get_provisioner()

    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        raise StoreUnavailable(f"Cannot begin reconciliation pass: {exc}") from exc

    backfill = await backfill_expiry(db, now=now)
    billing = await process_billing_cycles(db, now=now)
    suspend = await suspend_expired(
        db,
        now=now,
        provisioner=provisioner,
        exclude_ids=[*billing.deferred, *billing.conflicts],
    )
    delete = await delete_after_grace(db, now=now, provisioner=provisioner, grace_period=grace_period)

    summary = PassSummary(now=now, backfill=backfill, billing=billing, suspend=suspend, delete=delete)
    logger.info(
        "lifecycle_pass backfilled=%s billed=%s suspended=%s deleted=%s errors=%s",
        summary.counts["backfilled"],
        summary.counts["billed"],
        summary.counts["suspended"],
        summary.counts["deleted"],
        summary.errors,
    )
    return summary

