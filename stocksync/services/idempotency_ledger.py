"""
Idempotency ledger.

Every event gets a fingerprint (product, event id and, when present, deposit
and quantity). An event is *claimed* by inserting its row before any side
effect; the unique constraint on (tenant, fingerprint) makes a second claim
fail, which is how duplicates are detected even when two deliveries of the
same event race each other. Rows left `retryable` by a failed attempt can be
claimed again so broker retries still run, and so can rows still `processing`
whose claim is older than the lease (the worker holding it was interrupted
or crashed).
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from stocksync.core.enums import LedgerStatus, SyncTrigger
from stocksync.core.utils import utcnow
from stocksync.integrations.events import StockEvent
from stocksync.models import ProcessedEvent
from stocksync.schemas.sync import SyncResult

logger = logging.getLogger(__name__)


def build_fingerprint(product_ref: str, event_id: str, deposit_id: Optional[str] = None,
                      quantity: Optional[int] = None) -> str:
    parts = [str(product_ref), str(event_id)]
    if deposit_id:
        parts.append(f"dep={deposit_id}")
    if quantity is not None:
        parts.append(f"qty={quantity}")
    return "|".join(parts)


class IdempotencyLedger:

    def __init__(self, session_factory: async_sessionmaker, claim_lease_seconds: int = 600):
        self.session_factory = session_factory
        self.claim_lease = timedelta(seconds=claim_lease_seconds)

    @staticmethod
    def fingerprint(event: StockEvent) -> str:
        return build_fingerprint(event.product_ref, event.event_id, event.deposit_id, event.quantity)

    async def claim(self, tenant_id: str, event: StockEvent, trigger: SyncTrigger,
                    origin: Optional[str] = None) -> bool:
        """
        Reserve the event's fingerprint.

        Returns:
            bool: False if the fingerprint is already recorded (duplicate)
        """
        fingerprint = self.fingerprint(event)
        entry = ProcessedEvent(
            tenant_id=str(tenant_id),
            fingerprint=fingerprint,
            event_id=str(event.event_id),
            product_ref=str(event.product_ref),
            deposit_id=event.deposit_id,
            account_ref=event.account_ref,
            quantity=event.quantity,
            kind=event.kind.value if event.kind else None,
            trigger=trigger.value,
            origin=origin,
            status=LedgerStatus.PROCESSING.value,
        )
        async with self.session_factory() as db:
            db.add(entry)
            try:
                await db.commit()
                return True
            except IntegrityError:
                await db.rollback()

        return await self._reclaim(tenant_id, fingerprint)

    async def _reclaim(self, tenant_id: str, fingerprint: str) -> bool:
        now = utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(ProcessedEvent)
                .where(
                    ProcessedEvent.tenant_id == str(tenant_id),
                    ProcessedEvent.fingerprint == fingerprint,
                    or_(
                        ProcessedEvent.status == LedgerStatus.RETRYABLE.value,
                        and_(
                            ProcessedEvent.status == LedgerStatus.PROCESSING.value,
                            ProcessedEvent.claimed_at < now - self.claim_lease,
                        ),
                    ),
                )
                .values(
                    status=LedgerStatus.PROCESSING.value,
                    attempts=ProcessedEvent.attempts + 1,
                    error=None,
                    claimed_at=now,
                )
            )
            await db.commit()
        if result.rowcount == 1:
            logger.info(f"Re-claimed ledger entry {fingerprint} for tenant {tenant_id}")
            return True
        return False

    async def complete(self, tenant_id: str, fingerprint: str, result: SyncResult) -> None:
        status = LedgerStatus.SUCCEEDED if result.success else LedgerStatus.FAILED
        await self._update(
            tenant_id, fingerprint,
            status=status.value,
            success=result.success,
            reason="partial" if result.success and result.failed_writes else None,
            error="; ".join(result.errors) or None,
            balances=result.per_deposit_balances,
            total=result.total,
            shared_writes=[outcome.model_dump() for outcome in result.shared_writes],
            processed_at=utcnow(),
        )

    async def fail(self, tenant_id: str, fingerprint: str, reason: str, error: str,
                   retryable: bool = False) -> None:
        status = LedgerStatus.RETRYABLE if retryable else LedgerStatus.FAILED
        await self._update(
            tenant_id, fingerprint,
            status=status.value,
            success=False,
            reason=reason,
            error=error[:4000] if error else None,
            processed_at=utcnow(),
        )

    async def skip(self, tenant_id: str, fingerprint: str, reason: str) -> None:
        """Close a claimed entry that was deliberately not synchronized."""
        await self._update(
            tenant_id, fingerprint,
            status=LedgerStatus.SKIPPED.value,
            reason=reason,
            processed_at=utcnow(),
        )

    async def _update(self, tenant_id: str, fingerprint: str, **values) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(ProcessedEvent)
                .where(
                    ProcessedEvent.tenant_id == str(tenant_id),
                    ProcessedEvent.fingerprint == fingerprint,
                )
                .values(**values)
            )
            await db.commit()

    async def record(self, tenant_id: str, event_id: str, product_ref: str, trigger: SyncTrigger,
                     origin: Optional[str] = None, result: Optional[SyncResult] = None,
                     reason: Optional[str] = None, error: Optional[str] = None) -> None:
        """Append a finished audit entry for a run that did not come through the queue."""
        success = bool(result and result.success)
        entry = ProcessedEvent(
            tenant_id=str(tenant_id),
            fingerprint=build_fingerprint(product_ref, event_id),
            event_id=event_id,
            product_ref=str(product_ref),
            trigger=trigger.value,
            origin=origin,
            status=(LedgerStatus.SUCCEEDED if success else LedgerStatus.FAILED).value,
            success=success,
            reason=reason,
            error=error or ("; ".join(result.errors) if result and result.errors else None),
            balances=result.per_deposit_balances if result else None,
            total=result.total if result else None,
            shared_writes=[outcome.model_dump() for outcome in result.shared_writes] if result else None,
            processed_at=utcnow(),
        )
        async with self.session_factory() as db:
            db.add(entry)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.warning(f"Audit entry {entry.fingerprint} already recorded for tenant {tenant_id}")

    async def has_recent(self, tenant_id: str, product_ref: str, trigger: SyncTrigger, since: datetime) -> bool:
        async with self.session_factory() as db:
            stmt = select(ProcessedEvent.id).where(
                ProcessedEvent.tenant_id == str(tenant_id),
                ProcessedEvent.product_ref == str(product_ref),
                ProcessedEvent.trigger == trigger.value,
                ProcessedEvent.created_at >= since,
            ).limit(1)
            return (await db.execute(stmt)).first() is not None

    async def last_successful(self, tenant_id: str, product_ref: str) -> Optional[ProcessedEvent]:
        async with self.session_factory() as db:
            stmt = (
                select(ProcessedEvent)
                .where(
                    ProcessedEvent.tenant_id == str(tenant_id),
                    ProcessedEvent.product_ref == str(product_ref),
                    ProcessedEvent.success.is_(True),
                    ProcessedEvent.balances.is_not(None),
                )
                .order_by(ProcessedEvent.processed_at.desc(), ProcessedEvent.id.desc())
                .limit(1)
            )
            return (await db.execute(stmt)).scalar_one_or_none()

    async def history(self, tenant_id: str, since: Optional[datetime] = None,
                      limit: int = 50) -> List[ProcessedEvent]:
        async with self.session_factory() as db:
            stmt = select(ProcessedEvent).where(ProcessedEvent.tenant_id == str(tenant_id))
            if since is not None:
                stmt = stmt.where(ProcessedEvent.created_at >= since)
            stmt = stmt.order_by(ProcessedEvent.created_at.desc(), ProcessedEvent.id.desc()).limit(limit)
            return list((await db.execute(stmt)).scalars().all())
