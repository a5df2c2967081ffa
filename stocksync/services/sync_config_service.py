"""
Read access to tenant sync configuration, plus the few fields the pipeline
owns: run counters, lost-event counter and reconciliation timestamps.
Counter updates are single UPDATE statements so concurrent workers never
lose increments.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from stocksync.core.enums import SyncTrigger
from stocksync.core.utils import utcnow
from stocksync.models import TenantSyncConfig

logger = logging.getLogger(__name__)


class SyncConfigService:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get_config(self, tenant_id: str) -> Optional[TenantSyncConfig]:
        """Load a tenant's configuration with accounts and deposits, detached from the session."""
        async with self.session_factory() as db:
            stmt = select(TenantSyncConfig).where(TenantSyncConfig.tenant_id == str(tenant_id))
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def list_enabled(self) -> List[TenantSyncConfig]:
        async with self.session_factory() as db:
            stmt = select(TenantSyncConfig).where(
                TenantSyncConfig.enabled.is_(True),
                TenantSyncConfig.reconcile_enabled.is_(True),
            ).order_by(TenantSyncConfig.id)
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def list_due_for_reconcile(self, now: Optional[datetime] = None) -> List[TenantSyncConfig]:
        now = now or utcnow()
        return [config for config in await self.list_enabled() if config.is_reconcile_due(now)]

    async def record_run(self, tenant_id: str, trigger: SyncTrigger, synced_at: Optional[datetime] = None,
                         success: bool = True) -> None:
        """Count one run of `trigger`; only a successful run moves `last_sync_at`."""
        column = getattr(TenantSyncConfig, trigger.counter_field)
        values = {column: column + 1}
        if success:
            values[TenantSyncConfig.last_sync_at] = synced_at or utcnow()
        else:
            values[TenantSyncConfig.failed_runs] = TenantSyncConfig.failed_runs + 1
        async with self.session_factory() as db:
            await db.execute(
                update(TenantSyncConfig)
                .where(TenantSyncConfig.tenant_id == str(tenant_id))
                .values(values)
            )
            await db.commit()

    async def record_inactive_event(self, tenant_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(TenantSyncConfig)
                .where(TenantSyncConfig.tenant_id == str(tenant_id))
                .values(inactive_events=TenantSyncConfig.inactive_events + 1)
            )
            await db.commit()

    async def record_lost_event(self, tenant_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(TenantSyncConfig)
                .where(TenantSyncConfig.tenant_id == str(tenant_id))
                .values(lost_events=TenantSyncConfig.lost_events + 1)
            )
            await db.commit()
        logger.warning(f"Lost event recorded for tenant {tenant_id}")

    async def mark_reconciled(self, tenant_id: str, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        async with self.session_factory() as db:
            stmt = select(TenantSyncConfig).where(TenantSyncConfig.tenant_id == str(tenant_id))
            config = (await db.execute(stmt)).scalar_one_or_none()
            if config is None:
                return
            config.mark_reconciled(now)
            await db.commit()
