"""
Reconciliation sweep.

Safety net for webhooks that never arrived or were dropped. On every tick,
for each tenant whose reconciliation is due:
    - pick mirror rows not synchronized within the tenant's interval (or never)
    - skip products already swept within the cooldown window
    - re-read principal balances and compare them with the last successful
      ledger entry; only run the synchronizer when something changed
Errors are counted per product and per tenant and never stop the sweep.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from stocksync.core.config import Settings, get_settings
from stocksync.core.enums import SyncTrigger
from stocksync.core.exceptions import CompositeProductUnsupported, StockSyncError
from stocksync.core.utils import utcnow
from stocksync.models import TenantSyncConfig
from stocksync.schemas.sync import ReconciliationSummary
from stocksync.services.idempotency_ledger import IdempotencyLedger
from stocksync.services.stock_aggregator import StockAggregator
from stocksync.services.stock_mirror_service import StockMirrorService
from stocksync.services.stock_synchronizer import StockSynchronizer
from stocksync.services.sync_config_service import SyncConfigService

logger = logging.getLogger(__name__)

SCHEDULED_ORIGIN = "scheduled"


class ReconciliationService:

    def __init__(
        self,
        config_service: SyncConfigService,
        mirror: StockMirrorService,
        ledger: IdempotencyLedger,
        aggregator: StockAggregator,
        synchronizer: StockSynchronizer,
        settings: Optional[Settings] = None,
    ):
        self.config_service = config_service
        self.mirror = mirror
        self.ledger = ledger
        self.aggregator = aggregator
        self.synchronizer = synchronizer
        self.settings = settings or get_settings()
        self._running = False
        self.last_summary: Optional[ReconciliationSummary] = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_sweep(self, now: Optional[datetime] = None) -> Optional[ReconciliationSummary]:
        """
        Run one sweep over every due tenant.

        Returns None without doing anything if a previous sweep is still running.
        """
        if self._running:
            logger.info("Previous reconciliation sweep still running; skipping this tick")
            return None

        self._running = True
        now = now or utcnow()
        summary = ReconciliationSummary(started_at=now)
        try:
            tenants = await self.config_service.list_due_for_reconcile(now)
            summary.tenants = len(tenants)
            if tenants:
                logger.info(f"Reconciliation sweep: {len(tenants)} tenant(s) due")
            for config in tenants:
                try:
                    await self._reconcile_tenant(config, now, summary)
                except Exception:
                    summary.errors += 1
                    logger.exception(f"Reconciliation of tenant {config.tenant_id} failed")
                finally:
                    await self.config_service.mark_reconciled(config.tenant_id, now)
        finally:
            self._running = False
            summary.finished_at = utcnow()
            self.last_summary = summary

        if summary.tenants:
            logger.info(f"Reconciliation sweep done: checked={summary.checked} synced={summary.synced} "
                        f"unchanged={summary.unchanged} skipped={summary.skipped} "
                        f"ignored={summary.ignored} errors={summary.errors}")
        return summary

    async def _reconcile_tenant(self, config: TenantSyncConfig, now: datetime,
                                summary: ReconciliationSummary) -> None:
        if not config.is_complete():
            logger.info(f"Tenant {config.tenant_id} configuration incomplete; nothing to reconcile")
            return

        stale = await self.mirror.list_stale(
            config.tenant_id,
            older_than=now - config.reconcile_interval,
            limit=self.settings.RECONCILE_MAX_PRODUCTS,
        )
        logger.info(f"Tenant {config.tenant_id}: {len(stale)} stale product(s)")

        for row in stale:
            summary.checked += 1
            try:
                await self._reconcile_product(config.tenant_id, row.product_ref, now, summary)
            except CompositeProductUnsupported:
                summary.ignored += 1
                await self.mirror.touch(config.tenant_id, row.product_ref, now)
            except StockSyncError as e:
                summary.errors += 1
                logger.warning(f"Reconciliation of {row.product_ref} (tenant {config.tenant_id}) failed: {str(e)}")

    async def _reconcile_product(self, tenant_id: str, product_ref: str, now: datetime,
                                 summary: ReconciliationSummary) -> None:
        cooldown_since = now - timedelta(minutes=self.settings.RECONCILE_COOLDOWN_MINUTES)
        if await self.ledger.has_recent(tenant_id, product_ref, SyncTrigger.SCHEDULED, cooldown_since):
            summary.skipped += 1
            return

        if await self._unchanged(tenant_id, product_ref):
            summary.unchanged += 1
            await self.mirror.touch(tenant_id, product_ref, now)
            return

        await self.synchronizer.synchronize(product_ref, tenant_id, origin=SCHEDULED_ORIGIN,
                                            trigger=SyncTrigger.SCHEDULED)
        summary.synced += 1

    async def _unchanged(self, tenant_id: str, product_ref: str) -> bool:
        last = await self.ledger.last_successful(tenant_id, product_ref)
        if last is None or not last.balances:
            return False
        scope = await self.aggregator.principal_scope(tenant_id)
        aggregation = await self.aggregator.aggregate(
            tenant_id, product_ref, accounts=list(scope.keys()), deposits_by_account=scope,
        )
        if aggregation.errors:
            return False
        current: Dict[str, int] = aggregation.deposit_balances()
        previous = {str(k): int(v) for k, v in last.balances.items()}
        return current == previous
