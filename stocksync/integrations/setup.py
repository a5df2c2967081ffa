"""
Wires the stock pipeline together at application startup.

Shared mutable state (the rate gate and both TTL caches) is created here
once and passed into the components that need it.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from stocksync.core.config import Settings, get_settings
from stocksync.core.rate_gate import RateGate
from stocksync.core.ttl_cache import TTLCache
from stocksync.integrations.base import StockPlatform
from stocksync.integrations.dispatch import Dispatcher, build_dispatcher
from stocksync.integrations.events import StockEvent
from stocksync.services.credential_service import CredentialService
from stocksync.services.erp import ERPAuthManager, ERPClient, ERPStockAdapter, ReservedStockInference
from stocksync.services.event_normalizer import EventNormalizer
from stocksync.services.event_processor import EventProcessor
from stocksync.services.feedback_suppressor import FeedbackLoopSuppressor
from stocksync.services.idempotency_ledger import IdempotencyLedger
from stocksync.services.reconciliation_service import ReconciliationService
from stocksync.services.stock_aggregator import StockAggregator
from stocksync.services.stock_mirror_service import StockMirrorService
from stocksync.services.stock_synchronizer import StockSynchronizer
from stocksync.services.sync_config_service import SyncConfigService
from stocksync.services.webhook_intake import WebhookIntake

logger = logging.getLogger(__name__)


@dataclass
class SyncPipeline:
    settings: Settings
    rate_gate: RateGate
    reserve_cache: TTLCache
    suppression_cache: TTLCache
    config_service: SyncConfigService
    credentials: CredentialService
    mirror: StockMirrorService
    ledger: IdempotencyLedger
    auth: Optional[ERPAuthManager]
    platform: StockPlatform
    aggregator: StockAggregator
    normalizer: EventNormalizer
    suppressor: FeedbackLoopSuppressor
    synchronizer: StockSynchronizer
    processor: EventProcessor
    reconciliation: ReconciliationService
    dispatcher: Optional[Dispatcher] = None
    intake: Optional[WebhookIntake] = None

    async def handle_event(self, event: StockEvent):
        return await self.processor.process(event, event.tenant_id)

    async def handle_dead_letter(self, event: StockEvent, error: str) -> None:
        """A job that will never be retried again: mark its ledger entry and count it as lost."""
        if not event.tenant_id:
            logger.error(f"Dead-lettered event {event.job_id} has no tenant: {error}")
            return
        if event.product_ref and event.event_id:
            await self.ledger.fail(event.tenant_id, self.ledger.fingerprint(event), "dead_letter", error)
        await self.config_service.record_lost_event(event.tenant_id)

    def sweep_caches(self) -> int:
        removed = self.reserve_cache.sweep() + self.suppression_cache.sweep()
        if removed:
            logger.debug(f"Swept {removed} expired cache entries")
        return removed

    async def start(self) -> None:
        if self.dispatcher is None:
            self.dispatcher = await build_dispatcher(self.settings, self.handle_event, self.handle_dead_letter)
        self.intake = WebhookIntake(self.normalizer, self.dispatcher, self.config_service)
        await self.dispatcher.start()
        logger.info(f"Stock pipeline started (dispatch method: {self.dispatcher.method})")

    async def stop(self) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.stop()
        logger.info("Stock pipeline stopped")


def build_pipeline(session_factory: async_sessionmaker, settings: Optional[Settings] = None,
                   platform: Optional[StockPlatform] = None,
                   dispatcher: Optional[Dispatcher] = None) -> SyncPipeline:
    """
    Build every component of the pipeline.

    `platform` and `dispatcher` can be supplied to replace the ERP adapter or
    the broker; by default the ERP adapter is built and the dispatcher is
    chosen in `start()`.
    """
    settings = settings or get_settings()

    rate_gate = RateGate(settings.ERP_MIN_REQUEST_INTERVAL)
    reserve_cache = TTLCache(settings.RESERVE_CACHE_TTL_SECONDS, name="reserved-stock")
    suppression_cache = TTLCache(settings.SUPPRESSION_TTL_SECONDS, name="feedback-suppression")

    config_service = SyncConfigService(session_factory)
    credentials = CredentialService(session_factory)
    mirror = StockMirrorService(session_factory)
    ledger = IdempotencyLedger(session_factory, claim_lease_seconds=settings.LEDGER_CLAIM_LEASE_SECONDS)

    auth = None
    if platform is None:
        auth = ERPAuthManager(credentials, rate_gate, settings)
        client = ERPClient(auth, rate_gate, settings)
        platform = ERPStockAdapter(client, ReservedStockInference(reserve_cache))
        logger.info("Registered ERP stock adapter")

    suppressor = FeedbackLoopSuppressor(
        suppression_cache,
        ttl=settings.SUPPRESSION_TTL_SECONDS,
        max_entries=settings.SUPPRESSION_MAX_ENTRIES,
    )
    aggregator = StockAggregator(platform, config_service, credentials)
    normalizer = EventNormalizer(platform, config_service, credentials)
    synchronizer = StockSynchronizer(
        platform, aggregator, config_service, credentials, mirror, ledger, suppressor, settings,
    )
    processor = EventProcessor(config_service, ledger, synchronizer, suppressor)
    reconciliation = ReconciliationService(config_service, mirror, ledger, aggregator, synchronizer, settings)

    return SyncPipeline(
        settings=settings,
        rate_gate=rate_gate,
        reserve_cache=reserve_cache,
        suppression_cache=suppression_cache,
        config_service=config_service,
        credentials=credentials,
        mirror=mirror,
        ledger=ledger,
        auth=auth,
        platform=platform,
        aggregator=aggregator,
        normalizer=normalizer,
        suppressor=suppressor,
        synchronizer=synchronizer,
        processor=processor,
        reconciliation=reconciliation,
        dispatcher=dispatcher,
    )
