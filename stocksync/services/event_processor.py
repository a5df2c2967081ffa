"""
Event processor: the consumer side of the dispatch layer.

For each normalized event it validates identifiers, checks the tenant is
active, filters echoes of our own writes, claims the fingerprint in the
ledger and runs the synchronizer. Permanent failures are recorded and
returned; transient ones are recorded as retryable and re-raised so the
broker retries the job. A run interrupted by cancellation is released as
retryable before the cancellation propagates, so redelivery can claim it.

Webhook runs are counted here, including failed ones; events for a tenant
whose configuration is disabled are counted as inactive.
"""
import asyncio
import logging
from typing import Optional

from stocksync.core.enums import EventKind, SyncTrigger
from stocksync.core.exceptions import (
    ConfigurationInactive,
    DuplicateEvent,
    InvalidEvent,
    StockSyncError,
    TransientFailure,
)
from stocksync.integrations.events import StockEvent
from stocksync.models import TenantSyncConfig
from stocksync.schemas.sync import ProcessResult
from stocksync.services.feedback_suppressor import FeedbackLoopSuppressor
from stocksync.services.idempotency_ledger import IdempotencyLedger
from stocksync.services.stock_synchronizer import StockSynchronizer
from stocksync.services.sync_config_service import SyncConfigService

logger = logging.getLogger(__name__)

UNKNOWN_ORIGIN = "unknown"
WEBHOOK_ORIGIN = "webhook"


def resolve_origin(config: TenantSyncConfig, account_ref: Optional[str]) -> str:
    """Human readable label for where an event came from."""
    if not account_ref:
        return WEBHOOK_ORIGIN
    account = config.find_account(account_ref)
    return account.label if account is not None else UNKNOWN_ORIGIN


class EventProcessor:

    def __init__(self, config_service: SyncConfigService, ledger: IdempotencyLedger,
                 synchronizer: StockSynchronizer, suppressor: FeedbackLoopSuppressor):
        self.config_service = config_service
        self.ledger = ledger
        self.synchronizer = synchronizer
        self.suppressor = suppressor

    async def process(self, event: StockEvent, tenant_id: Optional[str] = None) -> ProcessResult:
        tenant_id = tenant_id or event.tenant_id
        if not tenant_id or not event.product_ref or not event.event_id:
            logger.warning(f"Ignoring invalid event (tenant={tenant_id}, product={event.product_ref}, "
                           f"event={event.event_id})")
            return ProcessResult(processed=False, ignored=True, reason=InvalidEvent.reason)

        config = await self.config_service.get_config(tenant_id)
        if config is None or not config.enabled:
            logger.info(f"Ignoring event {event.event_id}: tenant {tenant_id} has no active sync configuration")
            if config is not None:
                await self.config_service.record_inactive_event(tenant_id)
            return ProcessResult(processed=False, ignored=True, reason=ConfigurationInactive.reason)

        fingerprint = self.ledger.fingerprint(event)
        origin = resolve_origin(config, event.account_ref)
        if not await self.ledger.claim(tenant_id, event, SyncTrigger.WEBHOOK, origin):
            logger.info(f"Duplicate event {fingerprint} for tenant {tenant_id}")
            return ProcessResult(processed=False, ignored=True, reason=DuplicateEvent.reason, fingerprint=fingerprint)

        if event.kind == EventKind.STOCK_ADJUSTMENT and self.suppressor.consume(
                tenant_id, event.deposit_id, event.product_ref):
            await self.ledger.skip(tenant_id, fingerprint, "self_generated")
            return ProcessResult(processed=False, ignored=True, reason="self_generated",
                                 fingerprint=fingerprint, origin=origin)

        logger.info(f"Processing {event.kind.value} event {event.event_id} for tenant {tenant_id} "
                    f"product {event.product_ref} (origin {origin})")
        try:
            result = await self.synchronizer.synchronize(
                event.product_ref, tenant_id, origin=origin, trigger=SyncTrigger.WEBHOOK,
            )
        except asyncio.CancelledError:
            logger.warning(f"Processing of {fingerprint} for tenant {tenant_id} was interrupted")
            await self.ledger.fail(tenant_id, fingerprint, "interrupted", "processing interrupted", retryable=True)
            raise
        except StockSyncError as e:
            await self.ledger.fail(tenant_id, fingerprint, e.reason, str(e), retryable=e.retryable)
            await self.config_service.record_run(tenant_id, SyncTrigger.WEBHOOK, success=False)
            if e.retryable:
                raise
            return ProcessResult(processed=True, reason=e.reason, fingerprint=fingerprint,
                                 origin=origin, error=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error processing event {fingerprint}")
            await self.ledger.fail(tenant_id, fingerprint, TransientFailure.reason, str(e), retryable=True)
            await self.config_service.record_run(tenant_id, SyncTrigger.WEBHOOK, success=False)
            raise TransientFailure(f"Unexpected error processing {fingerprint}: {str(e)}") from e

        await self.ledger.complete(tenant_id, fingerprint, result)
        await self.config_service.record_run(tenant_id, SyncTrigger.WEBHOOK, synced_at=result.processed_at)
        return ProcessResult(
            processed=True,
            reason="partial" if result.failed_writes else None,
            fingerprint=fingerprint,
            origin=origin,
            result=result,
        )
