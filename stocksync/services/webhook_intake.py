"""
Webhook intake: normalize a received payload and enqueue its events.

Runs after the HTTP response has been sent. Any event that cannot be
enqueued is counted as lost on the tenant so it shows up in status.
"""

import logging
from typing import Any, List, Optional

from stocksync.core.exceptions import DispatchError
from stocksync.integrations.dispatch import Dispatcher, EnqueueAck
from stocksync.integrations.events import StockEvent
from stocksync.services.event_normalizer import EventNormalizer
from stocksync.services.sync_config_service import SyncConfigService

logger = logging.getLogger(__name__)


class WebhookIntake:

    def __init__(self, normalizer: EventNormalizer, dispatcher: Dispatcher, config_service: SyncConfigService):
        self.normalizer = normalizer
        self.dispatcher = dispatcher
        self.config_service = config_service

    async def accept(self, payload: Any, tenant_hint: Optional[str] = None,
                     account_hint: Optional[str] = None) -> List[EnqueueAck]:
        events = await self.normalizer.normalize(payload, tenant_hint=tenant_hint, account_hint=account_hint)
        acks: List[EnqueueAck] = []
        for event in events:
            ack = await self.submit(event)
            if ack is not None:
                acks.append(ack)
        return acks

    async def submit(self, event: StockEvent) -> Optional[EnqueueAck]:
        try:
            ack = await self.dispatcher.enqueue(event)
        except DispatchError as e:
            logger.error(f"Could not enqueue {event.job_id}: {str(e)}")
            if event.tenant_id:
                await self.config_service.record_lost_event(event.tenant_id)
            return None
        logger.info(f"Event {event.event_id} for tenant {event.tenant_id} accepted via {ack.method}"
                    f"{' (duplicate)' if ack.duplicate else ''}")
        return ack
