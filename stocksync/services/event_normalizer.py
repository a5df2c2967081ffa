"""
Webhook normalization.

Turns a raw webhook body into StockEvent objects, one per affected product:
    1. decode the body into a typed variant (see integrations/events.py)
    2. resolve the tenant and account the notification belongs to
    3. for sales without line items, fetch the order from the ERP
    4. build one event per line item / stock adjustment

Nothing here raises on a bad payload; it is logged and produces no events.
"""

import logging
import uuid
from typing import List, Optional, Tuple

from stocksync.core.enums import EventKind
from stocksync.integrations.base import StockPlatform
from stocksync.integrations.events import (
    RawEvent,
    SaleCancelled,
    SaleCreated,
    StockAdjusted,
    StockEvent,
    Unrecognized,
    decode_raw_event,
)
from stocksync.schemas.stock import OrderItem
from stocksync.services.credential_service import CredentialService
from stocksync.services.sync_config_service import SyncConfigService

logger = logging.getLogger(__name__)


def build_event_id(source_id: str, product_ref: str) -> str:
    return f"{source_id}-product-{product_ref}"


class EventNormalizer:

    def __init__(self, platform: StockPlatform, config_service: SyncConfigService,
                 credentials: CredentialService):
        self.platform = platform
        self.config_service = config_service
        self.credentials = credentials

    async def normalize(self, payload, tenant_hint: Optional[str] = None,
                        account_hint: Optional[str] = None) -> List[StockEvent]:
        raw = decode_raw_event(payload)

        if isinstance(raw, Unrecognized):
            logger.info(f"Ignoring unrecognized webhook ({raw.event_type or 'no type'}): {raw.reason}")
            return []
        if isinstance(raw, SaleCancelled):
            logger.info(f"Order {raw.order_id} cancelled/deleted; no line items to process")
            return []

        tenant_id, company_account = await self._resolve_tenant(raw, tenant_hint)
        if not tenant_id:
            logger.warning(f"Could not resolve tenant for {raw.variant} webhook "
                           f"(company {raw.company_id}); dropping")
            return []
        account_ref = raw.account_ref or account_hint or company_account

        if isinstance(raw, SaleCreated):
            return await self._sale_events(raw, tenant_id, account_ref)
        return self._stock_events(raw, tenant_id, account_ref)

    async def _resolve_tenant(self, raw: RawEvent, tenant_hint: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Returns (tenant_id, account matched by company id)."""
        company_id = getattr(raw, "company_id", None)
        matches = await self.credentials.find_by_company(company_id) if company_id else []
        tenant_id = tenant_hint or getattr(raw, "tenant_id", None)

        if tenant_id:
            matches = [c for c in matches if c.tenant_id == str(tenant_id)]
        else:
            tenants = {c.tenant_id for c in matches}
            if len(tenants) == 1:
                tenant_id = tenants.pop()
            elif len(tenants) > 1:
                logger.warning(f"Company {company_id} is linked to several tenants {sorted(tenants)}")
                return None, None
        account = matches[0].account_ref if len(matches) == 1 else None
        return tenant_id, account

    async def _sale_events(self, raw: SaleCreated, tenant_id: str,
                           account_ref: Optional[str]) -> List[StockEvent]:
        items = raw.items
        if not items and raw.order_id:
            items, account_ref = await self._fetch_items(tenant_id, raw.order_id, account_ref)
        if not items:
            logger.warning(f"Order {raw.order_id} for tenant {tenant_id} has no resolvable line items")
            return []

        source_id = raw.order_id or uuid.uuid4().hex
        events = [
            StockEvent(
                tenant_id=tenant_id,
                product_ref=item.product_ref,
                event_id=build_event_id(source_id, item.product_ref),
                kind=EventKind.SALE,
                deposit_id=item.deposit_id or raw.deposit_id,
                account_ref=account_ref,
                quantity=item.quantity,
                source_id=source_id,
            )
            for item in items
        ]
        logger.info(f"Order {source_id} for tenant {tenant_id} normalized into {len(events)} event(s)")
        return events

    def _stock_events(self, raw: StockAdjusted, tenant_id: str,
                      account_ref: Optional[str]) -> List[StockEvent]:
        if not raw.product_ref:
            logger.warning(f"Stock webhook for tenant {tenant_id} carries no product reference")
            return []
        source_id = raw.source_id or f"stock-{uuid.uuid4().hex}"
        return [StockEvent(
            tenant_id=tenant_id,
            product_ref=raw.product_ref,
            event_id=build_event_id(source_id, raw.product_ref),
            kind=EventKind.STOCK_ADJUSTMENT,
            deposit_id=raw.deposit_id,
            account_ref=account_ref,
            quantity=raw.quantity,
            source_id=source_id,
        )]

    async def _candidate_accounts(self, tenant_id: str, account_ref: Optional[str]) -> List[str]:
        if account_ref:
            return [account_ref]
        config = await self.config_service.get_config(tenant_id)
        if config is None:
            return []
        live = await self.credentials.active_account_refs(tenant_id)
        return [a.account_ref for a in config.active_accounts if a.account_ref in live]

    async def _fetch_items(self, tenant_id: str, order_id: str,
                           account_ref: Optional[str]) -> Tuple[List[OrderItem], Optional[str]]:
        """Try each candidate account until one returns the order with items."""
        for candidate in await self._candidate_accounts(tenant_id, account_ref):
            try:
                order = await self.platform.get_order_detail(tenant_id, candidate, order_id)
            except Exception as e:
                logger.warning(f"Fetching order {order_id} from account {candidate} failed: {str(e)}")
                continue
            if order is not None and order.items:
                logger.info(f"Order {order_id} resolved on account {candidate} with {len(order.items)} item(s)")
                return order.items, candidate
        return [], account_ref
