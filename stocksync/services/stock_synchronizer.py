"""
Stock synchronizer.

For one product of one tenant:
    1. load the configuration and fail fast if it is disabled or incomplete
    2. keep only accounts whose credentials are still active
    3. resolve a numeric reference to the canonical SKU
    4. refuse composite (kit) products; every active account must answer the
       product lookup, since an unchecked account could hold a kit
    5. aggregate the principal deposits into the authoritative quantity
    6. write that quantity to every shared deposit (balance operation "B"),
       registering each write with the feedback-loop suppressor first
    7. update the local stock mirror
    8. return the per-deposit outcome

Manual and scheduled runs are counted and audited here; webhook runs are
counted and recorded by the event processor.

A failed write to one shared deposit is reported in the result and does not
stop the others. If any principal balance could not be read, nothing is
written: the total would understate the real stock.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence, Tuple

from stocksync.core.config import Settings, get_settings
from stocksync.core.enums import BALANCE_OPERATION, DepositType, SyncTrigger
from stocksync.core.exceptions import (
    CompositeProductUnsupported,
    ConfigurationInactive,
    ConfigurationIncomplete,
    ERPAPIError,
    RateLimited,
    ReauthorizationRequired,
    StockSyncError,
    TransientFailure,
    UpstreamWriteFailed,
)
from stocksync.core.utils import utcnow
from stocksync.integrations.base import StockPlatform
from stocksync.models import TenantSyncConfig
from stocksync.schemas.stock import AggregationResult, Product
from stocksync.schemas.sync import SharedWriteOutcome, SyncResult
from stocksync.services.credential_service import CredentialService
from stocksync.services.feedback_suppressor import FeedbackLoopSuppressor
from stocksync.services.idempotency_ledger import IdempotencyLedger
from stocksync.services.stock_aggregator import StockAggregator, apply_aggregation_rule
from stocksync.services.stock_mirror_service import StockMirrorService
from stocksync.services.sync_config_service import SyncConfigService

logger = logging.getLogger(__name__)


class StockSynchronizer:

    def __init__(
        self,
        platform: StockPlatform,
        aggregator: StockAggregator,
        config_service: SyncConfigService,
        credentials: CredentialService,
        mirror: StockMirrorService,
        ledger: IdempotencyLedger,
        suppressor: FeedbackLoopSuppressor,
        settings: Optional[Settings] = None,
    ):
        self.platform = platform
        self.aggregator = aggregator
        self.config_service = config_service
        self.credentials = credentials
        self.mirror = mirror
        self.ledger = ledger
        self.suppressor = suppressor
        self.settings = settings or get_settings()

    async def synchronize(self, product_ref: str, tenant_id: str, origin: Optional[str] = None,
                          trigger: SyncTrigger = SyncTrigger.MANUAL) -> SyncResult:
        """
        Propagate the principal-deposit total of a product to its shared deposits.

        Manual and scheduled runs write their own ledger audit entry and bump
        their counter; webhook runs are recorded by the event processor.

        Raises:
            ConfigurationInactive, ConfigurationIncomplete, CompositeProductUnsupported,
            ReauthorizationRequired, RateLimited, TransientFailure
        """
        product_ref = str(product_ref).strip()
        origin = origin or trigger.value
        audit = trigger != SyncTrigger.WEBHOOK
        started_at = utcnow()

        try:
            try:
                result = await self._run(product_ref, str(tenant_id), origin, trigger)
            except ERPAPIError as e:
                raise TransientFailure(f"ERP request failed: {str(e)}") from e
        except StockSyncError as e:
            logger.warning(f"Sync of {product_ref} for tenant {tenant_id} ({trigger.value}) failed: "
                           f"{e.reason}: {str(e)}")
            if audit:
                await self.ledger.record(
                    tenant_id, self._audit_event_id(trigger, started_at, product_ref), product_ref,
                    trigger=trigger, origin=origin, reason=e.reason, error=str(e),
                )
                await self.config_service.record_run(tenant_id, trigger, success=False)
            raise

        if audit:
            await self.ledger.record(
                tenant_id, self._audit_event_id(trigger, started_at, result.sku or product_ref),
                result.sku or product_ref, trigger=trigger, origin=origin, result=result,
                reason="partial" if result.failed_writes else None,
            )
            await self.config_service.record_run(tenant_id, trigger, synced_at=result.processed_at)
        return result

    @staticmethod
    def _audit_event_id(trigger: SyncTrigger, at, product_ref: str) -> str:
        return f"{trigger.value}-{int(at.timestamp() * 1000)}-{product_ref}"

    async def _run(self, product_ref: str, tenant_id: str, origin: str, trigger: SyncTrigger) -> SyncResult:
        # 1. configuration
        config = await self.config_service.get_config(tenant_id)
        if config is None or not config.enabled:
            raise ConfigurationInactive(f"Synchronization is not enabled for tenant {tenant_id}")
        if not config.is_complete():
            raise ConfigurationIncomplete(f"Sync configuration for tenant {tenant_id} is incomplete")

        # 2. accounts active both in configuration and in live credentials
        live = await self.credentials.active_account_refs(tenant_id)
        active = [a.account_ref for a in config.active_accounts if a.account_ref in live]
        stale = [a.account_ref for a in config.active_accounts if a.account_ref not in live]
        if stale:
            logger.warning(f"Tenant {tenant_id}: accounts {stale} flagged active but credentials are inactive")
        if not active:
            raise ConfigurationIncomplete(f"Tenant {tenant_id} has no account with valid credentials")

        # 3. canonical SKU
        sku = await self._resolve_sku(tenant_id, product_ref, active)

        # 4. composite guard on every active account
        products, lookup_errors = await self._lookup_products(tenant_id, sku, active)
        for account_ref, product in products.items():
            if product is not None and product.is_composite:
                raise CompositeProductUnsupported(
                    f"Product {sku} is a composite item on account {account_ref}; automatic stock writes are disabled",
                    product_ref=sku, account_ref=account_ref,
                )
        self._ensure_checked(lookup_errors, sku)

        # 5. authoritative quantity from principal deposits
        principal_scope = self._principal_scope(config, active)
        aggregation = await self.aggregator.aggregate(
            tenant_id, sku,
            accounts=list(principal_scope.keys()),
            deposits_by_account=principal_scope,
            known_products=products,
        )
        self._ensure_complete(aggregation, tenant_id, sku)
        principal_ids = config.deposits_for(DepositType.PRINCIPAL)
        deposit_balances = {
            deposit_id: balance
            for deposit_id, balance in aggregation.deposit_balances().items()
            if deposit_id in principal_ids
        }
        total = apply_aggregation_rule(config.aggregation_rule, deposit_balances.values())
        logger.info(f"Tenant {tenant_id} product {sku}: principal balances {deposit_balances} -> {total}")

        # 6. shared deposits
        product_ids = {account: product.id for account, product in products.items() if product is not None}
        for account_ref, detail in aggregation.per_account_detail.items():
            if detail.product_id:
                product_ids.setdefault(account_ref, detail.product_id)
        outcomes = await self._write_shared(config, tenant_id, sku, product_ref, total, active, product_ids)

        # 7. mirror
        synced_at = utcnow()
        await self.mirror.upsert(tenant_id, sku, aggregation.per_account, synced_at=synced_at)

        # 8. result
        errors = [f"deposit {o.deposit_id}: {o.error}" for o in outcomes if not o.success]
        if errors:
            logger.warning(f"Tenant {tenant_id} product {sku}: {len(errors)} shared write(s) failed")
        return SyncResult(
            success=True,
            tenant_id=tenant_id,
            product_ref=product_ref,
            sku=sku,
            trigger=trigger.value,
            origin=origin,
            total=total,
            per_deposit_balances=deposit_balances,
            per_account=aggregation.per_account,
            shared_writes=outcomes,
            errors=errors,
            processed_at=synced_at,
        )

    async def _resolve_sku(self, tenant_id: str, product_ref: str, accounts: Sequence[str]) -> str:
        """A purely numeric reference is probably an account-local id; map it to its SKU."""
        if not product_ref.isdigit():
            return product_ref
        for account_ref in accounts:
            try:
                product = await self.platform.get_product(tenant_id, account_ref, product_ref)
            except (ReauthorizationRequired, ERPAPIError):
                continue
            if product is not None and product.sku:
                if product.sku != product_ref:
                    logger.info(f"Resolved product id {product_ref} to SKU {product.sku} via account {account_ref}")
                return product.sku
        logger.info(f"No SKU found for numeric reference {product_ref}; using it as is")
        return product_ref

    async def _lookup_products(self, tenant_id: str, sku: str,
                               accounts: Sequence[str]) -> Tuple[Dict[str, Optional[Product]], Dict[str, Exception]]:
        lookups = await asyncio.gather(
            *(self.platform.get_product(tenant_id, account_ref, sku) for account_ref in accounts),
            return_exceptions=True,
        )
        products: Dict[str, Optional[Product]] = {}
        errors: Dict[str, Exception] = {}
        for account_ref, outcome in zip(accounts, lookups):
            if isinstance(outcome, Exception):
                logger.error(f"Product lookup for {sku} failed on account {account_ref}: {str(outcome)}")
                errors[account_ref] = outcome
            else:
                products[account_ref] = outcome
        return products, errors

    @staticmethod
    def _ensure_checked(lookup_errors: Dict[str, Exception], sku: str) -> None:
        if not lookup_errors:
            return
        for error in lookup_errors.values():
            if isinstance(error, (ReauthorizationRequired, RateLimited)):
                raise error
        summary = "; ".join(f"{account_ref}: {str(error)}" for account_ref, error in lookup_errors.items())
        raise TransientFailure(f"Product {sku} could not be checked on every account: {summary}")

    @staticmethod
    def _principal_scope(config: TenantSyncConfig, active: Sequence[str]) -> Dict[str, List[str]]:
        scope: Dict[str, List[str]] = {}
        for deposit_id in config.deposits_for(DepositType.PRINCIPAL):
            deposit = config.find_deposit(deposit_id)
            if deposit is None or not deposit.account_ref:
                logger.warning(f"Principal deposit {deposit_id} of tenant {config.tenant_id} is not mapped to an account")
                continue
            if deposit.account_ref not in active:
                logger.info(f"Principal deposit {deposit_id} skipped: account {deposit.account_ref} inactive")
                continue
            scope.setdefault(deposit.account_ref, []).append(deposit.deposit_id)
        return scope

    @staticmethod
    def _ensure_complete(aggregation: AggregationResult, tenant_id: str, sku: str) -> None:
        if not aggregation.errors:
            return
        for error in aggregation.errors:
            if error.reauthorization_required:
                raise ReauthorizationRequired(
                    f"Account {error.account_ref} needs re-authorization: {error.message}",
                    reauth_url=error.reauth_url, account_ref=error.account_ref, tenant_id=tenant_id,
                )
        summary = "; ".join(
            f"{e.account_ref}{'/' + e.deposit_id if e.deposit_id else ''}: {e.message}" for e in aggregation.errors
        )
        raise TransientFailure(f"Principal balances for {sku} are incomplete: {summary}")

    async def _write_shared(
        self,
        config: TenantSyncConfig,
        tenant_id: str,
        sku: str,
        original_ref: str,
        total: int,
        active: Sequence[str],
        product_ids: Dict[str, str],
    ) -> List[SharedWriteOutcome]:
        outcomes: List[SharedWriteOutcome] = []
        for deposit_id in config.deposits_for(DepositType.SHARED):
            deposit = config.find_deposit(deposit_id)
            account_ref = deposit.account_ref if deposit is not None else None
            outcome = SharedWriteOutcome(deposit_id=deposit_id, account_ref=account_ref, success=False)
            outcomes.append(outcome)

            if not account_ref:
                outcome.error = "deposit is not mapped to an account"
                continue
            if account_ref not in active:
                outcome.error = f"account {account_ref} is inactive"
                continue
            product_id = product_ids.get(account_ref)
            if not product_id:
                outcome.error = f"product {sku} not found on account {account_ref}"
                continue
            outcome.product_id = product_id
            outcome.quantity = total

            self.suppressor.register(tenant_id, deposit_id, [sku, product_id, original_ref])
            try:
                await self.platform.write_stock_movement(
                    tenant_id, account_ref, deposit_id, product_id, total, BALANCE_OPERATION,
                )
            except Exception as e:
                failure = e if isinstance(e, StockSyncError) else UpstreamWriteFailed(
                    f"Write of {total} to deposit {deposit_id} failed: {str(e)}")
                logger.error(f"Write to deposit {deposit_id} (account {account_ref}) for {sku} failed: {str(e)}")
                outcome.error = str(failure)
                continue

            outcome.success = True
            if self.settings.ERP_VERIFY_WRITES:
                try:
                    outcome.verified = await self.platform.verify_balance(
                        tenant_id, account_ref, deposit_id, product_id, total,
                        delay=self.settings.ERP_VERIFY_DELAY,
                    )
                except Exception as e:
                    logger.warning(f"Could not verify write to deposit {deposit_id}: {str(e)}")
                    outcome.verified = False
        return outcomes
