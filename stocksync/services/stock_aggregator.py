"""
Multi-account stock aggregation for a single product.

Each account is queried concurrently. A failing account is recorded in
`errors` and contributes nothing; the others still produce a total.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from stocksync.core.enums import AggregationRule, DepositType
from stocksync.core.exceptions import ReauthorizationRequired
from stocksync.integrations.base import StockPlatform
from stocksync.schemas.stock import AccountStock, AggregationError, AggregationResult, Product
from stocksync.services.credential_service import CredentialService
from stocksync.services.sync_config_service import SyncConfigService

logger = logging.getLogger(__name__)


def apply_aggregation_rule(rule: str, values: Iterable[int]) -> int:
    values = list(values)
    if not values:
        return 0
    rule = AggregationRule(rule or AggregationRule.SUM.value)
    if rule == AggregationRule.AVG:
        return int(round(sum(values) / len(values)))
    if rule == AggregationRule.MAX:
        return max(values)
    if rule == AggregationRule.MIN:
        return min(values)
    return sum(values)


class StockAggregator:

    def __init__(self, platform: StockPlatform, config_service: SyncConfigService,
                 credentials: CredentialService):
        self.platform = platform
        self.config_service = config_service
        self.credentials = credentials

    async def aggregate(
        self,
        tenant_id: str,
        product_ref: str,
        accounts: Optional[Sequence[str]] = None,
        deposits_by_account: Optional[Mapping[str, Sequence[str]]] = None,
        known_products: Optional[Mapping[str, Optional[Product]]] = None,
    ) -> AggregationResult:
        """
        Args:
            accounts: accounts to query; defaults to every active account of the tenant
            deposits_by_account: monitored deposits per account; an account without
                any contributes the product's virtual total instead
            known_products: product lookups already made by the caller, per account
        """
        if accounts is None:
            accounts, deposits_by_account = await self._default_scope(tenant_id)
        deposits_by_account = deposits_by_account or {}
        known_products = known_products or {}

        branches = [
            self._aggregate_account(
                tenant_id, account_ref, product_ref,
                deposits_by_account.get(account_ref, []),
                known_products,
            )
            for account_ref in accounts
        ]
        outcomes = await asyncio.gather(*branches)

        result = AggregationResult(product_ref=str(product_ref))
        for stock, errors in outcomes:
            result.per_account_detail[stock.account_ref] = stock
            result.errors.extend(errors)
            if stock.error is None:
                result.per_account[stock.account_ref] = stock.quantity
        result.total = sum(result.per_account.values())

        if result.errors:
            logger.warning(f"Aggregation of {product_ref} for tenant {tenant_id} finished with "
                           f"{len(result.errors)} error(s); total {result.total}")
        else:
            logger.debug(f"Aggregated {product_ref} for tenant {tenant_id}: {result.per_account}")
        return result

    async def _default_scope(self, tenant_id: str) -> Tuple[List[str], Dict[str, List[str]]]:
        config = await self.config_service.get_config(tenant_id)
        if config is None:
            return [], {}
        live = await self.credentials.active_account_refs(tenant_id)
        accounts = [a.account_ref for a in config.active_accounts if a.account_ref in live]
        deposits: Dict[str, List[str]] = {}
        for deposit_id in config.deposits_for(DepositType.PRINCIPAL):
            deposit = config.find_deposit(deposit_id)
            if deposit is not None and deposit.account_ref in accounts:
                deposits.setdefault(deposit.account_ref, []).append(deposit.deposit_id)
        return accounts, deposits

    async def principal_scope(self, tenant_id: str) -> Dict[str, List[str]]:
        """Principal deposits grouped by owning account, active accounts only."""
        _, deposits = await self._default_scope(tenant_id)
        return deposits

    async def _aggregate_account(
        self,
        tenant_id: str,
        account_ref: str,
        product_ref: str,
        deposit_ids: Sequence[str],
        known_products: Mapping[str, Optional[Product]],
    ) -> Tuple[AccountStock, List[AggregationError]]:
        stock = AccountStock(account_ref=account_ref)
        errors: List[AggregationError] = []

        try:
            if account_ref in known_products:
                product = known_products[account_ref]
            else:
                product = await self.platform.get_product(tenant_id, account_ref, product_ref)
        except Exception as e:
            logger.error(f"Product lookup for {product_ref} failed on account {account_ref}: {str(e)}")
            stock.error = str(e)
            errors.append(self._to_error(account_ref, e))
            return stock, errors

        if product is None or not product.id:
            logger.info(f"Product {product_ref} not found on account {account_ref}; skipping balances")
            return stock, errors

        stock.product_id = product.id
        stock.sku = product.sku

        if not deposit_ids:
            stock.quantity = max(0, product.virtual_total or 0)
            return stock, errors

        for deposit_id in deposit_ids:
            try:
                balance = await self.platform.get_deposit_balance(tenant_id, account_ref, product.id, deposit_id)
            except Exception as e:
                logger.error(f"Balance lookup for {product_ref} in deposit {deposit_id} "
                             f"(account {account_ref}) failed: {str(e)}")
                errors.append(self._to_error(account_ref, e, deposit_id=deposit_id))
                continue
            stock.deposits[str(deposit_id)] = balance
            stock.quantity += balance.available

        return stock, errors

    @staticmethod
    def _to_error(account_ref: str, exc: Exception, deposit_id: Optional[str] = None) -> AggregationError:
        if isinstance(exc, ReauthorizationRequired):
            return AggregationError(
                account_ref=account_ref, deposit_id=deposit_id, message=str(exc),
                reauthorization_required=True, reauth_url=exc.reauth_url,
            )
        return AggregationError(account_ref=account_ref, deposit_id=deposit_id, message=str(exc))
