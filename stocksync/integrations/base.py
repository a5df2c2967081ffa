import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

from stocksync.core.enums import BALANCE_OPERATION
from stocksync.schemas.stock import DepositBalance, Order, Product, StockMovementAck

logger = logging.getLogger(__name__)


class StockPlatform(ABC):
    """
    Operations the pipeline needs from the ERP, always scoped to one linked
    account of one tenant.
    """

    @abstractmethod
    async def get_product(self, tenant_id: str, account_ref: str, ref: str) -> Optional[Product]:
        """Find a product by SKU or by account-local id"""
        pass

    @abstractmethod
    async def get_deposit_balance(self, tenant_id: str, account_ref: str,
                                  product_id: str, deposit_id: str) -> DepositBalance:
        """Balance of one product in one deposit, with reserved stock resolved"""
        pass

    @abstractmethod
    async def write_stock_movement(self, tenant_id: str, account_ref: str, deposit_id: str,
                                   product_id: str, quantity: int,
                                   operation: str = BALANCE_OPERATION) -> StockMovementAck:
        """Record a stock movement; operation "B" sets the absolute balance"""
        pass

    @abstractmethod
    async def get_order_detail(self, tenant_id: str, account_ref: str, order_id: str) -> Optional[Order]:
        """Full sales order including line items"""
        pass

    async def verify_balance(self, tenant_id: str, account_ref: str, deposit_id: str,
                             product_id: str, expected: int, delay: float = 0.0) -> bool:
        """Read a deposit back after a write and compare its physical balance."""
        if delay > 0:
            await asyncio.sleep(delay)
        balance = await self.get_deposit_balance(tenant_id, account_ref, product_id, deposit_id)
        if balance.physical != expected:
            logger.warning(f"Write verification mismatch for product {product_id} in deposit {deposit_id}: "
                           f"expected {expected}, found {balance.physical}")
            return False
        return True
