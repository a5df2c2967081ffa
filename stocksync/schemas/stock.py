"""
Shapes returned by the ERP adapter and the stock aggregator.
"""
from typing import Dict, List, Optional

from pydantic import Field

from stocksync.core.enums import COMPOSITE_PRODUCT_FORMATS
from stocksync.schemas.base import BaseSchema


class Product(BaseSchema):
    id: str
    account_ref: str
    sku: Optional[str] = None
    name: Optional[str] = None
    format: Optional[str] = None
    physical_total: Optional[int] = None
    virtual_total: Optional[int] = None

    @property
    def is_composite(self) -> bool:
        return (self.format or "").upper() in COMPOSITE_PRODUCT_FORMATS


class DepositBalance(BaseSchema):
    deposit_id: str
    physical: int = 0
    virtual: int = 0
    reserved_reported: int = 0
    reserved_effective: int = 0
    # reported, implicit, cached or none
    reserved_method: str = "none"

    @property
    def available(self) -> int:
        """Sellable quantity: physical stock minus what is still reserved."""
        return max(0, self.physical - self.reserved_effective)


class StockMovementAck(BaseSchema):
    account_ref: str
    deposit_id: str
    product_id: str
    quantity: int
    operation: str
    movement_id: Optional[str] = None


class OrderItem(BaseSchema):
    product_ref: str
    quantity: int = 1
    product_id: Optional[str] = None
    sku: Optional[str] = None
    deposit_id: Optional[str] = None


class Order(BaseSchema):
    id: str
    account_ref: Optional[str] = None
    number: Optional[str] = None
    status: Optional[str] = None
    deposit_id: Optional[str] = None
    items: List[OrderItem] = Field(default_factory=list)


class AggregationError(BaseSchema):
    account_ref: str
    message: str
    deposit_id: Optional[str] = None
    reauthorization_required: bool = False
    reauth_url: Optional[str] = None


class AccountStock(BaseSchema):
    account_ref: str
    product_id: Optional[str] = None
    sku: Optional[str] = None
    quantity: int = 0
    deposits: Dict[str, DepositBalance] = Field(default_factory=dict)
    error: Optional[str] = None


class AggregationResult(BaseSchema):
    product_ref: str
    total: int = 0
    per_account: Dict[str, int] = Field(default_factory=dict)
    per_account_detail: Dict[str, AccountStock] = Field(default_factory=dict)
    errors: List[AggregationError] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def deposit_balances(self) -> Dict[str, int]:
        """Sellable quantity per monitored deposit, across all accounts."""
        balances: Dict[str, int] = {}
        for detail in self.per_account_detail.values():
            for deposit_id, balance in detail.deposits.items():
                balances[deposit_id] = balance.available
        return balances
