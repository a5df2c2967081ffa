"""
Shared enums and constants used across the application.
"""

from enum import Enum


class DepositType(str, Enum):
    """Role a deposit plays in a tenant's stock computation"""
    PRINCIPAL = "principal"
    SHARED = "shared"


class AggregationRule(str, Enum):
    SUM = "sum"
    AVG = "avg"
    MAX = "max"
    MIN = "min"


class EventKind(str, Enum):
    SALE = "sale"
    STOCK_ADJUSTMENT = "stock_adjustment"


class SyncTrigger(str, Enum):
    """What started a synchronizer run. Each maps onto a tenant counter."""
    WEBHOOK = "webhook"
    MANUAL = "manual"
    SCHEDULED = "scheduled"

    @property
    def counter_field(self) -> str:
        return f"{self.value}_runs"


class LedgerStatus(str, Enum):
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RETRYABLE = "retryable"
    SKIPPED = "skipped"


# Upstream product "formato" flag values. "E" marks a product with composition (kit).
COMPOSITE_PRODUCT_FORMATS = frozenset({"E"})

# Operation kind for an absolute balance write on a deposit
BALANCE_OPERATION = "B"
