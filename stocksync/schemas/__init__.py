"""
Schema exports for the application.
"""

from .base import BaseSchema

from .stock import (
    Product,
    DepositBalance,
    StockMovementAck,
    Order,
    OrderItem,
    AggregationError,
    AccountStock,
    AggregationResult,
)

from .sync import (
    SharedWriteOutcome,
    SyncResult,
    ProcessResult,
    ReconciliationSummary,
    ManualSyncRequest,
    LedgerEntryRead,
    TenantSyncStatus,
)
