"""
Synchronizer, processor and API schemas.
"""
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import Field

from stocksync.schemas.base import BaseSchema


class SharedWriteOutcome(BaseSchema):
    deposit_id: str
    success: bool
    account_ref: Optional[str] = None
    product_id: Optional[str] = None
    quantity: Optional[int] = None
    error: Optional[str] = None
    # None when read-back verification is disabled
    verified: Optional[bool] = None


class SyncResult(BaseSchema):
    success: bool
    tenant_id: str
    product_ref: str
    sku: Optional[str] = None
    trigger: str
    origin: Optional[str] = None
    total: int = 0
    per_deposit_balances: Dict[str, int] = Field(default_factory=dict)
    per_account: Dict[str, int] = Field(default_factory=dict)
    shared_writes: List[SharedWriteOutcome] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    processed_at: Optional[datetime] = None

    @property
    def failed_writes(self) -> List[SharedWriteOutcome]:
        return [outcome for outcome in self.shared_writes if not outcome.success]


class ProcessResult(BaseSchema):
    processed: bool
    ignored: bool = False
    reason: Optional[str] = None
    fingerprint: Optional[str] = None
    origin: Optional[str] = None
    result: Optional[SyncResult] = None
    error: Optional[str] = None


class ReconciliationSummary(BaseSchema):
    tenants: int = 0
    checked: int = 0
    synced: int = 0
    unchanged: int = 0
    skipped: int = 0
    ignored: int = 0
    errors: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class ManualSyncRequest(BaseSchema):
    tenant_id: str = Field(..., alias="tenantId")
    product_ref: str = Field(..., alias="productRef")


class LedgerEntryRead(BaseSchema):
    fingerprint: str
    event_id: str
    product_ref: str
    deposit_id: Optional[str] = None
    trigger: str
    origin: Optional[str] = None
    status: str
    success: Optional[bool] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    balances: Optional[Dict[str, int]] = None
    total: Optional[int] = None
    shared_writes: Optional[List[dict]] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class TenantSyncStatus(BaseSchema):
    tenant_id: str
    enabled: bool
    complete: bool
    webhook_runs: int = 0
    manual_runs: int = 0
    scheduled_runs: int = 0
    failed_runs: int = 0
    inactive_events: int = 0
    lost_events: int = 0
    last_sync_at: Optional[datetime] = None
    reconcile_enabled: bool = True
    reconcile_interval_minutes: int = 30
    last_reconcile_at: Optional[datetime] = None
    next_reconcile_at: Optional[datetime] = None
    dispatch_method: Optional[str] = None
    queue: Dict[str, int] = Field(default_factory=dict)
