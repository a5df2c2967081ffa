# stocksync/models/sync_config.py
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import relationship

from stocksync.core.enums import AggregationRule, DepositType
from stocksync.core.utils import utcnow
from stocksync.database import Base

MIN_RECONCILE_INTERVAL = 1
MAX_RECONCILE_INTERVAL = 1440


class TenantSyncConfig(Base):
    """
    Per-tenant synchronization configuration.

    Accounts and deposits are maintained by the tenant-facing configuration
    endpoints. The pipeline only reads them, apart from the run counters and
    the reconciliation timestamps.
    """
    __tablename__ = "tenant_sync_configs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False, unique=True, index=True)
    enabled = Column(Boolean, nullable=False, default=True)

    # --- Computation ---
    aggregation_rule = Column(String, nullable=False, default=AggregationRule.SUM.value)
    principal_deposit_ids = Column(JSON, nullable=False, default=list)
    shared_deposit_ids = Column(JSON, nullable=False, default=list)

    # --- Reconciliation schedule ---
    reconcile_enabled = Column(Boolean, nullable=False, default=True)
    reconcile_interval_minutes = Column(Integer, nullable=False, default=30)
    last_reconcile_at = Column(DateTime, nullable=True)
    next_reconcile_at = Column(DateTime, nullable=True)

    # --- Counters ---
    webhook_runs = Column(Integer, nullable=False, default=0)
    manual_runs = Column(Integer, nullable=False, default=0)
    scheduled_runs = Column(Integer, nullable=False, default=0)
    failed_runs = Column(Integer, nullable=False, default=0)      # runs of any trigger that ended in error
    inactive_events = Column(Integer, nullable=False, default=0)  # events received while sync was disabled
    lost_events = Column(Integer, nullable=False, default=0)
    last_sync_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    accounts = relationship(
        "SyncAccount", back_populates="config", lazy="selectin",
        cascade="all, delete-orphan", order_by="SyncAccount.id",
    )
    deposits = relationship(
        "SyncDeposit", back_populates="config", lazy="selectin",
        cascade="all, delete-orphan", order_by="SyncDeposit.id",
    )

    @property
    def active_accounts(self) -> List["SyncAccount"]:
        return [account for account in self.accounts if account.is_active]

    def is_complete(self) -> bool:
        return bool(
            self.active_accounts
            and self.deposits
            and self.principal_deposit_ids
            and self.shared_deposit_ids
        )

    def find_account(self, account_ref: Optional[str]) -> Optional["SyncAccount"]:
        if not account_ref:
            return None
        return next((a for a in self.accounts if a.account_ref == str(account_ref)), None)

    def find_deposit(self, deposit_id: Optional[str]) -> Optional["SyncDeposit"]:
        if not deposit_id:
            return None
        return next((d for d in self.deposits if d.deposit_id == str(deposit_id)), None)

    def deposits_for(self, deposit_type: DepositType) -> List[str]:
        """Deposit ids designated for computation, in declaration order."""
        ids = self.principal_deposit_ids if deposit_type == DepositType.PRINCIPAL else self.shared_deposit_ids
        return [str(deposit_id) for deposit_id in (ids or [])]

    def is_reconcile_due(self, now: datetime) -> bool:
        if not (self.enabled and self.reconcile_enabled):
            return False
        if self.next_reconcile_at is not None:
            return self.next_reconcile_at <= now
        if self.last_reconcile_at is None:
            return True
        return self.last_reconcile_at + self.reconcile_interval <= now

    @property
    def reconcile_interval(self) -> timedelta:
        minutes = self.reconcile_interval_minutes or 30
        minutes = min(max(minutes, MIN_RECONCILE_INTERVAL), MAX_RECONCILE_INTERVAL)
        return timedelta(minutes=minutes)

    def mark_reconciled(self, now: datetime) -> None:
        self.last_reconcile_at = now
        self.next_reconcile_at = now + self.reconcile_interval

    def __repr__(self):
        return (f"<TenantSyncConfig(tenant_id='{self.tenant_id}', enabled={self.enabled}, "
                f"accounts={len(self.accounts or [])}, deposits={len(self.deposits or [])})>")


class SyncAccount(Base):
    """An ERP account linked to a tenant."""
    __tablename__ = "sync_accounts"
    __table_args__ = (UniqueConstraint("config_id", "account_ref", name="uq_sync_account_ref"),)

    id = Column(Integer, primary_key=True, index=True)
    config_id = Column(Integer, ForeignKey("tenant_sync_configs.id", ondelete="CASCADE"), nullable=False, index=True)
    account_ref = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    config = relationship("TenantSyncConfig", back_populates="accounts")

    @property
    def label(self) -> str:
        return self.display_name or self.account_ref


class SyncDeposit(Base):
    """A warehouse on one of the tenant's accounts."""
    __tablename__ = "sync_deposits"
    __table_args__ = (UniqueConstraint("config_id", "deposit_id", name="uq_sync_deposit_id"),)

    id = Column(Integer, primary_key=True, index=True)
    config_id = Column(Integer, ForeignKey("tenant_sync_configs.id", ondelete="CASCADE"), nullable=False, index=True)
    deposit_id = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    deposit_type = Column(String, nullable=False, default=DepositType.PRINCIPAL.value)
    account_ref = Column(String, nullable=True)

    config = relationship("TenantSyncConfig", back_populates="deposits")
