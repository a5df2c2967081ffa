# stocksync/models/processed_event.py
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text, UniqueConstraint

from stocksync.core.enums import LedgerStatus
from stocksync.core.utils import utcnow
from stocksync.database import Base


class ProcessedEvent(Base):
    """
    Idempotency ledger entry.

    One row per fingerprint and tenant. The row is claimed with status
    `processing` before any side effect and completed with the computed
    balances and write outcomes once the synchronizer returns.
    """
    __tablename__ = "processed_events"
    __table_args__ = (UniqueConstraint("tenant_id", "fingerprint", name="uq_processed_event_fingerprint"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    fingerprint = Column(String, nullable=False)

    # --- Event identity ---
    event_id = Column(String, nullable=False)
    product_ref = Column(String, nullable=False, index=True)
    deposit_id = Column(String, nullable=True)
    account_ref = Column(String, nullable=True)
    quantity = Column(Integer, nullable=True)
    kind = Column(String, nullable=True)

    # --- Provenance ---
    trigger = Column(String, nullable=False, index=True)   # webhook, manual, scheduled
    origin = Column(String, nullable=True)                 # human readable account label

    # --- Outcome ---
    status = Column(String, nullable=False, default=LedgerStatus.PROCESSING.value, index=True)
    success = Column(Boolean, nullable=True)
    reason = Column(String, nullable=True)
    error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=1)

    # e.g. {"P1": 5, "P2": 7}
    balances = Column(JSON(none_as_null=True), nullable=True)
    total = Column(Integer, nullable=True)
    # e.g. [{"deposit_id": "S1", "success": true, "quantity": 12}]
    shared_writes = Column(JSON(none_as_null=True), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    # renewed on every claim; a `processing` row older than the lease was abandoned
    claimed_at = Column(DateTime, nullable=False, default=utcnow)
    processed_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return (f"<ProcessedEvent(tenant_id='{self.tenant_id}', fingerprint='{self.fingerprint}', "
                f"status='{self.status}')>")
