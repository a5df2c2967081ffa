# stocksync/models/stock_mirror.py
from typing import Dict

from sqlalchemy import Column, DateTime, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import validates

from stocksync.core.utils import utcnow
from stocksync.database import Base


class StockMirror(Base):
    """
    Local copy of the aggregated stock of one product for one tenant.

    `total` is always recomputed from `per_account`; assigning the breakdown
    is the only way to change it.
    """
    __tablename__ = "stock_mirror"
    __table_args__ = (UniqueConstraint("tenant_id", "product_ref", name="uq_stock_mirror_product"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    product_ref = Column(String, nullable=False, index=True)

    total = Column(Integer, nullable=False, default=0)
    per_account = Column(JSON, nullable=False, default=dict)

    last_synced_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @validates("per_account")
    def _recompute_total(self, key, value: Dict[str, int]):
        breakdown = {str(account): int(quantity) for account, quantity in (value or {}).items()}
        self.total = sum(breakdown.values())
        return breakdown

    def __repr__(self):
        return f"<StockMirror(tenant_id='{self.tenant_id}', product_ref='{self.product_ref}', total={self.total})>"
