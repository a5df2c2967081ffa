"""
Local stock mirror upkeep: one row per (tenant, product) holding the
aggregated total and its per-account breakdown.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from stocksync.core.utils import utcnow
from stocksync.models import StockMirror

logger = logging.getLogger(__name__)


class StockMirrorService:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, tenant_id: str, product_ref: str) -> Optional[StockMirror]:
        async with self.session_factory() as db:
            stmt = select(StockMirror).where(
                StockMirror.tenant_id == str(tenant_id),
                StockMirror.product_ref == str(product_ref),
            )
            return (await db.execute(stmt)).scalar_one_or_none()

    async def upsert(self, tenant_id: str, product_ref: str, per_account: Dict[str, int],
                     synced_at: Optional[datetime] = None) -> StockMirror:
        """Replace the breakdown; the model recomputes the total from it."""
        synced_at = synced_at or utcnow()
        async with self.session_factory() as db:
            stmt = select(StockMirror).where(
                StockMirror.tenant_id == str(tenant_id),
                StockMirror.product_ref == str(product_ref),
            )
            mirror = (await db.execute(stmt)).scalar_one_or_none()
            if mirror is None:
                mirror = StockMirror(tenant_id=str(tenant_id), product_ref=str(product_ref))
                db.add(mirror)
            mirror.per_account = dict(per_account)
            mirror.last_synced_at = synced_at
            await db.commit()
            logger.debug(f"Mirror {tenant_id}/{product_ref} -> total {mirror.total} {mirror.per_account}")
            return mirror

    async def touch(self, tenant_id: str, product_ref: str, visited_at: Optional[datetime] = None) -> None:
        """Mark a product as checked without changing its balances."""
        async with self.session_factory() as db:
            stmt = select(StockMirror).where(
                StockMirror.tenant_id == str(tenant_id),
                StockMirror.product_ref == str(product_ref),
            )
            mirror = (await db.execute(stmt)).scalar_one_or_none()
            if mirror is None:
                return
            mirror.last_synced_at = visited_at or utcnow()
            await db.commit()

    async def list_stale(self, tenant_id: str, older_than: datetime, limit: int = 100) -> List[StockMirror]:
        """Products never synced or last synced before `older_than`, oldest first."""
        async with self.session_factory() as db:
            stmt = (
                select(StockMirror)
                .where(
                    StockMirror.tenant_id == str(tenant_id),
                    or_(StockMirror.last_synced_at.is_(None), StockMirror.last_synced_at < older_than),
                )
                .order_by(StockMirror.last_synced_at.is_(None).desc(), StockMirror.last_synced_at.asc())
                .limit(limit)
            )
            return list((await db.execute(stmt)).scalars().all())
