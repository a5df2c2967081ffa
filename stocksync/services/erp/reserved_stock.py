"""
Reserved-stock inference.

While an order is being fulfilled the ERP may report reserved=0 even though
physical and virtual balances still differ. We keep the last positive
reservation per (tenant, account, product, deposit) and only consider it
consumed when the virtual balance drops. A physical change alone (stock
recount) never clears it.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from stocksync.core.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

ReserveKey = Tuple[str, str, str, str]


@dataclass
class ReservedEntry:
    reserved: int
    physical: int
    virtual: int
    method: str


class ReservedStockInference:

    def __init__(self, cache: TTLCache):
        self.cache = cache

    @staticmethod
    def key(tenant_id: str, account_ref: str, product_id: str, deposit_id: str) -> ReserveKey:
        return (str(tenant_id), str(account_ref), str(product_id), str(deposit_id))

    def resolve(self, key: ReserveKey, physical: int, virtual: int, reported: int) -> Tuple[int, str]:
        """
        Work out the effective reserved quantity.

        Returns:
            (reserved, method) where method is "reported", "implicit", "cached" or "none"
        """
        reserved, method = reported, "reported"

        if reserved <= 0 and physical > virtual:
            reserved, method = physical - virtual, "implicit"

        if reserved <= 0:
            cached: Optional[ReservedEntry] = self.cache.get(key)
            if cached is not None and cached.reserved > 0:
                consumed = max(0, cached.virtual - virtual)
                reserved, method = max(0, cached.reserved - consumed), "cached"
                logger.debug(f"Reserved for {key} recomputed from cache: {cached.reserved} - {consumed} = {reserved}")

        if reserved > 0:
            self.cache.set(key, ReservedEntry(reserved=reserved, physical=physical, virtual=virtual, method=method))
            return reserved, method

        if self.cache.delete(key):
            logger.debug(f"Reservation for {key} settled, cache entry evicted")
        return 0, "none"
