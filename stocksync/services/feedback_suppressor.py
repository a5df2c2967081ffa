"""
Feedback-loop suppression.

Writing a balance to a shared deposit makes the ERP send a stock webhook for
that same deposit. Right before writing, the synchronizer registers the write
here; when the echo arrives the processor consumes one registration and drops
the event. Each registration is consumed at most once, whichever identifier
the echo carries, so unrelated events for the same product are processed
normally once the registrations are used up or expired.
"""

import itertools
import logging
import time
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple

from stocksync.core.ttl_cache import TTLCache

logger = logging.getLogger(__name__)

SuppressionKey = Tuple[str, str, str]
# (registered_at, write number, deposit_id, every identifier registered for the write)
Stamp = Tuple[float, int, str, Tuple[str, ...]]
ANY_DEPOSIT = "*"


class FeedbackLoopSuppressor:

    def __init__(self, cache: TTLCache, ttl: float = 30.0, max_entries: int = 5,
                 clock: Callable[[], float] = time.monotonic):
        self.cache = cache
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._writes = itertools.count(1)

    @staticmethod
    def key(tenant_id: str, deposit_id: Optional[str], product_ref: str) -> SuppressionKey:
        return (str(tenant_id), str(deposit_id) if deposit_id else ANY_DEPOSIT, str(product_ref))

    def register(self, tenant_id: str, deposit_id: str, product_refs: Iterable[str]) -> None:
        """
        Record an impending write. Every identifier the echo may carry (SKU and
        the account-local product id) is registered, each under the deposit key
        and under the deposit-less key.
        """
        now = self._clock()
        refs = tuple(sorted({str(ref) for ref in product_refs if ref}))
        stamp: Stamp = (now, next(self._writes), str(deposit_id), refs)
        for key in self._keys(tenant_id, deposit_id, refs):
            stamps = self._live(key, now)
            stamps.append(stamp)
            self.cache.set(key, stamps[-self.max_entries:], ttl=self.ttl)

    def consume(self, tenant_id: str, deposit_id: Optional[str], product_ref: str) -> bool:
        """
        Returns True (and uses up one registration) if the event looks like the
        echo of one of our own writes.

        The registration is withdrawn from every key it was filed under, so a
        later event naming the same write by another identifier is processed.
        """
        now = self._clock()
        key = self.key(tenant_id, deposit_id, product_ref)
        stamp = self._pop_oldest(key, now)
        if stamp is None:
            return False
        _, write, registered_deposit, refs = stamp
        for sibling in self._keys(tenant_id, registered_deposit, refs):
            if sibling != key:
                self._discard(sibling, write, now)
        logger.info(f"Suppressed self-generated event for tenant {tenant_id} deposit {deposit_id or ANY_DEPOSIT} "
                    f"product {product_ref}")
        return True

    def _keys(self, tenant_id: str, deposit_id: Optional[str], refs: Sequence[str]) -> Iterator[SuppressionKey]:
        for product_ref in refs:
            yield self.key(tenant_id, deposit_id, product_ref)
            yield self.key(tenant_id, None, product_ref)

    def _live(self, key: SuppressionKey, now: float) -> List[Stamp]:
        stamps = self.cache.get(key) or []
        return [stamp for stamp in stamps if now - stamp[0] < self.ttl]

    def _store(self, key: SuppressionKey, stamps: List[Stamp]) -> None:
        if stamps:
            self.cache.set(key, stamps, ttl=self.ttl)
        else:
            self.cache.delete(key)

    def _pop_oldest(self, key: SuppressionKey, now: float) -> Optional[Stamp]:
        stamps = self._live(key, now)
        if not stamps:
            self.cache.delete(key)
            return None
        stamp = stamps.pop(0)
        self._store(key, stamps)
        return stamp

    def _discard(self, key: SuppressionKey, write: int, now: float) -> None:
        self._store(key, [stamp for stamp in self._live(key, now) if stamp[1] != write])
