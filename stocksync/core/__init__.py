"""
Core module exports.
"""
from .enums import (
    AggregationRule,
    DepositType,
    EventKind,
    LedgerStatus,
    SyncTrigger,
)

from .exceptions import (
    BaseServiceError,
    StockSyncError,
    InvalidEvent,
    DuplicateEvent,
    ConfigurationIncomplete,
    ConfigurationInactive,
    ReauthorizationRequired,
    CompositeProductUnsupported,
    RateLimited,
    UpstreamWriteFailed,
    TransientFailure,
    ERPAPIError,
    DispatchError,
)

from .rate_gate import RateGate
from .ttl_cache import TTLCache
