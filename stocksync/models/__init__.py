from .sync_config import TenantSyncConfig, SyncAccount, SyncDeposit
from .credential import AccountCredential
from .processed_event import ProcessedEvent
from .stock_mirror import StockMirror

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'TenantSyncConfig',
    'SyncAccount',
    'SyncDeposit',
    'AccountCredential',
    'ProcessedEvent',
    'StockMirror',
]
