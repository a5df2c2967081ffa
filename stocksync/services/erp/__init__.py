from .auth import ERPAuthManager
from .client import ERPClient
from .reserved_stock import ReservedStockInference
from .adapter import ERPStockAdapter
