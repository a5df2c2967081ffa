from typing import Any, Optional


class BaseServiceError(Exception):
    """Base exception for all service-related errors."""
    pass


class StockSyncError(BaseServiceError):
    """
    Base exception for the stock synchronization pipeline.

    `retryable` tells the dispatch layer whether the job may be attempted again.
    `reason` is the short machine-readable label stored in the ledger.
    """
    retryable = False
    reason = "error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.__class__.__doc__)
        self.details = details


class InvalidEvent(StockSyncError):
    """Event is missing its tenant, product or event identifiers."""
    reason = "invalid"


class DuplicateEvent(StockSyncError):
    """Event fingerprint was already recorded in the ledger."""
    reason = "duplicate"


class ConfigurationIncomplete(StockSyncError):
    """Tenant sync configuration is missing accounts, deposits or principal/shared sets."""
    reason = "configuration_incomplete"


class ConfigurationInactive(StockSyncError):
    """Tenant sync configuration is absent or disabled."""
    reason = "inactive"


class ReauthorizationRequired(StockSyncError):
    """Account grant was revoked upstream and the account must be linked again."""
    reason = "reauthorization_required"

    def __init__(self, message: str = "", reauth_url: Optional[str] = None,
                 account_ref: Optional[str] = None, tenant_id: Optional[str] = None):
        super().__init__(message, reauth_url=reauth_url, account_ref=account_ref)
        self.reauth_url = reauth_url
        self.account_ref = account_ref
        self.tenant_id = tenant_id


class CompositeProductUnsupported(StockSyncError):
    """Product is a kit/composite item and cannot be written automatically."""
    reason = "composite_product"

    def __init__(self, message: str = "", product_ref: Optional[str] = None,
                 account_ref: Optional[str] = None):
        super().__init__(message, product_ref=product_ref, account_ref=account_ref)
        self.product_ref = product_ref
        self.account_ref = account_ref


class RateLimited(StockSyncError):
    """Upstream kept answering 429 after the allowed retries."""
    retryable = True
    reason = "rate_limited"

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message, retry_after=retry_after)
        self.retry_after = retry_after


class UpstreamWriteFailed(StockSyncError):
    """Writing the computed balance to one shared deposit failed."""
    reason = "write_failed"


class TransientFailure(StockSyncError):
    """Any other failure; retried by the dispatch layer and then dead-lettered."""
    retryable = True
    reason = "transient_failure"


class ERPAPIError(BaseServiceError):
    """Raised when ERP API calls fail."""

    def __init__(self, message: str, status_code: Optional[int] = None, payload: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class DispatchError(BaseServiceError):
    """Raised when the broker cannot accept a job."""
    pass
