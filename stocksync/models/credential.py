# stocksync/models/credential.py
from datetime import datetime, timedelta

from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, UniqueConstraint

from stocksync.core.encryption import EncryptedText
from stocksync.core.utils import utcnow
from stocksync.database import Base


class AccountCredential(Base):
    """
    OAuth grant for one (tenant, account).

    Tokens are encrypted at rest. `is_active` goes false when the upstream
    reports the grant as invalid or revoked; only a new authorization flow
    turns it back on.
    """
    __tablename__ = "account_credentials"
    __table_args__ = (UniqueConstraint("tenant_id", "account_ref", name="uq_credential_tenant_account"),)

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    account_ref = Column(String, nullable=False)
    display_name = Column(String, nullable=True)

    # Upstream company identifier, echoed in webhooks as "companyId"
    company_id = Column(String, nullable=True, index=True)

    access_token = Column(EncryptedText, nullable=True)
    refresh_token = Column(EncryptedText, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    # Optional per-account OAuth app; falls back to the global one
    client_id = Column(String, nullable=True)
    client_secret = Column(EncryptedText, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def needs_refresh(self, now: datetime, margin_seconds: int = 60) -> bool:
        if not self.access_token or self.expires_at is None:
            return True
        return self.expires_at - timedelta(seconds=margin_seconds) <= now

    def __repr__(self):
        return (f"<AccountCredential(tenant_id='{self.tenant_id}', account_ref='{self.account_ref}', "
                f"active={self.is_active})>")
