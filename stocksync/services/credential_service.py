"""
Account credential lookups for the ERP adapter.

Credentials are read and written in short-lived sessions because the adapter
is called concurrently from queue workers and the reconciliation sweep.
"""

import logging
from datetime import timedelta
from typing import List, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from stocksync.core.utils import utcnow
from stocksync.models import AccountCredential

logger = logging.getLogger(__name__)


class CredentialService:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, tenant_id: str, account_ref: str) -> Optional[AccountCredential]:
        async with self.session_factory() as db:
            stmt = select(AccountCredential).where(
                AccountCredential.tenant_id == str(tenant_id),
                AccountCredential.account_ref == str(account_ref),
            )
            result = await db.execute(stmt)
            return result.scalar_one_or_none()

    async def active_account_refs(self, tenant_id: str) -> Set[str]:
        """Accounts whose grant is still valid according to the credential records."""
        async with self.session_factory() as db:
            stmt = select(AccountCredential.account_ref).where(
                AccountCredential.tenant_id == str(tenant_id),
                AccountCredential.is_active.is_(True),
            )
            result = await db.execute(stmt)
            return set(result.scalars().all())

    async def find_by_company(self, company_id: str) -> List[AccountCredential]:
        async with self.session_factory() as db:
            stmt = select(AccountCredential).where(
                AccountCredential.company_id == str(company_id),
                AccountCredential.is_active.is_(True),
            )
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def save_tokens(self, tenant_id: str, account_ref: str, access_token: str,
                          refresh_token: Optional[str], expires_in: int) -> None:
        values = {
            "access_token": access_token,
            "expires_at": utcnow() + timedelta(seconds=int(expires_in)),
            "is_active": True,
            "last_error": None,
            "updated_at": utcnow(),
        }
        if refresh_token:
            values["refresh_token"] = refresh_token
        async with self.session_factory() as db:
            await db.execute(
                update(AccountCredential)
                .where(
                    AccountCredential.tenant_id == str(tenant_id),
                    AccountCredential.account_ref == str(account_ref),
                )
                .values(**values)
            )
            await db.commit()
        logger.info(f"Stored refreshed token for tenant {tenant_id} account {account_ref}")

    async def deactivate(self, tenant_id: str, account_ref: str, error: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(AccountCredential)
                .where(
                    AccountCredential.tenant_id == str(tenant_id),
                    AccountCredential.account_ref == str(account_ref),
                )
                .values(is_active=False, last_error=error[:2000], updated_at=utcnow())
            )
            await db.commit()
        logger.warning(f"Deactivated credentials for tenant {tenant_id} account {account_ref}: {error}")
