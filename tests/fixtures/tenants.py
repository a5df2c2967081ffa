"""Tenant, account and product data shared by the pipeline tests."""
from typing import Iterable, Optional, Sequence, Tuple

from stocksync.core.utils import utcnow
from stocksync.models import AccountCredential, SyncAccount, SyncDeposit, TenantSyncConfig

TENANT_ID = "tenant-1"
SKU = "SKU-1"

# account_ref, display name, company id, product id of SKU-1
ACCOUNTS = (
    ("accA", "Loja A", "cmp-a", "101"),
    ("accB", "Loja B", "cmp-b", "201"),
    ("accC", "Loja C", "cmp-c", "301"),
)
# deposit_id, account_ref, deposit type
DEPOSITS = (
    ("P1", "accA", "principal"),
    ("P2", "accB", "principal"),
    ("S1", "accC", "shared"),
)


async def seed_tenant(
    session_factory,
    tenant_id: str = TENANT_ID,
    accounts: Sequence[Tuple[str, str, str, str]] = ACCOUNTS,
    deposits: Sequence[Tuple[str, str, str]] = DEPOSITS,
    enabled: bool = True,
    aggregation_rule: str = "sum",
    inactive_credentials: Iterable[str] = (),
    reconcile_interval_minutes: int = 30,
) -> None:
    inactive_credentials = set(inactive_credentials)
    async with session_factory() as session:
        config = TenantSyncConfig(
            tenant_id=tenant_id,
            enabled=enabled,
            aggregation_rule=aggregation_rule,
            principal_deposit_ids=[d for d, _, kind in deposits if kind == "principal"],
            shared_deposit_ids=[d for d, _, kind in deposits if kind == "shared"],
            reconcile_interval_minutes=reconcile_interval_minutes,
        )
        config.accounts = [
            SyncAccount(account_ref=ref, display_name=name, is_active=True) for ref, name, _, _ in accounts
        ]
        config.deposits = [
            SyncDeposit(deposit_id=deposit_id, account_ref=account_ref, deposit_type=kind,
                        display_name=f"Deposit {deposit_id}")
            for deposit_id, account_ref, kind in deposits
        ]
        session.add(config)
        for ref, name, company_id, _ in accounts:
            session.add(AccountCredential(
                tenant_id=tenant_id,
                account_ref=ref,
                display_name=name,
                company_id=company_id,
                access_token=f"token-{ref}",
                refresh_token=f"refresh-{ref}",
                expires_at=None,
                is_active=ref not in inactive_credentials,
            ))
        await session.commit()


async def seed_credential(session_factory, tenant_id: str = TENANT_ID, account_ref: str = "accA",
                          access_token: Optional[str] = "token-accA", expires_at=None,
                          is_active: bool = True) -> None:
    async with session_factory() as session:
        session.add(AccountCredential(
            tenant_id=tenant_id,
            account_ref=account_ref,
            company_id="cmp-a",
            access_token=access_token,
            refresh_token=f"refresh-{account_ref}",
            expires_at=expires_at if expires_at is not None else utcnow(),
            is_active=is_active,
        ))
        await session.commit()


def seed_platform(platform, sku: str = SKU, balances=(("accA", "101", "P1", 5), ("accB", "201", "P2", 7)),
                  accounts: Sequence[Tuple[str, str, str, str]] = ACCOUNTS) -> None:
    for ref, _, _, product_id in accounts:
        platform.add_product(ref, product_id, sku)
    for account_ref, product_id, deposit_id, physical in balances:
        platform.set_balance(account_ref, product_id, deposit_id, physical)
