"""
ERP OAuth token management.

Access tokens live on the account credential record (encrypted at rest) and
are refreshed shortly before expiry. Refreshes are serialized per account:
the ERP rotates refresh tokens, so two concurrent refreshes with the same
refresh token would make the second one fail with invalid_grant.
"""

import asyncio
import json
import logging
from typing import Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from stocksync.core.config import Settings, get_settings
from stocksync.core.exceptions import ERPAPIError, ReauthorizationRequired
from stocksync.core.rate_gate import RateGate
from stocksync.core.utils import utcnow
from stocksync.models import AccountCredential
from stocksync.services.credential_service import CredentialService

logger = logging.getLogger(__name__)

# Upstream answers that mean the grant itself is gone
REVOKED_GRANT_MARKERS = ("invalid_grant", "FORBIDDEN", "invalid_token_refresh")
DEFAULT_TOKEN_LIFETIME = 6 * 3600


class ERPAuthManager:
    """
    Hands out valid access tokens per (tenant, account).
    """

    def __init__(self, credentials: CredentialService, rate_gate: RateGate,
                 settings: Optional[Settings] = None):
        self.credentials = credentials
        self.rate_gate = rate_gate
        self.settings = settings or get_settings()
        self.token_url = f"{self.settings.ERP_API_URL.rstrip('/')}/oauth/token"
        self.authorize_url = f"{self.settings.ERP_API_URL.rstrip('/')}/oauth/authorize"
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, tenant_id: str, account_ref: str) -> asyncio.Lock:
        key = (str(tenant_id), str(account_ref))
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    async def get_access_token(self, tenant_id: str, account_ref: str,
                               stale_token: Optional[str] = None) -> str:
        """
        Get a valid access token, refreshing if necessary.

        Args:
            stale_token: a token the caller just saw rejected; forces a refresh
                unless another caller has already replaced it.
        """
        async with self._lock_for(tenant_id, account_ref):
            credential = await self.credentials.get(tenant_id, account_ref)
            if credential is None:
                raise ReauthorizationRequired(
                    f"Account {account_ref} has no stored credentials",
                    reauth_url=self.authorization_url(tenant_id, account_ref),
                    account_ref=account_ref, tenant_id=tenant_id,
                )
            if not credential.is_active:
                raise ReauthorizationRequired(
                    f"Account {account_ref} is deactivated: {credential.last_error or 'grant revoked'}",
                    reauth_url=self.authorization_url(tenant_id, account_ref, credential),
                    account_ref=account_ref, tenant_id=tenant_id,
                )

            rejected = stale_token is not None and credential.access_token == stale_token
            if not rejected and not credential.needs_refresh(utcnow(), self.settings.ERP_TOKEN_REFRESH_MARGIN):
                return credential.access_token

            logger.info(f"Refreshing access token for tenant {tenant_id} account {account_ref}")
            return await self._refresh(credential)

    def _client_credentials(self, credential: Optional[AccountCredential]) -> Tuple[str, str]:
        if credential is not None and credential.client_id and credential.client_secret:
            return credential.client_id, credential.client_secret
        return self.settings.ERP_CLIENT_ID, self.settings.ERP_CLIENT_SECRET

    async def _refresh(self, credential: AccountCredential) -> str:
        tenant_id, account_ref = credential.tenant_id, credential.account_ref
        if not credential.refresh_token:
            await self._revoke(credential, "No refresh token stored")

        client_id, client_secret = self._client_credentials(credential)
        refresh_data = {
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        }

        await self.rate_gate.acquire()
        try:
            async with httpx.AsyncClient(timeout=self.settings.ERP_REQUEST_TIMEOUT) as client:
                response = await client.post(
                    self.token_url,
                    data=refresh_data,
                    auth=httpx.BasicAuth(client_id, client_secret),
                    headers={"Accept": "1.0"},
                )
        except httpx.RequestError as e:
            logger.error(f"Network error refreshing token for account {account_ref}: {str(e)}")
            raise ERPAPIError(f"Network error refreshing access token: {str(e)}")

        if response.status_code == 200:
            token_data = response.json()
            access_token = token_data["access_token"]
            await self.credentials.save_tokens(
                tenant_id, account_ref,
                access_token=access_token,
                refresh_token=token_data.get("refresh_token"),
                expires_in=token_data.get("expires_in", DEFAULT_TOKEN_LIFETIME),
            )
            logger.info(f"Successfully refreshed access token for account {account_ref}")
            return access_token

        error_text = response.text
        logger.error(f"Token refresh failed for account {account_ref} ({response.status_code}): {error_text}")
        if response.status_code in (401, 403) or any(marker in error_text for marker in REVOKED_GRANT_MARKERS):
            await self._revoke(credential, self._describe_error(error_text))
        raise ERPAPIError(f"Failed to refresh access token: {error_text}", status_code=response.status_code)

    async def _revoke(self, credential: AccountCredential, reason: str) -> None:
        """Deactivate the account and raise; the tenant has to authorize again."""
        await self.credentials.deactivate(credential.tenant_id, credential.account_ref, reason)
        raise ReauthorizationRequired(
            f"Authorization for account {credential.account_ref} is no longer valid: {reason}",
            reauth_url=self.authorization_url(credential.tenant_id, credential.account_ref, credential),
            account_ref=credential.account_ref, tenant_id=credential.tenant_id,
        )

    @staticmethod
    def _describe_error(error_text: str) -> str:
        try:
            body = json.loads(error_text)
        except ValueError:
            return error_text[:500]
        if not isinstance(body, dict):
            return error_text[:500]
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("description") or error.get("message") or error.get("type") or error_text[:500]
        return str(body.get("error_description") or error or error_text[:500])

    def authorization_url(self, tenant_id: str, account_ref: str,
                          credential: Optional[AccountCredential] = None) -> str:
        """Generate the URL a tenant follows to link (or re-link) an account"""
        client_id, _ = self._client_credentials(credential)
        params = {
            "response_type": "code",
            "client_id": client_id,
            "state": f"{tenant_id}:{account_ref}",
        }
        if self.settings.ERP_REDIRECT_URI:
            params["redirect_uri"] = self.settings.ERP_REDIRECT_URI
        if self.settings.ERP_OAUTH_SCOPES:
            params["scope"] = " ".join(self.settings.ERP_OAUTH_SCOPES)
        return f"{self.authorize_url}?{urlencode(params)}"
