import asyncio
import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Callable, Dict, Optional

import httpx

from stocksync.core.config import Settings, get_settings
from stocksync.core.exceptions import ERPAPIError, RateLimited
from stocksync.core.rate_gate import RateGate
from stocksync.services.erp.auth import ERPAuthManager

logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str], default: float) -> float:
    """Retry-After may be delta-seconds or an HTTP date."""
    if not value:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())


class ERPClient:
    """
    Asynchronous client for the ERP REST API (v3).

    Every request passes through the shared RateGate, carries a bearer token
    for the target account, and:
        - retries HTTP 429 up to ERP_MAX_RATE_LIMIT_RETRIES times honoring Retry-After
        - refreshes the token once and retries on HTTP 401
        - raises ERPAPIError for any other non-2xx answer
    """

    def __init__(self, auth: ERPAuthManager, rate_gate: RateGate, settings: Optional[Settings] = None,
                 sleep: Callable = asyncio.sleep):
        self.auth = auth
        self.rate_gate = rate_gate
        self.settings = settings or get_settings()
        self.BASE_URL = self.settings.ERP_API_URL.rstrip("/")
        self._sleep = sleep

    def _get_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        tenant_id: str,
        account_ref: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> Dict[str, Any]:
        """
        Make a request to the ERP API on behalf of one account

        Returns:
            Dict: Response data

        Raises:
            ReauthorizationRequired: the account's grant was revoked
            RateLimited: still throttled after the allowed retries
            ERPAPIError: any other failed request
        """
        url = f"{self.BASE_URL}/{endpoint.lstrip('/')}"
        access_token = await self.auth.get_access_token(tenant_id, account_ref)
        rate_limit_retries = 0
        refreshed = False

        logger.debug(f"Making {method} request to {url} for account {account_ref}")
        if params:
            logger.debug(f"Params: {params}")
        if data:
            logger.debug(f"Data: {json.dumps(data)[:500]}")

        while True:
            await self.rate_gate.acquire()
            try:
                async with httpx.AsyncClient(timeout=self.settings.ERP_REQUEST_TIMEOUT) as client:
                    response = await client.request(
                        method=method,
                        url=url,
                        headers=self._get_headers(access_token),
                        json=data,
                        params=params,
                    )
            except httpx.RequestError as e:
                logger.error(f"Network error calling ERP {method} {endpoint}: {str(e)}")
                raise ERPAPIError(f"Network error: {str(e)}")

            if response.status_code == 429:
                delay = parse_retry_after(response.headers.get("Retry-After"),
                                          self.settings.ERP_DEFAULT_RETRY_AFTER)
                if rate_limit_retries >= self.settings.ERP_MAX_RATE_LIMIT_RETRIES:
                    logger.warning(f"ERP rate limit persists for {method} {endpoint} after "
                                   f"{rate_limit_retries} retries")
                    raise RateLimited(f"Rate limited on {method} {endpoint}", retry_after=delay)
                rate_limit_retries += 1
                logger.info(f"ERP rate limited {method} {endpoint}, retry {rate_limit_retries} in {delay:.2f}s")
                await self._sleep(delay)
                continue

            if response.status_code == 401 and not refreshed:
                logger.info(f"ERP rejected token for account {account_ref}, refreshing once")
                access_token = await self.auth.get_access_token(tenant_id, account_ref, stale_token=access_token)
                refreshed = True
                continue

            if response.status_code not in (200, 201, 202, 204):
                payload = self._safe_json(response)
                if response.status_code != 404:
                    logger.error(f"ERP API error {response.status_code} on {method} {endpoint}: {response.text[:500]}")
                raise ERPAPIError(
                    f"Request failed ({response.status_code}): {response.text[:500]}",
                    status_code=response.status_code,
                    payload=payload,
                )

            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

    @staticmethod
    def _safe_json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return None

    async def get(self, endpoint: str, tenant_id: str, account_ref: str, params: Optional[Dict] = None) -> Dict:
        return await self._make_request("GET", endpoint, tenant_id, account_ref, params=params)

    async def post(self, endpoint: str, tenant_id: str, account_ref: str, data: Optional[Dict] = None) -> Dict:
        return await self._make_request("POST", endpoint, tenant_id, account_ref, data=data)
