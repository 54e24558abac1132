#!/usr/bin/env python3
"""
Wix API Client
Handles all direct API calls to the Wix Pricing Plans and Members APIs.

Canonical Owner: This module owns all Wix API interactions.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Tuple

import aiohttp
from aiohttp import ContentTypeError

from ChannelSync.models import Order
from ChannelSync.sync_utils import RetryPolicy

log = logging.getLogger("channel-sync")

DEFAULT_BASE_URL = "https://www.wixapis.com"


class WixAPIError(Exception):
    """Wix API failure. `transient` errors are worth retrying."""

    def __init__(self, message: str, *, status: Optional[int] = None, transient: bool = False):
        super().__init__(message)
        self.status = status
        self.transient = transient


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, WixAPIError) and exc.transient


class WixAPIClient:
    """Client for the Wix REST APIs (site-scoped API key)."""

    def __init__(
        self,
        api_key: str,
        account_id: str,
        site_id: str,
        base_url: str = DEFAULT_BASE_URL,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_s: float = 10.0,
    ):
        """
        Initialize Wix API client.

        Args:
            api_key: Wix API key (from the account's API Keys manager)
            account_id: Wix account ID (sent as wix-account-id)
            site_id: Wix site ID (sent as wix-site-id)
            base_url: Base URL for Wix API
        """
        if not api_key:
            raise ValueError("Wix API key is required")
        if not site_id:
            raise ValueError("Wix site_id is required")

        self.base_url = base_url.rstrip("/")
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_s = float(timeout_s)
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "wix-account-id": str(account_id or ""),
            "wix-site-id": str(site_id),
            "Accept": "application/json",
        }

    def _extract_error_message(self, data: object, status: int) -> str:
        """Extract a readable error message from Wix's error formats."""
        if isinstance(data, dict):
            # Common Wix shape: {"message": "...", "details": {"applicationError": {"code": "..."}}}
            msg = data.get("message")
            code = None
            details = data.get("details")
            if isinstance(details, dict):
                app_err = details.get("applicationError")
                if isinstance(app_err, dict):
                    code = app_err.get("code")
            if msg and code:
                return f"{msg} ({code})"
            if msg:
                return str(msg)
        return f"API error: {status}"

    async def _request_once(self, method: str, endpoint: str, params: Optional[Dict] = None) -> Dict:
        url = f"{self.base_url}{endpoint}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(
                    method=method,
                    url=url,
                    headers=self.headers,
                    params=params,
                    timeout=aiohttp.ClientTimeout(total=self.timeout_s),
                ) as resp:
                    if resp.status == 401:
                        raise WixAPIError("Invalid API key or expired token", status=401)
                    if resp.status == 403:
                        raise WixAPIError("API key lacks required permissions", status=403)
                    if resp.status == 429:
                        raise WixAPIError("Rate limit exceeded", status=429, transient=True)

                    try:
                        data = await resp.json()
                    except ContentTypeError:
                        txt = (await resp.text())[:2000]
                        data = {"message": txt}

                    if resp.status >= 400:
                        raise WixAPIError(
                            self._extract_error_message(data, resp.status),
                            status=resp.status,
                            transient=resp.status >= 500,
                        )
                    return data if isinstance(data, dict) else {}
        except aiohttp.ClientError as e:
            raise WixAPIError(f"Network error: {e}", transient=True) from e
        except asyncio.TimeoutError as e:
            raise WixAPIError(f"Request timed out after {self.timeout_s}s", transient=True) from e

    async def _request(self, method: str, endpoint: str, params: Optional[Dict] = None) -> Dict:
        """
        Make API request to Wix, retrying transient failures.

        Raises:
            WixAPIError: If request fails after the retry policy is exhausted
        """
        async for attempt in self.retry_policy.retrying(_is_transient):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    log.info(f"[Wix] Retrying {method} {endpoint} (attempt {attempt.retry_state.attempt_number})")
                data = await self._request_once(method, endpoint, params=params)
        return data

    async def fetch_orders_page(self, offset: int, limit: int) -> Tuple[List[Order], bool]:
        """
        Fetch one page of Pricing Plans orders.

        Wix uses offset/limit paging here; a short page is the last page.

        Returns: (orders, has_more)
        """
        response = await self._request(
            "GET",
            "/pricing-plans/v2/orders",
            params={"limit": int(limit), "offset": int(offset)},
        )
        raw = response.get("orders") or []
        orders = [Order.from_api(o) for o in raw if isinstance(o, dict)] if isinstance(raw, list) else []
        return orders, len(orders) == int(limit)

    async def get_member(self, member_id: str) -> Dict:
        """Get a site member with the FULL fieldset (contact custom fields + login email)."""
        mid = str(member_id or "").strip()
        if not mid:
            raise WixAPIError("member_id is required")
        return await self._request("GET", f"/members/v1/members/{mid}", params={"fieldsets": "FULL"})
