"""Zoho CRM client — OAuth token cache plus retrying lead creation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_chain,
    wait_fixed,
)

from whatsapp_onboarding.config import settings
from whatsapp_onboarding.exceptions import CRMAuthError, CRMSyncError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessToken:
    """Value object returned by the OAuth refresh-token grant."""

    access_token: str
    expires_in: int


class TokenCache:
    """Holds the current CRM bearer token and refreshes it on demand.

    A token is considered stale once it is within ``refresh_margin_seconds``
    of expiry.  Refreshes are serialised with an ``asyncio.Lock`` so that
    concurrent syncs share a single refresh instead of racing.
    """

    def __init__(
        self,
        refresh_margin_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._margin = (
            settings.crm_token_refresh_margin_seconds
            if refresh_margin_seconds is None
            else refresh_margin_seconds
        )
        self._clock = clock
        self._token: str | None = None
        self._expires_at: float = 0.0
        self._lock = asyncio.Lock()

    def current(self) -> str | None:
        """Return the cached token if it is still comfortably valid."""
        if self._token and self._clock() < self._expires_at - self._margin:
            return self._token
        return None

    async def get(self, refresh: Callable[[], Awaitable[AccessToken]]) -> str:
        token = self.current()
        if token:
            return token
        async with self._lock:
            # Another task may have refreshed while we waited.
            token = self.current()
            if token:
                return token
            fresh = await refresh()
            self._token = fresh.access_token
            self._expires_at = self._clock() + fresh.expires_in
            return self._token

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0


@dataclass(frozen=True)
class LeadName:
    first_name: str
    last_name: str


def split_name(name: str) -> LeadName:
    """Split a full name into CRM first/last names.

    ``"Asha Devi Rao"`` → ``("Asha", "Devi Rao")``; a single token is used
    for both fields because Zoho requires ``Last_Name``.
    """
    parts = name.split()
    if not parts:
        return LeadName(first_name="", last_name="")
    first = parts[0]
    return LeadName(first_name=first, last_name=" ".join(parts[1:]) or first)


class ZohoCRMClient:
    """Async client for the Zoho CRM Leads API.

    Parameters
    ----------
    token_cache:
        Shared bearer-token cache.  One cache should be owned per process.
    transport:
        Optional ``httpx`` transport, used by tests to stub the network.
    sleep:
        Coroutine used to wait between attempts.
    retry_delays:
        Wait after attempt *i* fails, before attempt *i + 1*.
    """

    def __init__(
        self,
        token_cache: TokenCache | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_delays: Sequence[float] | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._token_cache = token_cache or TokenCache()
        self._transport = transport
        self._sleep = sleep
        self._retry_delays = list(
            settings.crm_retry_delays if retry_delays is None else retry_delays
        )
        self._max_attempts = max_attempts or settings.crm_max_attempts

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport, timeout=settings.zoho_timeout_seconds
        )

    # ── OAuth ────────────────────────────────────────────

    async def refresh_token(self) -> AccessToken:
        """Exchange the long-lived refresh token for a new access token."""
        url = f"{settings.zoho_accounts_url.rstrip('/')}/oauth/v2/token"
        data = {
            "refresh_token": settings.zoho_refresh_token,
            "client_id": settings.zoho_client_id,
            "client_secret": settings.zoho_client_secret,
            "grant_type": "refresh_token",
        }
        try:
            async with self._client() as client:
                resp = await client.post(url, data=data)
        except httpx.HTTPError as exc:
            logger.error("Zoho token refresh request error: %s", exc)
            raise CRMAuthError("Zoho authentication failed") from exc

        body = _json_or_empty(resp)
        if resp.status_code != 200 or "access_token" not in body:
            logger.error(
                "Failed to refresh Zoho access token: %s %s",
                resp.status_code,
                body.get("error") or resp.text,
            )
            raise CRMAuthError("Zoho authentication failed")

        logger.info("Zoho access token refreshed successfully")
        return AccessToken(
            access_token=body["access_token"],
            expires_in=int(body.get("expires_in", 3600)),
        )

    async def get_access_token(self) -> str:
        return await self._token_cache.get(self.refresh_token)

    # ── Leads ────────────────────────────────────────────

    async def create_lead(self, name: str, email: str, phone: str) -> str:
        """Create a lead and return its Zoho id.

        Each attempt re-resolves the access token.  A token refresh failure
        aborts immediately with ``CRMAuthError``; any other failure is retried
        on the configured schedule and finally raised as ``CRMSyncError``.
        """
        retrying = AsyncRetrying(
            sleep=self._sleep,
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_chain(*(wait_fixed(delay) for delay in self._retry_delays)),
            retry=retry_if_exception_type(CRMSyncError),
            before_sleep=_log_retry(email),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._create_lead_once(name, email, phone)
        except CRMSyncError as exc:
            logger.error("Zoho lead creation for %s gave up: %s", email, exc)
            raise CRMSyncError("Failed to sync with CRM after multiple attempts") from exc
        raise CRMSyncError("Failed to sync with CRM after multiple attempts")

    async def _create_lead_once(self, name: str, email: str, phone: str) -> str:
        token = await self.get_access_token()
        lead_name = split_name(name)
        payload = {
            "data": [
                {
                    "First_Name": lead_name.first_name,
                    "Last_Name": lead_name.last_name,
                    "Email": email,
                    "Phone": phone,
                    "Lead_Source": "OTP Onboarding",
                    "Lead_Status": "Verified",
                    "Description": (
                        "User registered via OTP onboarding on "
                        f"{datetime.now(UTC).isoformat()}"
                    ),
                }
            ],
            "trigger": ["approval", "workflow", "blueprint"],
        }
        headers = {
            "Authorization": f"Zoho-oauthtoken {token}",
            "Content-Type": "application/json",
        }
        url = f"{settings.zoho_api_domain.rstrip('/')}/crm/v3/Leads"

        try:
            async with self._client() as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise CRMSyncError(f"Zoho request error: {exc!r}") from exc

        if resp.status_code == 401:
            self._token_cache.invalidate()

        body = _json_or_empty(resp)
        lead = _first_record(body.get("data"))
        details = lead.get("details")
        lead_id = details.get("id") if isinstance(details, dict) else None
        if resp.status_code // 100 == 2 and lead.get("code") == "SUCCESS" and lead_id:
            lead_id = str(lead_id)
            logger.info("Lead %s created in Zoho CRM for %s", lead_id, email)
            return lead_id

        raise CRMSyncError(
            lead.get("message") or body.get("message") or f"HTTP {resp.status_code}"
        )


def _log_retry(email: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning(
            "Zoho CRM attempt %d for %s failed (%s); retrying in %.0fs",
            state.attempt_number,
            email,
            exc,
            state.next_action.sleep if state.next_action else 0,
        )

    return before_sleep


def _json_or_empty(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _first_record(data: object) -> dict:
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}
