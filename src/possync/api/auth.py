#!/usr/bin/env python3
"""Toast machine-client authentication.

Exchanges a tenant's decrypted client id / secret for a bearer token using
the Toast login endpoint:

    POST {base_url}/authentication/v1/authentication/login
    {"clientId": ..., "clientSecret": ..., "userAccessType": "TOAST_MACHINE_CLIENT"}

Features:
    - Per-tenant token cache keyed by client id
    - Expiry buffer (10% of TTL, between 30s and 5min) so tokens are
      refreshed before the provider rejects them
    - Serialized refresh per client id using asyncio.Lock
    - Non-2xx login responses raise UpstreamAuthError and are never retried;
      connection failures and timeouts are retried with backoff

Security Notes:
    - Tokens are cached in memory only
    - Logs carry token_id (SHA-256 prefix), never the token or the secret
"""
import asyncio
import hashlib
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp

from ..sync.domain.entities import DecryptedCredentials
from .exceptions import (
    ConnectionError,
    TimeoutError,
    TransientNetworkError,
    UpstreamAuthError,
)
from .resilience import retry_async

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://ws-api.toasttab.com"
LOGIN_PATH = "/authentication/v1/authentication/login"
USER_ACCESS_TYPE = "TOAST_MACHINE_CLIENT"


@dataclass
class CachedToken:
    """Container for a cached access token.

    Attributes:
        access_token: Bearer token string
        expires_at: Unix timestamp when the token expires
        expires_in: Original TTL in seconds
    """
    access_token: str
    expires_at: float
    expires_in: int = 86400

    MAX_BUFFER_SECONDS = 300
    MIN_BUFFER_SECONDS = 30

    @property
    def token_id(self) -> str:
        """Safe identifier for logging (SHA-256, first 8 chars)."""
        return hashlib.sha256(self.access_token.encode()).hexdigest()[:8]

    @property
    def is_expired(self) -> bool:
        buffer = max(self.MIN_BUFFER_SECONDS, min(self.expires_in * 0.1, self.MAX_BUFFER_SECONDS))
        return time.time() >= (self.expires_at - buffer)


class ToastAuthenticator:
    """Multi-tenant token manager for the Toast API.

    Example:
        >>> auth = ToastAuthenticator()
        >>> token = await auth.authenticate(credentials)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        request_timeout: float = 30.0,
        max_attempts: int = 3,
    ):
        self.base_url = (base_url or os.getenv("TOAST_API_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.request_timeout = request_timeout
        self.max_attempts = max_attempts

        self._tokens: dict[str, CachedToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def login_url(self) -> str:
        return f"{self.base_url}{LOGIN_PATH}"

    async def authenticate(self, credentials: DecryptedCredentials) -> str:
        """Return a valid access token for the credentials, fetching if needed.

        Raises:
            UpstreamAuthError: If the provider rejects the login
            TransientNetworkError: If the provider is unreachable after retries
        """
        key = credentials.client_id
        cached = self._tokens.get(key)
        if cached and not cached.is_expired:
            return cached.access_token

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._tokens.get(key)
            if cached and not cached.is_expired:
                return cached.access_token

            token = await retry_async(
                self._fetch_token,
                credentials,
                max_attempts=self.max_attempts,
                retryable_exceptions=(TransientNetworkError,),
            )
            self._tokens[key] = token
            return token.access_token

    def invalidate(self, client_id: str) -> None:
        """Drop a cached token (e.g. after the provider returned 401)."""
        self._tokens.pop(client_id, None)

    def invalidate_token(self, access_token: str) -> None:
        """Drop whichever cached entry holds access_token.

        Callers that only hold the bearer token (the fetcher) use this when
        the provider rejects it, so the next authenticate() logs in again.
        """
        for client_id, cached in list(self._tokens.items()):
            if cached.access_token == access_token:
                logger.info(f"Dropping rejected POS token (id={cached.token_id})")
                del self._tokens[client_id]

    async def _fetch_token(self, credentials: DecryptedCredentials) -> CachedToken:
        payload = {
            "clientId": credentials.client_id,
            "clientSecret": credentials.client_secret,
            "userAccessType": USER_ACCESS_TYPE,
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.login_url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=aiohttp.ClientTimeout(total=self.request_timeout),
                ) as response:
                    if not 200 <= response.status < 300:
                        error_text = await response.text()
                        logger.warning(
                            f"Toast login rejected for location {credentials.location_guid}: "
                            f"HTTP {response.status}"
                        )
                        raise UpstreamAuthError(
                            f"POS provider rejected credentials (HTTP {response.status})",
                            status_code=response.status,
                            details={"response": error_text[:200]},
                        )

                    data = await response.json()

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to POS auth server: {e}",
                host=self.base_url,
                cause=e,
            )

        except asyncio.TimeoutError as e:
            raise TimeoutError(
                "POS login request timed out",
                timeout_seconds=self.request_timeout,
                cause=e,
            )

        token_data = (data or {}).get("token") or {}
        access_token = token_data.get("accessToken")
        if not access_token:
            raise UpstreamAuthError(
                "POS login response missing access token",
                status_code=200,
                details={"response_keys": sorted((data or {}).keys())},
            )

        expires_in = int(token_data.get("expiresIn") or 86400)
        token = CachedToken(
            access_token=access_token,
            expires_at=time.time() + expires_in,
            expires_in=expires_in,
        )
        logger.info(f"POS token fetched (id={token.token_id}), expires in {expires_in}s")
        return token
