#!/usr/bin/env python3
"""HTTP Client for the POS provider API.

This module provides the transport the Toast fetcher composes. It handles
the common concerns of provider communication:

    - Connection pooling via a shared aiohttp session
    - Bounded page-level retry with exponential backoff on 5xx, 429,
      connection errors and timeouts
    - No retry on 401/403: those surface as UpstreamAuthError immediately
    - Circuit breaker so a provider outage fails fast
    - Typed exceptions for every failure

Design Philosophy:
    This client knows HOW to talk to the provider, but not WHAT to fetch.
    Endpoints, headers and pagination belong to the fetcher adapter.

Usage:
    async with PosClient() as client:
        data = await client.get(
            "/orders/v2/ordersBulk",
            params={"page": 1, "pageSize": 100},
            headers={"Authorization": f"Bearer {token}"},
        )
"""
import asyncio
import logging
import os
from typing import Any, Optional

import aiohttp

from .exceptions import (
    ConfigurationError,
    ConnectionError,
    RateLimitError,
    ServerError,
    TimeoutError,
    TransientNetworkError,
    UpstreamAPIError,
    UpstreamAuthError,
)
from .resilience import CircuitBreaker, backoff_delay

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60


class PosClient:
    """Async HTTP client for the POS provider.

    Use as an async context manager so the session is always closed:

        async with PosClient() as client:
            data = await client.get("/some/endpoint", headers=...)

    Attributes:
        base_url: Provider API root (e.g., "https://ws-api.toasttab.com")
        max_retries: Attempts per request before the error escalates
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        max_retries: int = 3,
        initial_backoff: float = 1.0,
        request_timeout: float = 60.0,
        enable_circuit_breaker: bool = True,
        circuit_failure_threshold: int = 5,
        circuit_timeout: float = 60.0,
    ):
        self.base_url = (base_url or os.getenv("TOAST_API_BASE_URL", "")).rstrip("/")
        if not self.base_url:
            raise ConfigurationError(
                "Base URL is required. Provide base_url or set TOAST_API_BASE_URL.",
                missing_keys=["TOAST_API_BASE_URL"],
            )

        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.request_timeout = request_timeout

        self._session: Optional[aiohttp.ClientSession] = None

        self._circuit_breaker: Optional[CircuitBreaker] = None
        if enable_circuit_breaker:
            self._circuit_breaker = CircuitBreaker(
                failure_threshold=circuit_failure_threshold,
                timeout=circuit_timeout,
                name="pos_api",
            )

    # ----------------------------------------
    # Context Manager Protocol
    # ----------------------------------------

    async def __aenter__(self) -> "PosClient":
        self._session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=10, limit_per_host=10),
            timeout=aiohttp.ClientTimeout(total=self.request_timeout, connect=10),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    # ----------------------------------------
    # Low-Level Request Methods
    # ----------------------------------------

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> Any:
        """Make a single HTTP request (no retry logic).

        Raises:
            UpstreamAuthError: On 401/403
            UpstreamAPIError: On any other non-2xx (typed by status)
            ConnectionError: If connection to server fails
            TimeoutError: If request times out
            RuntimeError: If called outside of async context manager
        """
        if not self._session:
            raise RuntimeError(
                "PosClient must be used as async context manager: "
                "async with PosClient(...) as client:"
            )

        url = f"{self.base_url}{endpoint}"

        try:
            async with self._session.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_body,
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._create_api_error(
                        status=response.status,
                        method=method,
                        endpoint=endpoint,
                        response_body=error_text,
                        retry_after=response.headers.get("Retry-After"),
                    )

                return await response.json()

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to {self.base_url}",
                host=self.base_url,
                cause=e,
            )

        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Request to {endpoint} timed out",
                timeout_seconds=self.request_timeout,
                cause=e,
            )

        except aiohttp.ClientError as e:
            raise TransientNetworkError(
                f"Network error during {method} {endpoint}: {e}",
                cause=e,
            )

    def _create_api_error(
        self,
        status: int,
        method: str,
        endpoint: str,
        response_body: str,
        retry_after: Optional[str] = None,
    ) -> Exception:
        """Create the typed exception for an error status."""
        if status in (401, 403):
            return UpstreamAuthError(
                f"POS provider denied access to {endpoint} (HTTP {status})",
                status_code=status,
                details={"endpoint": endpoint},
            )

        if status == 429:
            try:
                wait = int(retry_after) if retry_after else DEFAULT_RETRY_AFTER_SECONDS
            except ValueError:
                wait = DEFAULT_RETRY_AFTER_SECONDS
            return RateLimitError(
                f"Rate limit exceeded for {endpoint}",
                retry_after=wait,
                endpoint=endpoint,
                response_body=response_body,
            )

        if status >= 500:
            return ServerError(
                f"Server error ({status}) for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        return UpstreamAPIError(
            f"{method} {endpoint} failed with HTTP {status}",
            status_code=status,
            endpoint=endpoint,
            method=method,
            response_body=response_body,
        )

    async def _request_with_retry(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> Any:
        """Make an HTTP request with bounded retry and circuit breaker.

            - 401/403: raise immediately, never retried
            - 429: wait Retry-After, retry
            - 5xx / network / timeout: exponential backoff, retry
            - other 4xx: raise immediately

        Raises:
            CircuitOpenError: If circuit breaker is open
            UpstreamAuthError: If access is denied
            UpstreamAPIError / TransientNetworkError: After all retries
        """
        if self._circuit_breaker:
            # Raises while open; lets a trial request through once the timeout passes
            await self._circuit_breaker.before_call()

        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                result = await self._request(method, endpoint, params, headers, json_body)
                if self._circuit_breaker:
                    await self._circuit_breaker.record_success()
                return result

            except UpstreamAuthError:
                raise

            except RateLimitError as e:
                last_error = e
                if attempt < self.max_retries:
                    logger.warning(
                        f"Rate limited, waiting {e.retry_after}s (attempt {attempt}/{self.max_retries})"
                    )
                    await asyncio.sleep(e.retry_after)
                    continue

            except (ServerError, TransientNetworkError) as e:
                last_error = e
                if attempt < self.max_retries:
                    delay = backoff_delay(attempt, self.initial_backoff)
                    logger.warning(
                        f"{type(e).__name__} on {method} {endpoint}: {e.message}. "
                        f"Retrying in {delay:.1f}s (attempt {attempt}/{self.max_retries})"
                    )
                    await asyncio.sleep(delay)
                    continue

            except UpstreamAPIError:
                # Remaining 4xx are request bugs, retrying will not help
                raise

        if self._circuit_breaker and last_error:
            await self._circuit_breaker.record_failure(last_error)

        if last_error:
            raise last_error

        raise UpstreamAPIError(
            "Request failed after all retries",
            status_code=0,
            endpoint=endpoint,
            method=method,
        )

    @property
    def circuit_status(self) -> Optional[dict[str, Any]]:
        """Get circuit breaker status for monitoring."""
        if self._circuit_breaker:
            return self._circuit_breaker.get_status()
        return None

    # ----------------------------------------
    # High-Level Request Methods
    # ----------------------------------------

    async def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Make a GET request with retry. Returns parsed JSON."""
        return await self._request_with_retry("GET", endpoint, params=params, headers=headers)

    async def post(
        self,
        endpoint: str,
        json_body: dict,
        headers: Optional[dict] = None,
    ) -> Any:
        """Make a POST request with retry. Returns parsed JSON."""
        return await self._request_with_retry("POST", endpoint, headers=headers, json_body=json_body)
