"""Toast API adapter for fetching orders.

This adapter implements IRemoteFetcher by composing ToastAuthenticator
(token exchange) with PosClient (retrying transport). It owns the
provider-specific parts of a fetch: endpoint, headers, 30-day chunking
and page-number pagination.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from ...api.exceptions import UpstreamAuthError
from ..domain.entities import DEFAULT_CHUNK_DAYS, DecryptedCredentials, Page, PageCursor, SyncWindow
from ..domain.ports import IRemoteFetcher

if TYPE_CHECKING:
    from ...api.auth import ToastAuthenticator
    from ...api.client import PosClient

logger = logging.getLogger(__name__)


def _toast_date(value) -> str:
    """Toast wants millisecond precision and a compact offset."""
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}+0000"


class ToastFetcher(IRemoteFetcher):
    """Toast ordersBulk adapter.

    A window longer than chunk_days is fetched as consecutive chunks; each
    chunk is paged with page numbers starting at 1. A page shorter than
    page_size ends the chunk.
    """

    ENDPOINT = "/orders/v2/ordersBulk"

    def __init__(
        self,
        client: "PosClient",
        authenticator: "ToastAuthenticator",
        page_size: int = 100,
        page_delay_seconds: float = 0.2,
        chunk_days: int = DEFAULT_CHUNK_DAYS,
    ):
        """Initialize the fetcher.

        Args:
            client: PosClient already entered as an async context manager
            authenticator: Token cache used by authenticate()
            page_size: Orders per request (Toast maximum is 100)
            page_delay_seconds: Pause between consecutive page requests
            chunk_days: Longest date range sent in one request
        """
        self.client = client
        self.authenticator = authenticator
        self.page_size = page_size
        self.page_delay_seconds = page_delay_seconds
        self.chunk_days = chunk_days

    async def authenticate(self, credentials: DecryptedCredentials) -> str:
        return await self.authenticator.authenticate(credentials)

    async def fetch_page(
        self,
        access_token: str,
        location_guid: str,
        window: SyncWindow,
        cursor: PageCursor,
    ) -> Page:
        """Fetch the page at cursor and compute the cursor after it."""
        chunks = window.chunks(self.chunk_days)
        chunk = chunks[cursor.chunk_index]

        if cursor.page > 1 or cursor.chunk_index > 0:
            await asyncio.sleep(self.page_delay_seconds)

        try:
            body = await self.client.get(
                self.ENDPOINT,
                params={
                    "startDate": _toast_date(chunk.start_date),
                    "endDate": _toast_date(chunk.end_date),
                    "pageSize": self.page_size,
                    "page": cursor.page,
                },
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Toast-Restaurant-External-ID": location_guid,
                },
            )
        except UpstreamAuthError:
            # Revoked or expired early; the next job must log in again
            self.authenticator.invalidate_token(access_token)
            raise
        records, total = self._unpack(body)

        if len(records) >= self.page_size:
            next_cursor = PageCursor(cursor.chunk_index, cursor.page + 1)
        elif cursor.chunk_index + 1 < len(chunks):
            next_cursor = PageCursor(cursor.chunk_index + 1, 1)
        else:
            next_cursor = None

        logger.debug(
            f"Fetched {len(records)} orders "
            f"(chunk {cursor.chunk_index + 1}/{len(chunks)}, page {cursor.page})"
        )

        return Page(
            records=records,
            next_cursor=next_cursor,
            estimated_total=total,
            chunk_index=cursor.chunk_index,
            total_chunks=len(chunks),
        )

    @staticmethod
    def _unpack(body: Any) -> tuple[list[dict[str, Any]], int | None]:
        """ordersBulk returns a bare list; some gateways wrap it with a count."""
        if isinstance(body, list):
            return body, None
        if isinstance(body, dict):
            records = body.get("orders") or body.get("data") or []
            total = body.get("totalCount", body.get("total"))
            return records, int(total) if total is not None else None
        return [], None
