"""Tests for the ToastFetcher adapter."""

import time
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.possync.api.auth import CachedToken, ToastAuthenticator
from src.possync.api.exceptions import RateLimitError, UpstreamAuthError
from src.possync.sync.adapters import ToastFetcher
from src.possync.sync.adapters.toast_fetcher import _toast_date
from src.possync.sync.domain.entities import DecryptedCredentials, PageCursor, SyncWindow

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


def orders(n, prefix="o"):
    return [{"guid": f"{prefix}-{i}"} for i in range(n)]


@pytest.fixture
def client():
    client = MagicMock()
    client.get = AsyncMock()
    return client


@pytest.fixture
def authenticator():
    authenticator = MagicMock()
    authenticator.authenticate = AsyncMock(return_value="tok")
    return authenticator


@pytest.fixture
def fetcher(client, authenticator):
    return ToastFetcher(client, authenticator, page_size=2, page_delay_seconds=0.5)


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("src.possync.sync.adapters.toast_fetcher.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestToastDate:

    def test_millisecond_precision(self):
        value = datetime(2026, 3, 15, 4, 5, 6, 789123, tzinfo=UTC)
        assert _toast_date(value) == "2026-03-15T04:05:06.789+0000"


class TestFetchPage:
    """Tests for ToastFetcher.fetch_page."""

    @pytest.mark.asyncio
    async def test_authenticate_delegates(self, fetcher, authenticator):
        creds = DecryptedCredentials(client_id="c", client_secret="s", location_guid="loc")
        assert await fetcher.authenticate(creds) == "tok"
        authenticator.authenticate.assert_awaited_once_with(creds)

    @pytest.mark.asyncio
    async def test_request_shape(self, fetcher, client, no_sleep):
        client.get.return_value = orders(1)
        window = SyncWindow(NOW - timedelta(days=1), NOW)

        await fetcher.fetch_page("tok", "loc-guid", window, PageCursor())

        path = client.get.call_args.args[0]
        kwargs = client.get.call_args.kwargs
        assert path == "/orders/v2/ordersBulk"
        assert kwargs["params"] == {
            "startDate": "2026-03-14T12:00:00.000+0000",
            "endDate": "2026-03-15T12:00:00.000+0000",
            "pageSize": 2,
            "page": 1,
        }
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["headers"]["Toast-Restaurant-External-ID"] == "loc-guid"
        # First page of the first chunk is not delayed
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_full_page_continues(self, fetcher, client):
        client.get.return_value = orders(2)
        page = await fetcher.fetch_page("tok", "loc", SyncWindow(NOW - timedelta(days=1), NOW), PageCursor())

        assert page.next_cursor == PageCursor(0, 2)
        assert not page.done

    @pytest.mark.asyncio
    async def test_short_page_ends(self, fetcher, client, no_sleep):
        client.get.return_value = orders(1)
        page = await fetcher.fetch_page(
            "tok", "loc", SyncWindow(NOW - timedelta(days=1), NOW), PageCursor(0, 3)
        )

        assert page.done
        assert page.total_chunks == 1
        no_sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_empty_window_single_request(self, fetcher, client):
        client.get.return_value = []
        page = await fetcher.fetch_page("tok", "loc", SyncWindow(NOW, NOW), PageCursor())
        assert page.records == []
        assert page.done

    @pytest.mark.asyncio
    async def test_chunks_long_window(self, fetcher, client):
        window = SyncWindow(NOW - timedelta(days=45), NOW, full_sync=True)
        client.get.return_value = orders(1)

        first = await fetcher.fetch_page("tok", "loc", window, PageCursor())
        assert first.total_chunks == 2
        assert first.next_cursor == PageCursor(1, 1)

        second = await fetcher.fetch_page("tok", "loc", window, first.next_cursor)
        assert second.chunk_index == 1
        assert second.done
        assert client.get.call_args.kwargs["params"]["endDate"] == _toast_date(NOW)

    @pytest.mark.asyncio
    async def test_wrapped_response_with_count(self, fetcher, client):
        client.get.return_value = {"orders": orders(2), "totalCount": "7"}
        page = await fetcher.fetch_page("tok", "loc", SyncWindow(NOW - timedelta(days=1), NOW), PageCursor())
        assert len(page.records) == 2
        assert page.estimated_total == 7

    @pytest.mark.asyncio
    async def test_unexpected_body(self, fetcher, client):
        client.get.return_value = None
        page = await fetcher.fetch_page("tok", "loc", SyncWindow(NOW - timedelta(days=1), NOW), PageCursor())
        assert page.records == []
        assert page.estimated_total is None

    @pytest.mark.asyncio
    async def test_client_errors_propagate(self, fetcher, client, authenticator):
        client.get.side_effect = RateLimitError(retry_after=30)
        with pytest.raises(RateLimitError):
            await fetcher.fetch_page("tok", "loc", SyncWindow(NOW - timedelta(days=1), NOW), PageCursor())
        authenticator.invalidate_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_token_is_invalidated(self, fetcher, client, authenticator):
        client.get.side_effect = UpstreamAuthError("token revoked", status_code=401)
        with pytest.raises(UpstreamAuthError):
            await fetcher.fetch_page("tok", "loc", SyncWindow(NOW - timedelta(days=1), NOW), PageCursor())
        authenticator.invalidate_token.assert_called_once_with("tok")

    @pytest.mark.asyncio
    async def test_next_authenticate_logs_in_again(self, client):
        auth = ToastAuthenticator(base_url="https://pos.example.com")
        auth._tokens["c"] = CachedToken(access_token="revoked", expires_at=time.time() + 3600)
        auth._fetch_token = AsyncMock(
            return_value=CachedToken(access_token="fresh", expires_at=time.time() + 3600)
        )
        fetcher = ToastFetcher(client, auth, page_size=2)
        creds = DecryptedCredentials(client_id="c", client_secret="s", location_guid="loc")
        client.get.side_effect = UpstreamAuthError("token revoked", status_code=401)

        assert await fetcher.authenticate(creds) == "revoked"
        with pytest.raises(UpstreamAuthError):
            await fetcher.fetch_page("revoked", "loc", SyncWindow(NOW - timedelta(days=1), NOW), PageCursor())

        assert await fetcher.authenticate(creds) == "fresh"
        auth._fetch_token.assert_awaited_once_with(creds)
