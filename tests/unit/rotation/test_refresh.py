"""Tests for scheduled and on-demand token refresh."""

import asyncio

import httpx
import pytest

from oauth_pool.config.oauth import ProviderCredentialSettings
from oauth_pool.config.rotation import RefreshSettings, RotationSettings
from oauth_pool.db.credential_store import CredentialStore
from oauth_pool.exceptions import (
    AccountNotFoundError,
    RefreshFailedError,
    TransientNetworkError,
)
from oauth_pool.oauth.token_exchange import OAuthHttpClient
from oauth_pool.providers import ProviderRegistry
from oauth_pool.rotation.pool import AccountPool
from oauth_pool.rotation.refresh import RefreshScheduler

from support import GITHUB_TOKEN_PATH, GOOGLE_TOKEN_PATH, reply


PROVIDER = "github-copilot"


@pytest.fixture
async def refresher(store, stub, clock):
    client = stub.client()
    scheduler = RefreshScheduler(
        store,
        ProviderRegistry(),
        OAuthHttpClient(client),
        RefreshSettings(renewal_window_seconds=600, retry_min_wait=0, retry_max_wait=0),
        clock=clock,
    )
    yield scheduler
    await scheduler.stop()
    await client.aclose()


def token_reply(expires_in: int = 28800, refresh_token: str | None = "refresh-2"):
    payload = {"access_token": "access-2", "token_type": "bearer", "expires_in": expires_in}
    if refresh_token:
        payload["refresh_token"] = refresh_token
    return reply(200, payload)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cycle_refreshes_accounts_inside_window(refresher, store, seed, stub, clock):
    await seed(store, account_id="soon", expires_in=60)
    await seed(store, account_id="later", expires_in=7200)
    stub.add(GITHUB_TOKEN_PATH, token_reply())

    result = await refresher.run_cycle()

    assert (result.checked, result.refreshed, result.failed) == (2, 1, 0)
    account = await store.require(PROVIDER, "soon")
    assert account.expires_at == clock.ms() + 28800 * 1000
    assert account.last_refreshed_at == clock.ms()
    secrets = await store.get_secrets(PROVIDER, "soon")
    assert secrets.access_token == "access-2"
    assert secrets.refresh_token == "refresh-2"

    sent = stub.calls(GITHUB_TOKEN_PATH)[0]
    assert b"grant_type=refresh_token" in sent.content
    assert b"refresh_token=refresh-1" in sent.content


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_keeps_old_refresh_token_when_none_returned(
    refresher, store, seed, stub
):
    await seed(store, account_id="a", expires_in=60)
    stub.add(GITHUB_TOKEN_PATH, token_reply(refresh_token=None))

    await refresher.refresh_one("a", PROVIDER)

    secrets = await store.get_secrets(PROVIDER, "a")
    assert secrets.access_token == "access-2"
    assert secrets.refresh_token == "refresh-1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_expires_at_never_moves_backward(refresher, store, seed, stub):
    before = await seed(store, account_id="a", expires_in=3600)
    stub.add(GITHUB_TOKEN_PATH, token_reply(expires_in=60))

    after = await refresher.refresh_one("a")

    assert after.expires_at == before.expires_at


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rejected_refresh_marks_account_and_keeps_tokens(
    refresher, store, seed, stub
):
    before = await seed(store, account_id="a", expires_in=60)
    stub.add(
        GITHUB_TOKEN_PATH,
        reply(400, {"error": "invalid_grant", "error_description": "revoked"}),
    )

    with pytest.raises(RefreshFailedError):
        await refresher.refresh_one("a", PROVIDER)

    account = await store.require(PROVIDER, "a")
    assert account.refresh_failed is True
    assert account.last_error == "revoked"
    assert account.expires_at == before.expires_at
    secrets = await store.get_secrets(PROVIDER, "a")
    assert (secrets.access_token, secrets.refresh_token) == ("access-1", "refresh-1")

    # Rejected accounts wait for a manual refresh
    result = await refresher.run_cycle()
    assert result.refreshed == result.failed == 0
    assert len(stub.calls(GITHUB_TOKEN_PATH)) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transient_failures_are_retried_then_surface(refresher, store, seed, stub):
    await seed(store, account_id="a", expires_in=60)
    stub.add(GITHUB_TOKEN_PATH, reply(503, {"message": "unavailable"}))

    with pytest.raises(TransientNetworkError):
        await refresher.refresh_one("a", PROVIDER)

    assert len(stub.calls(GITHUB_TOKEN_PATH)) == refresher.settings.max_retries
    account = await store.require(PROVIDER, "a")
    assert account.refresh_failed is False
    assert account.last_error is not None
    secrets = await store.get_secrets(PROVIDER, "a")
    assert secrets.access_token == "access-1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transient_then_success(refresher, store, seed, stub):
    await seed(store, account_id="a", expires_in=60)
    stub.add(GITHUB_TOKEN_PATH, reply(502, {}), token_reply())

    account = await refresher.refresh_one("a", PROVIDER)

    assert account.refresh_failed is False
    assert len(stub.calls(GITHUB_TOKEN_PATH)) == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_account_without_refresh_token(refresher, store, seed, stub):
    await seed(store, account_id="a", refresh_token=None)
    with pytest.raises(RefreshFailedError):
        await refresher.refresh_one("a", PROVIDER)
    assert stub.requests == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_request(refresher, store, seed, stub):
    await seed(store, account_id="a", expires_in=60)
    stub.add(GITHUB_TOKEN_PATH, token_reply())

    first, second = await asyncio.gather(
        refresher.refresh_one("a", PROVIDER), refresher.refresh_one("a", PROVIDER)
    )

    assert first == second
    assert len(stub.calls(GITHUB_TOKEN_PATH)) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cycle_skips_deleted_accounts(refresher, store, seed, stub):
    await seed(store, account_id="a", expires_in=60)
    await store.delete(PROVIDER, "a")

    result = await refresher.run_cycle()

    assert (result.checked, result.refreshed, result.failed) == (0, 0, 0)
    assert stub.requests == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delete_during_refresh_cancels_it(store, seed, clock):
    await seed(store, account_id="a", expires_in=60)
    request_seen = asyncio.Event()
    release = asyncio.Event()

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        request_seen.set()
        await release.wait()
        return httpx.Response(200, json={"access_token": "late", "expires_in": 60})

    client = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler))
    refresher = RefreshScheduler(
        store, ProviderRegistry(), OAuthHttpClient(client), RefreshSettings(), clock=clock
    )
    pool = AccountPool(store, RotationSettings(), clock=clock)
    pool.add_delete_listener(refresher.on_account_deleted)

    cycle = asyncio.create_task(refresher.run_cycle())
    await asyncio.wait_for(request_seen.wait(), timeout=5)
    await pool.delete(PROVIDER, "a")
    result = await asyncio.wait_for(cycle, timeout=5)

    assert result.skipped == 1
    assert result.failed == 0
    assert await store.get(PROVIDER, "a") is None
    with pytest.raises(AccountNotFoundError):
        await refresher.refresh_one("a", PROVIDER)
    await client.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_cycle_skips_when_storage_not_ready(store, seed, stub, clock):
    await seed(store, account_id="a", expires_in=60)
    client = stub.client()
    refresher = RefreshScheduler(
        CredentialStore(None, clock=clock),
        ProviderRegistry(),
        OAuthHttpClient(client),
        clock=clock,
    )
    result = await refresher.run_cycle()
    assert result.checked == 0
    await client.aclose()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_same_account_id_refreshes_independently_per_provider(store, seed, clock):
    await seed(store, "github-copilot", "shared", expires_in=60)
    await seed(store, "antigravity", "shared", expires_in=60)
    seen: list[str] = []
    both_seen = asyncio.Event()
    release = asyncio.Event()

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if len(seen) == 2:
            both_seen.set()
        await release.wait()
        return httpx.Response(
            200, json={"access_token": f"new-{request.url.path}", "expires_in": 3600}
        )

    client = httpx.AsyncClient(transport=httpx.MockTransport(slow_handler))
    refresher = RefreshScheduler(
        store,
        ProviderRegistry(ProviderCredentialSettings(antigravity_client_id="ag-client-id")),
        OAuthHttpClient(client),
        RefreshSettings(),
        clock=clock,
    )
    pool = AccountPool(store, RotationSettings(), clock=clock)
    pool.add_delete_listener(refresher.on_account_deleted)

    copilot = asyncio.create_task(refresher.refresh_one("shared", "github-copilot"))
    google = asyncio.create_task(refresher.refresh_one("shared", "antigravity"))
    await asyncio.wait_for(both_seen.wait(), timeout=5)
    assert sorted(seen) == sorted([GITHUB_TOKEN_PATH, GOOGLE_TOKEN_PATH])

    await pool.delete("github-copilot", "shared")
    release.set()

    with pytest.raises(AccountNotFoundError):
        await asyncio.wait_for(copilot, timeout=5)
    refreshed = await asyncio.wait_for(google, timeout=5)
    assert refreshed.provider == "antigravity"
    secrets = await store.get_secrets("antigravity", "shared")
    assert secrets.access_token == f"new-{GOOGLE_TOKEN_PATH}"
    await client.aclose()
