"""Tests for the device-code grant."""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from support import (
    GITHUB_DEVICE_PATH,
    GITHUB_TOKEN_PATH,
    GITHUB_USER_PATH,
    device_code_payload,
    fail,
    reply,
)

from oauth_pool.exceptions import (
    AttemptNotFoundError,
    StorageNotReadyError,
    UnsupportedProviderError,
)
from oauth_pool.oauth.device_flow import DevicePollStatus
from oauth_pool.rotation.accounts import GrantType
from oauth_pool.services.credential_service import CredentialService


PROVIDER = "github-copilot"
GITHUB_USER = {"id": 42, "login": "octocat", "email": "octo@example.com"}


def pending(error: str = "authorization_pending"):
    # GitHub reports device errors with a 200 status
    return reply(200, {"error": error})


@pytest.fixture
def device_endpoint(stub):
    stub.add(GITHUB_DEVICE_PATH, reply(200, device_code_payload()))
    stub.add(GITHUB_USER_PATH, reply(200, GITHUB_USER))
    return stub


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_returns_user_code(service, device_endpoint):
    attempt = await service.start_device_flow(PROVIDER)

    assert attempt.user_code == "ABCD-1234"
    assert attempt.verification_uri == "https://github.com/login/device"
    assert attempt.poll_interval == 5
    assert attempt.expires_in(service.attempts.now()) == 900

    sent = device_endpoint.calls(GITHUB_DEVICE_PATH)[0]
    assert b"client_id=Iv1.b507a08c87ecfe98" in sent.content


@pytest.mark.unit
@pytest.mark.asyncio
async def test_pending_then_complete(service, device_endpoint, clock):
    device_endpoint.add(
        GITHUB_TOKEN_PATH,
        pending(),
        reply(200, {"access_token": "gho_abc", "token_type": "bearer", "scope": "read:user"}),
    )
    attempt = await service.start_device_flow(PROVIDER)

    first = await service.poll_device_flow(attempt.state_id)
    assert first.status == DevicePollStatus.PENDING
    assert first.interval == 5

    clock.advance(5)
    second = await service.poll_device_flow(attempt.state_id)
    assert second.status == DevicePollStatus.COMPLETE
    account = second.account
    assert account is not None
    assert account.email == "octo@example.com"
    assert account.subject == "42"
    assert account.grant_type == GrantType.DEVICE_CODE
    assert account.expires_at is None
    assert account.has_refresh_token is False

    secrets = await service.store.get_secrets(PROVIDER, account.account_id)
    assert secrets.access_token == "gho_abc"

    with pytest.raises(AttemptNotFoundError):
        await service.poll_device_flow(attempt.state_id)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_slow_down_increases_interval(service, device_endpoint):
    device_endpoint.add(GITHUB_TOKEN_PATH, pending("slow_down"), pending())
    attempt = await service.start_device_flow(PROVIDER)

    result = await service.poll_device_flow(attempt.state_id)
    assert result.status == DevicePollStatus.SLOW_DOWN
    assert result.interval == 10

    result = await service.poll_device_flow(attempt.state_id)
    assert result.status == DevicePollStatus.PENDING
    assert result.interval == 10


@pytest.mark.unit
@pytest.mark.asyncio
async def test_expires_without_prior_poll(service, device_endpoint, clock):
    attempt = await service.start_device_flow(PROVIDER)

    clock.advance(901)
    result = await service.poll_device_flow(attempt.state_id)

    assert result.status == DevicePollStatus.EXPIRED
    assert device_endpoint.calls(GITHUB_TOKEN_PATH) == []
    with pytest.raises(AttemptNotFoundError):
        await service.poll_device_flow(attempt.state_id)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_long_device_code_stays_pollable_past_an_hour(service, stub, clock):
    stub.add(GITHUB_DEVICE_PATH, reply(200, device_code_payload(expires_in=7200)))
    stub.add(GITHUB_TOKEN_PATH, pending())
    attempt = await service.start_device_flow(PROVIDER)

    clock.advance(3601)
    result = await service.poll_device_flow(attempt.state_id)
    assert result.status == DevicePollStatus.PENDING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_poll_long_after_deadline_reports_expired(service, device_endpoint, clock):
    attempt = await service.start_device_flow(PROVIDER)

    clock.advance(3601)
    result = await service.poll_device_flow(attempt.state_id)
    assert result.status == DevicePollStatus.EXPIRED
    assert device_endpoint.calls(GITHUB_TOKEN_PATH) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_provider_reports_expired_token(service, device_endpoint):
    device_endpoint.add(GITHUB_TOKEN_PATH, pending("expired_token"))
    attempt = await service.start_device_flow(PROVIDER)

    result = await service.poll_device_flow(attempt.state_id)
    assert result.status == DevicePollStatus.EXPIRED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_denied_is_terminal(service, device_endpoint):
    device_endpoint.add(GITHUB_TOKEN_PATH, pending("access_denied"))
    attempt = await service.start_device_flow(PROVIDER)

    result = await service.poll_device_flow(attempt.state_id)
    assert result.status == DevicePollStatus.DENIED
    with pytest.raises(AttemptNotFoundError):
        await service.poll_device_flow(attempt.state_id)
    assert await service.list_accounts(PROVIDER) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_error_is_terminal(service, device_endpoint):
    device_endpoint.add(GITHUB_TOKEN_PATH, pending("incorrect_client_credentials"))
    attempt = await service.start_device_flow(PROVIDER)

    result = await service.poll_device_flow(attempt.state_id)
    assert result.status == DevicePollStatus.ERROR
    assert "incorrect_client_credentials" in (result.error or "")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_new_start_replaces_previous_attempt(service, device_endpoint):
    old = await service.start_device_flow(PROVIDER, session="s1")
    new = await service.start_device_flow(PROVIDER, session="s1")
    other_session = await service.start_device_flow(PROVIDER, session="s2")

    assert old.state_id != new.state_id
    with pytest.raises(AttemptNotFoundError):
        await service.poll_device_flow(old.state_id)

    device_endpoint.add(GITHUB_TOKEN_PATH, pending())
    assert (await service.poll_device_flow(new.state_id)).status == DevicePollStatus.PENDING
    assert (
        await service.poll_device_flow(other_session.state_id)
    ).status == DevicePollStatus.PENDING


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transient_failure_keeps_attempt(service, device_endpoint):
    device_endpoint.add(
        GITHUB_TOKEN_PATH,
        fail(lambda: httpx.ConnectError("connection refused")),
        reply(200, {"access_token": "gho_abc"}),
    )
    attempt = await service.start_device_flow(PROVIDER)

    result = await service.poll_device_flow(attempt.state_id)
    assert result.status == DevicePollStatus.PENDING
    assert result.error is not None

    result = await service.poll_device_flow(attempt.state_id)
    assert result.status == DevicePollStatus.COMPLETE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_second_grant_for_same_user_reuses_account(service, device_endpoint):
    device_endpoint.add(GITHUB_TOKEN_PATH, reply(200, {"access_token": "gho_abc"}))

    first = await service.poll_device_flow(
        (await service.start_device_flow(PROVIDER)).state_id
    )
    second = await service.poll_device_flow(
        (await service.start_device_flow(PROVIDER)).state_id
    )

    assert first.account is not None and second.account is not None
    assert first.account.account_id == second.account.account_id
    assert len(await service.list_accounts(PROVIDER)) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_poll_for_other_provider_is_not_found(service, device_endpoint):
    attempt = await service.start_device_flow(PROVIDER)
    with pytest.raises(AttemptNotFoundError):
        await service.poll_device_flow(attempt.state_id, "antigravity")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_redirect_state_cannot_be_polled(service, device_endpoint):
    url = service.get_authorization_url("antigravity", "http://127.0.0.1:8787/cb")
    state = parse_qs(urlsplit(url).query)["state"][0]

    with pytest.raises(AttemptNotFoundError):
        await service.poll_device_flow(state)
    assert device_endpoint.calls(GITHUB_TOKEN_PATH) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_provider_without_device_grant(service):
    with pytest.raises(UnsupportedProviderError):
        await service.start_device_flow("antigravity")
    with pytest.raises(UnsupportedProviderError):
        await service.start_device_flow("nope")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_refused_without_storage_key(settings, db, clock, stub, home):
    settings.storage.encryption_secret = None
    client = stub.client()
    service = CredentialService(settings, http_client=client, clock=clock, home=home)

    with pytest.raises(StorageNotReadyError):
        await service.start_device_flow(PROVIDER)
    assert stub.requests == []

    await service.aclose()
    await client.aclose()
