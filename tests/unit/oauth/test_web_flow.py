"""Tests for the redirect grant with PKCE."""

import base64
import hashlib
from urllib.parse import parse_qs, urlsplit

import pytest
from support import GOOGLE_TOKEN_PATH, GOOGLE_USERINFO_PATH, reply

from oauth_pool.config.settings import Settings
from oauth_pool.exceptions import (
    AttemptExpiredError,
    AuthorizationDeniedError,
    ExchangeFailedError,
    InvalidStateError,
    ProviderNotConfiguredError,
    StorageNotReadyError,
    TransientNetworkError,
    UnsupportedProviderError,
)
from oauth_pool.oauth.web_flow import generate_pkce_pair
from oauth_pool.rotation.accounts import AccountSource, GrantType
from oauth_pool.services.credential_service import CredentialService


PROVIDER = "antigravity"
REDIRECT_URI = "http://127.0.0.1:8787/api/oauth/callback"
GOOGLE_USER = {"id": "g-123", "email": "dev@example.com"}


def tokens(refresh_token: str | None = "1//refresh") -> dict:
    payload = {
        "access_token": "ya29.access",
        "expires_in": 3599,
        "scope": "https://www.googleapis.com/auth/cloud-platform",
        "token_type": "Bearer",
    }
    if refresh_token:
        payload["refresh_token"] = refresh_token
    return payload


def state_of(url: str) -> str:
    return parse_qs(urlsplit(url).query)["state"][0]


@pytest.fixture
def google(stub):
    stub.add(GOOGLE_USERINFO_PATH, reply(200, GOOGLE_USER))
    return stub


@pytest.mark.unit
def test_pkce_pair():
    verifier, challenge = generate_pkce_pair()
    digest = hashlib.sha256(verifier.encode()).digest()
    assert challenge == base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_authorization_url(service):
    url = service.get_authorization_url(PROVIDER, REDIRECT_URI)
    query = parse_qs(urlsplit(url).query)

    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert query["client_id"] == ["ag-client-id"]
    assert query["redirect_uri"] == [REDIRECT_URI]
    assert query["response_type"] == ["code"]
    assert query["code_challenge_method"] == ["S256"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert "cloud-platform" in query["scope"][0]
    assert await service.list_accounts(PROVIDER) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_callback_creates_account(service, google, clock):
    google.add(GOOGLE_TOKEN_PATH, reply(200, tokens()))
    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))

    result = await service.handle_callback(PROVIDER, "auth-code", state)

    assert result.created is True
    account = result.account
    assert account.email == "dev@example.com"
    assert account.source == AccountSource.WEB_REDIRECT
    assert account.grant_type == GrantType.AUTHORIZATION_CODE
    assert account.expires_at == clock.ms() + 3599 * 1000
    assert account.has_refresh_token is True

    form = parse_qs(google.calls(GOOGLE_TOKEN_PATH)[0].content.decode())
    assert form["code"] == ["auth-code"]
    assert form["client_secret"] == ["ag-client-secret"]
    assert form["redirect_uri"] == [REDIRECT_URI]
    assert "code_verifier" in form


@pytest.mark.unit
@pytest.mark.asyncio
async def test_state_is_single_use(service, google):
    google.add(GOOGLE_TOKEN_PATH, reply(200, tokens()))
    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))
    await service.handle_callback(PROVIDER, "auth-code", state)

    with pytest.raises(InvalidStateError):
        await service.handle_callback(PROVIDER, "auth-code", state)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_state(service):
    with pytest.raises(InvalidStateError):
        await service.handle_callback(PROVIDER, "code", "forged-state")
    with pytest.raises(InvalidStateError):
        await service.handle_callback(None, "code", "forged-state")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_state_for_other_provider(service, google):
    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))
    with pytest.raises(InvalidStateError):
        await service.handle_callback("github-copilot", "code", state)
    assert google.calls(GOOGLE_TOKEN_PATH) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_provider_defaults_to_state_provider(service, google):
    google.add(GOOGLE_TOKEN_PATH, reply(200, tokens()))
    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))
    result = await service.handle_callback(None, "auth-code", state)
    assert result.account.provider == PROVIDER


@pytest.mark.unit
@pytest.mark.asyncio
async def test_late_callback_expires(service, google, clock):
    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))
    clock.advance(601)
    with pytest.raises(AttemptExpiredError):
        await service.handle_callback(PROVIDER, "auth-code", state)
    assert google.calls(GOOGLE_TOKEN_PATH) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_rejected_code(service, google):
    google.add(GOOGLE_TOKEN_PATH, reply(400, {"error": "invalid_grant"}))
    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))

    with pytest.raises(ExchangeFailedError):
        await service.handle_callback(PROVIDER, "bad-code", state)
    with pytest.raises(InvalidStateError):
        await service.handle_callback(PROVIDER, "bad-code", state)
    assert await service.list_accounts(PROVIDER) == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transient_failure_keeps_state(service, google):
    google.add(GOOGLE_TOKEN_PATH, reply(503, {}), reply(200, tokens()))
    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))

    with pytest.raises(TransientNetworkError):
        await service.handle_callback(PROVIDER, "auth-code", state)
    result = await service.handle_callback(PROVIDER, "auth-code", state)
    assert result.created is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_denied_callback(service):
    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))
    with pytest.raises(AuthorizationDeniedError):
        service.reject_callback(state, "access_denied")
    with pytest.raises(InvalidStateError):
        service.reject_callback(state, "access_denied")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_reauthorization_updates_existing_account(service, google, store):
    google.add(GOOGLE_TOKEN_PATH, reply(200, tokens()), reply(200, tokens(None)))
    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))
    first = await service.handle_callback(PROVIDER, "code-1", state)
    await service.update_account(first.account.account_id, priority=3, label="Main")

    state = state_of(service.get_authorization_url(PROVIDER, REDIRECT_URI))
    second = await service.handle_callback(PROVIDER, "code-2", state)

    assert second.created is False
    assert second.account.account_id == first.account.account_id
    assert second.account.priority == 3
    assert second.account.label == "Main"
    secrets = await store.get_secrets(PROVIDER, second.account.account_id)
    assert secrets.refresh_token == "1//refresh"
    assert len(await service.list_accounts(PROVIDER)) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_provider_without_redirect_grant(service):
    with pytest.raises(UnsupportedProviderError):
        service.get_authorization_url("github-copilot", REDIRECT_URI)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_missing_client_id(tmp_path, db, clock, stub, home):
    settings = Settings(storage={"encryption_secret": "s", "database_path": tmp_path / "x.db"})
    service = CredentialService(settings, http_client=stub.client(), clock=clock, home=home)
    with pytest.raises(ProviderNotConfiguredError):
        service.get_authorization_url(PROVIDER, REDIRECT_URI)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_storage_not_ready(settings, db, clock, stub, home):
    settings.storage.encryption_secret = None
    service = CredentialService(settings, http_client=stub.client(), clock=clock, home=home)
    with pytest.raises(StorageNotReadyError):
        service.get_authorization_url(PROVIDER, REDIRECT_URI)
