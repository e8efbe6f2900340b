"""Shared fixtures: a manual clock, a temporary database and scripted providers."""

from pathlib import Path

import pytest
from support import TEST_SECRET, ManualClock, ProviderStub

from oauth_pool.config.settings import Settings
from oauth_pool.db import close_db, init_db
from oauth_pool.db.credential_store import CredentialStore
from oauth_pool.db.crypto import TokenCipher
from oauth_pool.rotation.accounts import (
    Account,
    AccountSecrets,
    AccountSource,
    GrantType,
)
from oauth_pool.services.credential_service import CredentialService

@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
async def db(tmp_path: Path):
    """Initialize a temporary test database."""
    db_path = tmp_path / "test.db"
    await init_db(db_path)
    yield db_path
    await close_db()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    path = tmp_path / "home"
    path.mkdir()
    return path


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        storage={
            "database_path": tmp_path / "test.db",
            "encryption_secret": TEST_SECRET,
        },
        refresh={"enabled": False, "retry_min_wait": 0, "retry_max_wait": 0},
        providers={
            "antigravity_client_id": "ag-client-id",
            "antigravity_client_secret": "ag-client-secret",
        },
    )


@pytest.fixture
def stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
async def store(db: Path, clock: ManualClock) -> CredentialStore:
    return CredentialStore(TokenCipher(TEST_SECRET), clock=clock)


@pytest.fixture
async def service(
    settings: Settings, db: Path, clock: ManualClock, stub: ProviderStub, home: Path
):
    client = stub.client()
    svc = CredentialService(settings, http_client=client, clock=clock, home=home)
    yield svc
    await svc.aclose()
    await client.aclose()


@pytest.fixture
def seed(clock: ManualClock):
    """Insert an account directly through a store."""

    async def create(
        store: CredentialStore,
        provider: str = "github-copilot",
        account_id: str = "acct-1",
        *,
        priority: int = 100,
        expires_in: int | None = 3600,
        refresh_token: str | None = "refresh-1",
        access_token: str = "access-1",
        source: AccountSource = AccountSource.WEB_REDIRECT,
        email: str | None = None,
        subject: str | None = None,
        created_at: int | None = None,
    ) -> Account:
        now = clock.ms()
        account = Account(
            provider=provider,
            account_id=account_id,
            created_at=created_at if created_at is not None else now,
            updated_at=now,
            priority=priority,
            source=source,
            grant_type=GrantType.AUTHORIZATION_CODE,
            email=email,
            subject=subject,
            expires_at=now + expires_in * 1000 if expires_in is not None else None,
        )
        return await store.create(
            account,
            AccountSecrets(access_token=access_token, refresh_token=refresh_token),
        )

    return create
