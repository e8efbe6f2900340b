"""Durable, encrypted-at-rest storage of one record per (provider, account).

Every write goes through a per-key ``asyncio.Lock`` and re-reads the row
inside that lock, so concurrent read-modify-write cycles on the same account
are linearized. Writes are refused with ``StorageNotReadyError`` while no
encryption secret is configured; metadata reads keep working.
"""

import asyncio
from collections.abc import Callable
from dataclasses import replace

from sqlmodel import select
from structlog import get_logger

from oauth_pool.core.clock import Clock, now_ms, system_clock
from oauth_pool.db.crypto import TokenCipher
from oauth_pool.db.engine import get_session
from oauth_pool.db.models import OAuthAccountRecord
from oauth_pool.exceptions import AccountNotFoundError, StorageNotReadyError
from oauth_pool.rotation.accounts import (
    Account,
    AccountSecrets,
    AccountSource,
    AccountStatus,
    GrantType,
    sort_accounts,
)


logger = get_logger(__name__)

Mutator = Callable[[Account, AccountSecrets | None], None]
SecretsMutator = Callable[[Account, AccountSecrets], None]


def _to_account(record: OAuthAccountRecord) -> Account:
    return Account(
        provider=record.provider,
        account_id=record.account_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
        label=record.label,
        status=AccountStatus(record.status),
        active=record.active,
        priority=record.priority,
        model_override=record.model_override,
        source=AccountSource(record.source),
        grant_type=GrantType(record.grant_type),
        scope=record.scope,
        email=record.email,
        subject=record.subject,
        expires_at=record.expires_at,
        has_refresh_token=record.has_refresh_token,
        last_refreshed_at=record.last_refreshed_at,
        refresh_failed=record.refresh_failed,
        last_error=record.last_error,
    )


def _apply(record: OAuthAccountRecord, account: Account) -> None:
    record.label = account.label
    record.status = account.status.value
    record.active = account.active
    record.priority = account.priority
    record.model_override = account.model_override
    record.source = account.source.value
    record.grant_type = account.grant_type.value
    record.scope = account.scope
    record.email = account.email
    record.subject = account.subject
    record.created_at = account.created_at
    record.updated_at = account.updated_at
    record.expires_at = account.expires_at
    record.has_refresh_token = account.has_refresh_token
    record.last_refreshed_at = account.last_refreshed_at
    record.refresh_failed = account.refresh_failed
    record.last_error = account.last_error


class CredentialStore:
    """Repository for OAuth account records."""

    def __init__(self, cipher: TokenCipher | None, clock: Clock = system_clock) -> None:
        self._cipher = cipher
        self._clock = clock
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._create_locks: dict[str, asyncio.Lock] = {}

    @property
    def is_ready(self) -> bool:
        """Whether an encryption key is configured."""
        return self._cipher is not None

    def _require_cipher(self) -> TokenCipher:
        if self._cipher is None:
            raise StorageNotReadyError()
        return self._cipher

    def _lock_for(self, provider: str, account_id: str) -> asyncio.Lock:
        key = (provider, account_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _drop_lock(self, provider: str, account_id: str) -> None:
        lock = self._locks.get((provider, account_id))
        if lock is not None and not lock.locked():
            del self._locks[(provider, account_id)]

    def creation_lock(self, provider: str) -> asyncio.Lock:
        """Serializes find-or-create of new accounts for one provider."""
        lock = self._create_locks.get(provider)
        if lock is None:
            lock = self._create_locks[provider] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list(self, provider: str | None = None) -> list[Account]:
        """List accounts ordered by (priority, created_at, account_id)."""
        async with get_session() as session:
            stmt = select(OAuthAccountRecord)
            if provider is not None:
                stmt = stmt.where(OAuthAccountRecord.provider == provider)
            result = await session.execute(stmt)
            records = result.scalars().all()
        return sort_accounts([_to_account(r) for r in records])

    async def get(self, provider: str, account_id: str) -> Account | None:
        async with get_session() as session:
            record = await session.get(OAuthAccountRecord, (provider, account_id))
            return _to_account(record) if record else None

    async def require(self, provider: str, account_id: str) -> Account:
        account = await self.get(provider, account_id)
        if account is None:
            raise AccountNotFoundError(account_id, provider)
        return account

    async def find(self, account_id: str) -> Account | None:
        """Look up an account by id alone."""
        async with get_session() as session:
            result = await session.execute(
                select(OAuthAccountRecord).where(
                    OAuthAccountRecord.account_id == account_id
                )
            )
            record = result.scalars().first()
            return _to_account(record) if record else None

    async def find_by_identity(
        self, provider: str, subject: str | None, email: str | None
    ) -> Account | None:
        """Find an account by upstream subject, then by email."""
        async with get_session() as session:
            for column, value in (
                (OAuthAccountRecord.subject, subject),
                (OAuthAccountRecord.email, email),
            ):
                if not value:
                    continue
                result = await session.execute(
                    select(OAuthAccountRecord)
                    .where(OAuthAccountRecord.provider == provider)
                    .where(column == value)
                    .order_by(OAuthAccountRecord.created_at)
                )
                record = result.scalars().first()
                if record is not None:
                    return _to_account(record)
        return None

    async def get_secrets(self, provider: str, account_id: str) -> AccountSecrets:
        """Decrypt and return token material for one account."""
        cipher = self._require_cipher()
        async with get_session() as session:
            record = await session.get(OAuthAccountRecord, (provider, account_id))
            if record is None:
                raise AccountNotFoundError(account_id, provider)
            return AccountSecrets.from_dict(cipher.decrypt(record.encrypted_data))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, account: Account, secrets: AccountSecrets) -> Account:
        """Insert a new record."""
        cipher = self._require_cipher()
        async with self._lock_for(account.provider, account.account_id):
            async with get_session() as session:
                record = OAuthAccountRecord(
                    provider=account.provider,
                    account_id=account.account_id,
                    created_at=account.created_at,
                    updated_at=account.updated_at,
                    encrypted_data=cipher.encrypt(secrets.to_dict()),
                )
                _apply(
                    record,
                    replace(account, has_refresh_token=bool(secrets.refresh_token)),
                )
                session.add(record)
                await session.commit()
                await session.refresh(record)
                created = _to_account(record)

        logger.info(
            "credential_created",
            provider=created.provider,
            account_id=created.account_id,
            source=created.source.value,
        )
        return created

    async def update(self, provider: str, account_id: str, mutate: Mutator) -> Account:
        """Atomically read, mutate and write back one record.

        ``mutate`` receives the current account (secrets are ``None``) and
        changes it in place. If it raises, nothing is written.
        """
        return await self._write(provider, account_id, mutate, None)

    async def update_secrets(
        self, provider: str, account_id: str, mutate: SecretsMutator
    ) -> Account:
        """Like ``update``, with the decrypted secrets passed to ``mutate``."""
        return await self._write(provider, account_id, None, mutate)

    async def _write(
        self,
        provider: str,
        account_id: str,
        mutate: Mutator | None,
        mutate_secrets: SecretsMutator | None,
    ) -> Account:
        cipher = self._require_cipher()
        async with self._lock_for(provider, account_id):
            async with get_session() as session:
                record = await session.get(OAuthAccountRecord, (provider, account_id))
                if record is None:
                    raise AccountNotFoundError(account_id, provider)

                account = _to_account(record)
                if mutate_secrets is not None:
                    secrets = AccountSecrets.from_dict(
                        cipher.decrypt(record.encrypted_data)
                    )
                    mutate_secrets(account, secrets)
                    account.has_refresh_token = bool(secrets.refresh_token)
                    record.encrypted_data = cipher.encrypt(secrets.to_dict())
                elif mutate is not None:
                    mutate(account, None)

                account.updated_at = now_ms(self._clock)
                _apply(record, account)
                session.add(record)
                await session.commit()
                await session.refresh(record)
                return _to_account(record)

    async def delete(self, provider: str, account_id: str) -> None:
        """Delete one record. Raises AccountNotFoundError when missing."""
        self._require_cipher()
        try:
            async with self._lock_for(provider, account_id):
                async with get_session() as session:
                    record = await session.get(
                        OAuthAccountRecord, (provider, account_id)
                    )
                    if record is None:
                        raise AccountNotFoundError(account_id, provider)
                    await session.delete(record)
                    await session.commit()
        finally:
            self._drop_lock(provider, account_id)

        logger.info("credential_deleted", provider=provider, account_id=account_id)
