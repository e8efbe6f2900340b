"""Ordered, prioritized view of each provider's accounts.

Reads come straight from the credential store, so every list is a consistent
snapshot. Writes are single ``CredentialStore.update`` calls and inherit its
per-account serialization; there is no pool-wide lock.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from structlog import get_logger

from oauth_pool.config.rotation import RotationSettings
from oauth_pool.core.clock import Clock, now_ms, system_clock
from oauth_pool.db.credential_store import CredentialStore
from oauth_pool.rotation.accounts import (
    Account,
    AccountSecrets,
    AccountStatus,
    validate_priority,
)


logger = get_logger(__name__)

DeleteListener = Callable[[Account], Awaitable[None] | None]


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass
class PoolCounts:
    total: int
    active: int
    runnable: int

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "active": self.active, "runnable": self.runnable}


class AccountPool:
    """Administrative operations over the accounts of every provider."""

    def __init__(
        self,
        store: CredentialStore,
        rotation: RotationSettings | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.store = store
        self.rotation = rotation or RotationSettings()
        self._clock = clock
        self._delete_listeners: list[DeleteListener] = []

    def add_delete_listener(self, listener: DeleteListener) -> None:
        """Call ``listener`` after an account is deleted."""
        self._delete_listeners.append(listener)

    def is_execution_ready(self, account: Account) -> bool:
        return account.is_execution_ready(
            now_ms(self._clock),
            allow_file_detected=self.rotation.allow_file_detected_execution,
        )

    def is_runnable(self, account: Account) -> bool:
        """Eligible for failover selection."""
        return (
            account.status == AccountStatus.ACTIVE
            and account.active
            and self.is_execution_ready(account)
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list(self, provider: str) -> list[Account]:
        """Accounts ordered by (priority, created_at, account_id)."""
        return await self.store.list(provider)

    async def counts(self, provider: str) -> PoolCounts:
        accounts = await self.list(provider)
        return PoolCounts(
            total=len(accounts),
            active=sum(1 for a in accounts if a.active),
            runnable=sum(1 for a in accounts if self.is_execution_ready(a)),
        )

    async def get(self, provider: str, account_id: str) -> Account:
        return await self.store.require(provider, account_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def set_active(self, provider: str, account_id: str, active: bool) -> Account:
        """Add the account to, or remove it from, the failover pool."""

        def mutate(account: Account, _: AccountSecrets | None) -> None:
            account.active = active

        account = await self.store.update(provider, account_id, mutate)
        logger.info(
            "account_pool_membership_changed",
            provider=provider,
            account_id=account_id,
            active=active,
        )
        return account

    async def update(
        self,
        provider: str,
        account_id: str,
        *,
        label: str | None = UNSET,
        model_override: str | None = UNSET,
        priority: int = UNSET,
        status: AccountStatus | str = UNSET,
    ) -> Account:
        """Change label, model override, priority and/or status in one write.

        Fields left as ``UNSET`` are not touched; ``None`` clears label and
        model override. Readers see either none or all of the changes.
        """
        if priority is not UNSET:
            validate_priority(priority)
        new_status = AccountStatus(status) if status is not UNSET else UNSET

        def mutate(account: Account, _: AccountSecrets | None) -> None:
            if label is not UNSET:
                account.label = label or None
            if model_override is not UNSET:
                account.model_override = model_override or None
            if priority is not UNSET:
                account.priority = priority
            if new_status is not UNSET:
                account.status = new_status

        account = await self.store.update(provider, account_id, mutate)
        logger.info(
            "account_updated",
            provider=provider,
            account_id=account_id,
            priority=account.priority,
            status=account.status.value,
        )
        return account

    async def set_status(
        self, provider: str, account_id: str, status: AccountStatus | str
    ) -> Account:
        return await self.update(provider, account_id, status=status)

    async def record_error(self, provider: str, account_id: str, reason: str) -> Account:
        def mutate(account: Account, _: AccountSecrets | None) -> None:
            account.last_error = reason

        return await self.store.update(provider, account_id, mutate)

    async def delete(self, provider: str, account_id: str) -> None:
        """Delete the account and notify listeners (refresh, cool-downs)."""
        account = await self.store.require(provider, account_id)
        await self.store.delete(provider, account_id)
        for listener in self._delete_listeners:
            result = listener(account)
            if result is not None:
                await result
