"""Read-only composition of provider and account status.

Nothing here mutates state or calls a provider; it reflects the last known
state of the store, the cool-downs and local credential files.
"""

from dataclasses import dataclass, field
from pathlib import Path

from oauth_pool.core.clock import Clock, now_ms, system_clock
from oauth_pool.db.credential_store import CredentialStore
from oauth_pool.providers import ProviderRegistry, ProviderSpec
from oauth_pool.rotation.accounts import Account
from oauth_pool.rotation.detection import is_detected
from oauth_pool.rotation.pool import AccountPool, PoolCounts
from oauth_pool.rotation.selector import FailoverSelector


@dataclass
class AccountView:
    """An account plus the fields derived from it at read time."""

    account: Account
    execution_ready: bool
    runnable: bool
    expired: bool
    terminal: bool
    cooling_down: bool
    cooldown_remaining_seconds: int | None = None
    is_default: bool = False


@dataclass
class ProviderStatus:
    spec: ProviderSpec
    connected: bool
    storage_ready: bool
    detected: bool
    execution_ready: bool
    counts: PoolCounts
    accounts: list[AccountView] = field(default_factory=list)

    @property
    def default_account(self) -> Account | None:
        return self.accounts[0].account if self.accounts else None


@dataclass
class PoolStatus:
    storage_ready: bool
    auto_swap: bool
    providers: dict[str, ProviderStatus]


class StatusAggregator:
    """Builds the status object reported to the dashboard."""

    def __init__(
        self,
        store: CredentialStore,
        providers: ProviderRegistry,
        pool: AccountPool,
        selector: FailoverSelector,
        clock: Clock = system_clock,
        home: Path | None = None,
    ) -> None:
        self.store = store
        self.providers = providers
        self.pool = pool
        self.selector = selector
        self._clock = clock
        self._home = home

    def _view(self, account: Account, now: int, is_default: bool) -> AccountView:
        remaining = self.selector.cooldown_remaining(
            account.provider, account.account_id
        )
        return AccountView(
            account=account,
            execution_ready=self.pool.is_execution_ready(account),
            runnable=self.pool.is_runnable(account),
            expired=account.is_expired(now),
            terminal=account.is_terminal(now),
            cooling_down=remaining is not None,
            cooldown_remaining_seconds=int(remaining) if remaining is not None else None,
            is_default=is_default,
        )

    async def provider_status(self, provider: str) -> ProviderStatus:
        spec = self.providers.get(provider)
        accounts = await self.pool.list(provider)
        now = now_ms(self._clock)
        views = [self._view(a, now, i == 0) for i, a in enumerate(accounts)]
        return ProviderStatus(
            spec=spec,
            connected=any(v.execution_ready for v in views),
            storage_ready=self.store.is_ready,
            detected=is_detected(spec, self._home),
            execution_ready=any(v.runnable for v in views),
            counts=PoolCounts(
                total=len(views),
                active=sum(1 for v in views if v.account.active),
                runnable=sum(1 for v in views if v.execution_ready),
            ),
            accounts=views,
        )

    async def get_status(self) -> PoolStatus:
        return PoolStatus(
            storage_ready=self.store.is_ready,
            auto_swap=self.selector.auto_swap,
            providers={p: await self.provider_status(p) for p in self.providers.ids()},
        )
