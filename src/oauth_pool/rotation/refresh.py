"""Token refresh scheduler for proactive OAuth token management.

A periodic APScheduler job refreshes accounts whose token expires inside the
renewal window. Manual refreshes go through the same ``refresh_one`` and share
its in-flight task, so one account is never refreshed twice at once.
"""

import asyncio
from dataclasses import dataclass
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from structlog import get_logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from oauth_pool.config.rotation import RefreshSettings
from oauth_pool.core.clock import Clock, now_ms, system_clock
from oauth_pool.db.credential_store import CredentialStore
from oauth_pool.exceptions import (
    AccountNotFoundError,
    OAuthPoolError,
    RefreshFailedError,
    TransientNetworkError,
)
from oauth_pool.oauth.token_exchange import (
    OAuthHttpClient,
    TokenEndpointError,
    TokenResponse,
)
from oauth_pool.providers import ProviderRegistry
from oauth_pool.rotation.accounts import Account, AccountSecrets


logger = get_logger(__name__)


@dataclass
class RefreshCycleResult:
    checked: int = 0
    refreshed: int = 0
    failed: int = 0
    skipped: int = 0


class RefreshScheduler:
    """Background and on-demand token renewal."""

    def __init__(
        self,
        store: CredentialStore,
        providers: ProviderRegistry,
        http: OAuthHttpClient,
        settings: RefreshSettings | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.store = store
        self.providers = providers
        self.http = http
        self.settings = settings or RefreshSettings()
        self._clock = clock
        # (provider, account_id) -> refresh task
        self._inflight: dict[tuple[str, str], asyncio.Task[Account]] = {}
        self._scheduler: Any = None  # AsyncIOScheduler
        self._initial_check: asyncio.Task[RefreshCycleResult] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the periodic refresh job."""
        if self._running:
            logger.warning("refresh_scheduler_already_running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_cycle,
            "interval",
            seconds=self.settings.check_interval_seconds,
            id="token_refresh_check",
            name="Token Refresh Check",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "token_refresh_scheduler_started",
            check_interval=self.settings.check_interval_seconds,
            renewal_window=self.settings.renewal_window_seconds,
        )

        # Run initial check immediately
        self._initial_check = asyncio.create_task(self.run_cycle())

    async def stop(self) -> None:
        """Stop the job and cancel refreshes still in flight."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        pending = [t for t in self._inflight.values() if not t.done()]
        if self._initial_check is not None and not self._initial_check.done():
            pending.append(self._initial_check)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()

        self._running = False
        logger.info("token_refresh_scheduler_stopped")

    async def run_cycle(self) -> RefreshCycleResult:
        """Refresh every account whose token is inside the renewal window."""
        result = RefreshCycleResult()
        if not self.store.is_ready:
            logger.debug("token_refresh_cycle_skipped", reason="storage_not_ready")
            return result

        now = now_ms(self._clock)
        window_ms = self.settings.renewal_window_seconds * 1000

        for account in await self.store.list():
            result.checked += 1
            if not account.needs_refresh(now, window_ms):
                continue

            logger.info(
                "token_refresh_needed",
                provider=account.provider,
                account_id=account.account_id,
                expires_in=((account.expires_at or now) - now) // 1000,
            )
            try:
                await self.refresh_one(account.account_id, account.provider)
                result.refreshed += 1
            except AccountNotFoundError:
                # Deleted since the list was read
                result.skipped += 1
            except OAuthPoolError as e:
                result.failed += 1
                logger.warning(
                    "scheduled_refresh_failed",
                    provider=account.provider,
                    account_id=account.account_id,
                    error=e.message,
                )

        if result.refreshed or result.failed:
            logger.info(
                "token_refresh_cycle_complete",
                checked=result.checked,
                refreshed=result.refreshed,
                failed=result.failed,
                skipped=result.skipped,
            )
        return result

    async def refresh_one(self, account_id: str, provider: str | None = None) -> Account:
        """Refresh one account now, joining a refresh already in flight.

        Raises:
            AccountNotFoundError: unknown account, or deleted mid-refresh
            RefreshFailedError: no refresh token, or the provider rejected it
            TransientNetworkError: provider unreachable after all retries
        """
        if provider is None:
            found = await self.store.find(account_id)
            if found is None:
                raise AccountNotFoundError(account_id)
            provider = found.provider

        key = (provider, account_id)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._refresh(provider, account_id))
            self._inflight[key] = task
            task.add_done_callback(lambda t: self._clear_inflight(key, t))
        else:
            logger.debug("token_refresh_joined", provider=provider, account_id=account_id)

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise AccountNotFoundError(account_id, provider) from None
            raise

    def cancel(self, provider: str, account_id: str) -> bool:
        """Cancel an in-flight refresh for the account."""
        task = self._inflight.pop((provider, account_id), None)
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("token_refresh_cancelled", provider=provider, account_id=account_id)
        return True

    def on_account_deleted(self, account: Account) -> None:
        self.cancel(account.provider, account.account_id)

    def _clear_inflight(
        self, key: tuple[str, str], task: asyncio.Task[Account]
    ) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _refresh(self, provider: str, account_id: str) -> Account:
        account = await self.store.require(provider, account_id)
        if not account.has_refresh_token:
            raise RefreshFailedError(
                account_id, "no refresh token stored; re-authorize the account"
            )

        secrets = await self.store.get_secrets(provider, account_id)
        if not secrets.refresh_token:
            raise RefreshFailedError(account_id, "no refresh token stored")
        spec = self.providers.get(provider)

        def before_sleep_log(retry_state: Any) -> None:
            logger.warning(
                "token_refresh_retry",
                account_id=account_id,
                attempt=retry_state.attempt_number,
                max_attempts=self.settings.max_retries,
                wait_seconds=retry_state.next_action.sleep
                if retry_state.next_action
                else 0,
            )

        try:
            async for attempt in AsyncRetrying(
                wait=wait_exponential(
                    multiplier=1,
                    min=self.settings.retry_min_wait,
                    max=self.settings.retry_max_wait,
                ),
                stop=stop_after_attempt(self.settings.max_retries),
                retry=retry_if_exception_type(TransientNetworkError),
                before_sleep=before_sleep_log,
                reraise=True,
            ):
                with attempt:
                    tokens = await self.http.refresh(spec, secrets.refresh_token)
        except TokenEndpointError as e:
            reason = e.description or e.error
            await self._record_failure(provider, account_id, reason, rejected=True)
            logger.error(
                "token_refresh_rejected",
                provider=provider,
                account_id=account_id,
                error=e.error,
                status=e.status_code,
            )
            raise RefreshFailedError(account_id, reason) from e
        except TransientNetworkError as e:
            await self._record_failure(provider, account_id, e.message, rejected=False)
            logger.error(
                "token_refresh_failed",
                provider=provider,
                account_id=account_id,
                attempts=self.settings.max_retries,
            )
            raise

        updated = await self._apply_tokens(provider, account_id, tokens)
        logger.info(
            "token_refresh_success",
            provider=provider,
            account_id=account_id,
            expires_at=updated.expires_at,
        )
        return updated

    async def _apply_tokens(
        self, provider: str, account_id: str, tokens: TokenResponse
    ) -> Account:
        now = now_ms(self._clock)
        new_expires_at = tokens.expires_at_ms(now)

        def mutate(account: Account, secrets: AccountSecrets) -> None:
            if new_expires_at is not None and (
                account.expires_at is None or new_expires_at > account.expires_at
            ):
                account.expires_at = new_expires_at
            account.scope = tokens.scope or account.scope
            account.last_refreshed_at = now
            account.refresh_failed = False
            account.last_error = None
            secrets.access_token = tokens.access_token
            secrets.token_type = tokens.token_type
            if tokens.refresh_token:
                secrets.refresh_token = tokens.refresh_token
            if tokens.id_token:
                secrets.id_token = tokens.id_token

        return await self.store.update_secrets(provider, account_id, mutate)

    async def _record_failure(
        self, provider: str, account_id: str, reason: str, *, rejected: bool
    ) -> None:
        """Mark the account; token fields are left untouched."""

        def mutate(account: Account, _: AccountSecrets | None) -> None:
            account.last_error = reason
            if rejected:
                account.refresh_failed = True

        await self.store.update(provider, account_id, mutate)
