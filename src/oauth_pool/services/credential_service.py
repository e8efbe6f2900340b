"""Boundary for every credential operation the dashboard and CLI call.

``CredentialService`` wires the store, authorizers, pool, selector, refresh
scheduler and status aggregator together and exposes one method per external
operation.
"""

from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import httpx
from structlog import get_logger

from oauth_pool.config.settings import Settings
from oauth_pool.core.clock import Clock, now_ms, system_clock
from oauth_pool.db.credential_store import CredentialStore
from oauth_pool.db.crypto import build_cipher
from oauth_pool.exceptions import (
    AccountNotFoundError,
    AttemptNotFoundError,
    NotFoundError,
    RefreshFailedError,
    UnsupportedProviderError,
    ValidationError,
)
from oauth_pool.oauth.attempts import AttemptRegistry, AuthorizationAttempt
from oauth_pool.oauth.device_flow import DeviceCodeAuthorizer, DevicePollResult
from oauth_pool.oauth.token_exchange import OAuthHttpClient
from oauth_pool.oauth.web_flow import CallbackResult, WebRedirectAuthorizer
from oauth_pool.providers import ProviderRegistry
from oauth_pool.rotation.accounts import (
    Account,
    AccountSecrets,
    AccountSource,
    AccountStatus,
    GrantType,
)
from oauth_pool.rotation.detection import load_detected
from oauth_pool.rotation.pool import UNSET, AccountPool
from oauth_pool.rotation.refresh import RefreshScheduler
from oauth_pool.rotation.selector import FailoverSelector
from oauth_pool.services.models import ModelCatalog
from oauth_pool.services.status import PoolStatus, StatusAggregator
from oauth_pool.utils.id_generator import generate_account_id


logger = get_logger(__name__)


class ActivateAction(StrEnum):
    ADD = "add"
    REMOVE = "remove"


@dataclass
class ExecutionCredential:
    """What an execution needs to call the provider."""

    account: Account
    access_token: str
    token_type: str


class CredentialService:
    """One method per external credential operation."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = system_clock,
        home: Path | None = None,
    ) -> None:
        self.settings = settings
        self._clock = clock

        self.providers = ProviderRegistry(settings.providers)
        self.http = OAuthHttpClient(
            http_client, timeout=settings.flows.http_timeout_seconds
        )
        self.store = CredentialStore(
            build_cipher(settings.storage.encryption_secret), clock=clock
        )
        self.attempts = AttemptRegistry(
            clock=clock, maxsize=settings.flows.max_pending_attempts
        )
        self.device = DeviceCodeAuthorizer(
            self.attempts,
            self.providers,
            self.http,
            self.store,
            rotation=settings.rotation,
            clock=clock,
        )
        self.web = WebRedirectAuthorizer(
            self.attempts,
            self.providers,
            self.http,
            self.store,
            flows=settings.flows,
            rotation=settings.rotation,
            clock=clock,
        )
        self.pool = AccountPool(self.store, settings.rotation, clock=clock)
        self.selector = FailoverSelector(self.pool, settings.rotation, clock=clock)
        self.refresher = RefreshScheduler(
            self.store, self.providers, self.http, settings.refresh, clock=clock
        )
        self.pool.add_delete_listener(self.refresher.on_account_deleted)
        self.status = StatusAggregator(
            self.store, self.providers, self.pool, self.selector, clock=clock, home=home
        )
        self.models = ModelCatalog(self.providers, self.pool)
        self._home = home

    async def start(self) -> None:
        if self.settings.refresh.enabled:
            await self.refresher.start()

    async def aclose(self) -> None:
        await self.refresher.stop()
        await self.http.aclose()

    async def _resolve(self, account_id: str, provider: str | None = None) -> Account:
        if provider is not None:
            return await self.store.require(provider, account_id)
        account = await self.store.find(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self) -> PoolStatus:
        return await self.status.get_status()

    async def list_accounts(self, provider: str) -> list[Account]:
        self.providers.get(provider)
        return await self.pool.list(provider)

    async def list_models(self, provider: str | None = None) -> dict[str, list[str]]:
        if provider is None:
            return await self.models.all_models()
        return {provider: await self.models.list_models(provider)}

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def start_device_flow(
        self, provider: str, session: str = "default"
    ) -> AuthorizationAttempt:
        return await self.device.start(provider, session)

    async def poll_device_flow(
        self, state_id: str, provider: str | None = None
    ) -> DevicePollResult:
        attempt = self.attempts.peek(state_id)
        if provider is not None and attempt is not None and attempt.provider != provider:
            raise AttemptNotFoundError(state_id)
        return await self.device.poll(state_id)

    def get_authorization_url(
        self,
        provider: str,
        redirect_uri: str,
        session: str = "default",
        return_to: str | None = None,
    ) -> str:
        return self.web.build_authorization_url(provider, redirect_uri, session, return_to)

    def redirect_uri(self) -> str:
        """Callback URL this server registers with redirect providers."""
        return f"{self.settings.server_url}/api/oauth/callback"

    async def handle_callback(
        self, provider: str | None, code: str, state: str
    ) -> CallbackResult:
        """Complete a redirect grant. ``provider`` defaults to the state's."""
        if provider is None:
            # An unknown state leaves "" and fails state validation
            provider = self.web.pending_provider(state) or ""
        return await self.web.handle_callback(provider, code, state)

    def reject_callback(self, state: str, error: str, description: str | None = None) -> None:
        self.web.reject_callback(state, error, description)

    def callback_return_to(self, state: str) -> str | None:
        return self.web.pending_return_to(state)

    def cancel_attempt(self, provider: str, session: str = "default") -> bool:
        return self.attempts.cancel(provider, session)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def disconnect(self, provider: str) -> Account | None:
        """Remove the provider's default account (first in pool order).

        Returns the removed account, or None when there was nothing to
        remove. Tokens are deleted locally; nothing is revoked upstream.
        """
        accounts = await self.list_accounts(provider)
        if not accounts:
            return None
        default = accounts[0]
        await self.pool.delete(provider, default.account_id)
        logger.info("provider_disconnected", provider=provider, account_id=default.account_id)
        return default

    async def activate_account(
        self, provider: str, account_id: str, action: ActivateAction | str
    ) -> Account:
        try:
            action = ActivateAction(action)
        except ValueError:
            raise ValidationError(
                f"Invalid action {action!r}: expected 'add' or 'remove'"
            ) from None
        return await self.pool.set_active(
            provider, account_id, action == ActivateAction.ADD
        )

    async def update_account(
        self,
        account_id: str,
        *,
        provider: str | None = None,
        label: str | None = UNSET,
        model_override: str | None = UNSET,
        priority: int = UNSET,
        status: AccountStatus | str | None = None,
    ) -> Account:
        account = await self._resolve(account_id, provider)
        if status is not None:
            try:
                status = AccountStatus(status)
            except ValueError:
                raise ValidationError(
                    f"Invalid status {status!r}: expected 'active' or 'disabled'"
                ) from None

        return await self.pool.update(
            account.provider,
            account_id,
            label=label,
            model_override=model_override,
            priority=priority,
            status=UNSET if status is None else status,
        )

    async def delete_account(self, provider: str, account_id: str) -> None:
        self.providers.get(provider)
        await self.pool.delete(provider, account_id)

    async def refresh_token(
        self, provider: str | None = None, account_id: str | None = None
    ) -> Account:
        """Refresh one account, or the provider's default refreshable account."""
        if account_id is not None:
            account = await self._resolve(account_id, provider)
            return await self.refresher.refresh_one(account.account_id, account.provider)
        if provider is None:
            raise ValidationError("Either provider or accountId is required")

        for account in await self.list_accounts(provider):
            if account.has_refresh_token:
                return await self.refresher.refresh_one(account.account_id, provider)
        raise RefreshFailedError(provider, "no account with a refresh token")

    async def import_detected(self, provider: str) -> Account:
        """Register the local CLI credential as a file-detected account."""
        spec = self.providers.get(provider)
        if not spec.supports_file_detection:
            raise UnsupportedProviderError(provider, grant="file detection")
        found = load_detected(spec, self._home)
        if found is None:
            raise NotFoundError(f"No local credential file found for '{provider}'")

        secrets = AccountSecrets(
            access_token=found.access_token,
            refresh_token=found.refresh_token,
            extra={"path": str(found.path)},
        )
        async with self.store.creation_lock(provider):
            for existing in await self.store.list(provider):
                if existing.source != AccountSource.FILE_DETECTED:
                    continue

                def reimport(account: Account, current: AccountSecrets) -> None:
                    account.expires_at = found.expires_at
                    account.email = found.email or account.email
                    account.refresh_failed = False
                    account.last_error = None
                    current.access_token = secrets.access_token
                    current.extra = secrets.extra
                    if secrets.refresh_token:
                        current.refresh_token = secrets.refresh_token

                return await self.store.update_secrets(
                    provider, existing.account_id, reimport
                )

            now = now_ms(self._clock)
            account = Account(
                provider=provider,
                account_id=generate_account_id(),
                created_at=now,
                updated_at=now,
                label=f"{found.user} (local)" if found.user else "Local CLI",
                priority=self.settings.rotation.default_priority,
                source=AccountSource.FILE_DETECTED,
                grant_type=GrantType.LOCAL_FILE,
                scope=found.scope,
                email=found.email,
                expires_at=found.expires_at,
            )
            return await self.store.create(account, secrets)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def select_for_execution(
        self, provider: str, preferred_account_id: str | None = None
    ) -> Account:
        self.providers.get(provider)
        return await self.selector.select_for_execution(provider, preferred_account_id)

    async def acquire_credential(
        self, provider: str, preferred_account_id: str | None = None
    ) -> ExecutionCredential:
        """Select an account and hand out its current access token.

        An expired but refreshable token is refreshed first.
        """
        account = await self.select_for_execution(provider, preferred_account_id)
        if account.is_expired(now_ms(self._clock)):
            account = await self.refresher.refresh_one(account.account_id, provider)
        secrets = await self.store.get_secrets(provider, account.account_id)
        return ExecutionCredential(
            account=account,
            access_token=secrets.access_token,
            token_type=secrets.token_type,
        )

    async def report_failure(
        self,
        provider: str,
        account_id: str,
        reason: str,
        retry_after: str | None = None,
    ) -> Account:
        return await self.selector.report_failure(provider, account_id, reason, retry_after)

    async def report_success(self, provider: str, account_id: str) -> None:
        await self.selector.report_success(provider, account_id)

    def set_auto_swap(self, enabled: bool) -> bool:
        self.selector.auto_swap = enabled
        return self.selector.auto_swap

    def settings_snapshot(self) -> dict[str, Any]:
        rotation = self.settings.rotation
        return {
            "auto_swap": rotation.auto_swap,
            "cooldown_seconds": rotation.cooldown_seconds,
            "allow_file_detected_execution": rotation.allow_file_detected_execution,
        }
