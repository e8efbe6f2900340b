"""Device authorization grant (RFC 8628).

``start`` asks the provider for a user code and registers an attempt.
``poll`` performs exactly one token exchange per call and never sleeps; the
caller drives the loop at the interval it was given, widening it on
``slow_down``.
"""

from dataclasses import dataclass
from enum import StrEnum

from structlog import get_logger

from oauth_pool.config.rotation import RotationSettings
from oauth_pool.core.clock import Clock, system_clock
from oauth_pool.core.logging import truncate_secret
from oauth_pool.db.credential_store import CredentialStore
from oauth_pool.exceptions import (
    AttemptNotFoundError,
    ExchangeFailedError,
    StorageNotReadyError,
    TransientNetworkError,
)
from oauth_pool.oauth.attempts import (
    AttemptKind,
    AttemptPhase,
    AttemptRegistry,
    AuthorizationAttempt,
)
from oauth_pool.oauth.constants import (
    DEVICE_ACCESS_DENIED,
    DEVICE_AUTHORIZATION_PENDING,
    DEVICE_EXPIRED_TOKEN,
    DEVICE_SLOW_DOWN,
    SLOW_DOWN_INCREMENT_SECONDS,
)
from oauth_pool.oauth.grants import record_grant
from oauth_pool.oauth.token_exchange import OAuthHttpClient, TokenEndpointError
from oauth_pool.providers import ProviderRegistry
from oauth_pool.rotation.accounts import Account, GrantType
from oauth_pool.utils.id_generator import generate_state_id


logger = get_logger(__name__)


class DevicePollStatus(StrEnum):
    PENDING = "pending"
    SLOW_DOWN = "slow_down"
    COMPLETE = "complete"
    EXPIRED = "expired"
    DENIED = "denied"
    ERROR = "error"


@dataclass
class DevicePollResult:
    status: DevicePollStatus
    error: str | None = None
    interval: int | None = None
    account: Account | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status not in (DevicePollStatus.PENDING, DevicePollStatus.SLOW_DOWN)


class DeviceCodeAuthorizer:
    """Runs the device-code grant for providers that offer it."""

    def __init__(
        self,
        registry: AttemptRegistry,
        providers: ProviderRegistry,
        http: OAuthHttpClient,
        store: CredentialStore,
        rotation: RotationSettings | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.registry = registry
        self.providers = providers
        self.http = http
        self.store = store
        self.rotation = rotation or RotationSettings()
        self._clock = clock

    async def start(self, provider: str, session: str = "default") -> AuthorizationAttempt:
        """Request a user code and register a new attempt for ``session``.

        Raises:
            UnsupportedProviderError: provider has no device grant
            StorageNotReadyError: a completed grant could not be stored
            TransientNetworkError: provider unreachable
            ExchangeFailedError: provider refused to issue a code
        """
        spec = self.providers.require_device(provider)
        if not self.store.is_ready:
            raise StorageNotReadyError()

        try:
            grant = await self.http.request_device_code(spec)
        except TokenEndpointError as e:
            logger.error("device_code_request_failed", provider=provider, error=e.error)
            raise ExchangeFailedError(
                f"Provider refused the device authorization: {e}",
                upstream_status=e.status_code,
                response_text=e.response_text,
            ) from e

        now = self.registry.now()
        attempt = self.registry.register(
            AuthorizationAttempt(
                provider=provider,
                session=session,
                kind=AttemptKind.DEVICE_CODE,
                state_id=generate_state_id(),
                verification_uri=grant.verification_uri,
                user_code=grant.user_code,
                device_code=grant.device_code,
                poll_interval=grant.interval,
                created_at=now,
                expires_at=now + grant.expires_in * 1000,
            )
        )
        logger.info(
            "device_flow_started",
            provider=provider,
            state_id=truncate_secret(attempt.state_id),
            expires_in=grant.expires_in,
            interval=grant.interval,
        )
        return attempt

    async def poll(self, state_id: str) -> DevicePollResult:
        """One exchange attempt for ``state_id``.

        Raises:
            AttemptNotFoundError: unknown, finished or cancelled attempt
        """
        attempt = self.registry.get(state_id)
        device_code = attempt.device_code
        if attempt.kind != AttemptKind.DEVICE_CODE or device_code is None:
            raise AttemptNotFoundError(state_id)

        async with attempt.lock:
            # A concurrent poll or a newer start may have finished it
            if attempt.is_terminal:
                raise AttemptNotFoundError(state_id)

            if attempt.is_past_deadline(self.registry.now()):
                self.registry.retire(attempt, AttemptPhase.EXPIRED)
                logger.info(
                    "device_flow_expired",
                    provider=attempt.provider,
                    state_id=truncate_secret(state_id),
                )
                return DevicePollResult(
                    DevicePollStatus.EXPIRED, error="Device code expired"
                )

            return await self._exchange(attempt, device_code)

    async def _exchange(
        self, attempt: AuthorizationAttempt, device_code: str
    ) -> DevicePollResult:
        spec = self.providers.get(attempt.provider)

        try:
            tokens = await self.http.exchange_device_code(spec, device_code)
        except TransientNetworkError as e:
            # The attempt stays live; the caller's interval is the backoff
            return DevicePollResult(
                DevicePollStatus.PENDING,
                error=e.message,
                interval=attempt.poll_interval,
            )
        except TokenEndpointError as e:
            return self._handle_endpoint_error(attempt, e)

        identity = await self.http.fetch_identity(spec, tokens.access_token)
        try:
            account, created = await record_grant(
                self.store,
                spec,
                tokens,
                identity,
                GrantType.DEVICE_CODE,
                default_priority=self.rotation.default_priority,
                clock=self._clock,
            )
        except Exception:
            if not attempt.is_terminal:
                self.registry.retire(attempt, AttemptPhase.ERROR)
            raise

        # A cancelled attempt still keeps the grant the user approved
        if not attempt.is_terminal:
            self.registry.retire(attempt, AttemptPhase.COMPLETE)
        logger.info(
            "device_flow_complete",
            provider=attempt.provider,
            account_id=account.account_id,
            created=created,
        )
        return DevicePollResult(DevicePollStatus.COMPLETE, account=account)

    def _handle_endpoint_error(
        self, attempt: AuthorizationAttempt, e: TokenEndpointError
    ) -> DevicePollResult:
        if e.error == DEVICE_AUTHORIZATION_PENDING:
            return DevicePollResult(
                DevicePollStatus.PENDING, interval=attempt.poll_interval
            )

        if e.error == DEVICE_SLOW_DOWN:
            attempt.poll_interval += SLOW_DOWN_INCREMENT_SECONDS
            logger.debug(
                "device_flow_slow_down",
                provider=attempt.provider,
                interval=attempt.poll_interval,
            )
            return DevicePollResult(
                DevicePollStatus.SLOW_DOWN, interval=attempt.poll_interval
            )

        if e.error == DEVICE_EXPIRED_TOKEN:
            self.registry.retire(attempt, AttemptPhase.EXPIRED)
            return DevicePollResult(
                DevicePollStatus.EXPIRED, error=e.description or "Device code expired"
            )

        if e.error == DEVICE_ACCESS_DENIED:
            self.registry.retire(attempt, AttemptPhase.DENIED)
            logger.info("device_flow_denied", provider=attempt.provider)
            return DevicePollResult(
                DevicePollStatus.DENIED,
                error=e.description or "Authorization denied by user",
            )

        self.registry.retire(attempt, AttemptPhase.ERROR)
        logger.error(
            "device_flow_failed",
            provider=attempt.provider,
            error=e.error,
            status=e.status_code,
        )
        return DevicePollResult(DevicePollStatus.ERROR, error=str(e))
