"""Authorization-code grant with browser redirect and PKCE."""

import base64
import hashlib
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode

from structlog import get_logger

from oauth_pool.config.oauth import FlowSettings
from oauth_pool.config.rotation import RotationSettings
from oauth_pool.core.clock import Clock, system_clock
from oauth_pool.core.logging import truncate_secret
from oauth_pool.db.credential_store import CredentialStore
from oauth_pool.exceptions import (
    AttemptExpiredError,
    AuthorizationDeniedError,
    ExchangeFailedError,
    InvalidStateError,
    StorageNotReadyError,
)
from oauth_pool.oauth.attempts import (
    AttemptKind,
    AttemptPhase,
    AttemptRegistry,
    AuthorizationAttempt,
)
from oauth_pool.oauth.grants import record_grant
from oauth_pool.oauth.token_exchange import OAuthHttpClient, TokenEndpointError
from oauth_pool.providers import ProviderRegistry
from oauth_pool.rotation.accounts import Account, GrantType
from oauth_pool.utils.id_generator import generate_state_id


logger = get_logger(__name__)


def generate_pkce_pair() -> tuple[str, str]:
    """Generate PKCE code verifier and S256 challenge."""
    code_verifier = secrets.token_urlsafe(32)
    code_challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(code_verifier.encode()).digest())
        .decode()
        .rstrip("=")
    )
    return code_verifier, code_challenge


@dataclass
class CallbackResult:
    account: Account
    created: bool
    return_to: str | None = None


class WebRedirectAuthorizer:
    """Runs the redirect grant for providers that offer it."""

    def __init__(
        self,
        registry: AttemptRegistry,
        providers: ProviderRegistry,
        http: OAuthHttpClient,
        store: CredentialStore,
        flows: FlowSettings | None = None,
        rotation: RotationSettings | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.registry = registry
        self.providers = providers
        self.http = http
        self.store = store
        self.flows = flows or FlowSettings()
        self.rotation = rotation or RotationSettings()
        self._clock = clock

    def build_authorization_url(
        self,
        provider: str,
        redirect_uri: str,
        session: str = "default",
        return_to: str | None = None,
    ) -> str:
        """Build the provider's consent URL.

        No credential is touched. The issued state is remembered so the
        callback can be matched, and replaces any earlier attempt for the
        same session.
        """
        spec = self.providers.require_redirect(provider)
        client_id = spec.require_client_id()
        if not self.store.is_ready:
            raise StorageNotReadyError()

        state = generate_state_id()
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": spec.scope,
            "state": state,
        }
        code_verifier = None
        if spec.use_pkce:
            code_verifier, code_challenge = generate_pkce_pair()
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        params.update(spec.extra_authorize_params)

        url = f"{spec.authorize_url}?{urlencode(params)}"
        now = self.registry.now()
        self.registry.register(
            AuthorizationAttempt(
                provider=provider,
                session=session,
                kind=AttemptKind.WEB_REDIRECT,
                state_id=state,
                verification_uri=url,
                created_at=now,
                expires_at=now + self.flows.redirect_state_ttl_seconds * 1000,
                code_verifier=code_verifier,
                redirect_uri=redirect_uri,
                return_to=return_to,
            )
        )
        logger.info(
            "authorization_url_built",
            provider=provider,
            state_id=truncate_secret(state),
        )
        return url

    def _claim(self, provider: str | None, state: str) -> AuthorizationAttempt:
        attempt = self.registry.peek(state)
        if (
            attempt is None
            or attempt.kind != AttemptKind.WEB_REDIRECT
            or attempt.is_terminal
        ):
            logger.warning("oauth_callback_invalid_state", state_id=truncate_secret(state))
            raise InvalidStateError()
        if provider is not None and attempt.provider != provider:
            logger.warning(
                "oauth_callback_provider_mismatch",
                expected=attempt.provider,
                received=provider,
            )
            raise InvalidStateError("State was issued for a different provider")
        return attempt

    def pending_return_to(self, state: str) -> str | None:
        """Where the browser should land after the callback, if known."""
        attempt = self.registry.peek(state)
        return attempt.return_to if attempt is not None else None

    def pending_provider(self, state: str) -> str | None:
        attempt = self.registry.peek(state)
        return attempt.provider if attempt is not None else None

    def reject_callback(self, state: str, error: str, description: str | None = None) -> None:
        """The provider redirected back with an error instead of a code."""
        attempt = self._claim(None, state)
        phase = AttemptPhase.DENIED if error == "access_denied" else AttemptPhase.ERROR
        self.registry.retire(attempt, phase)
        logger.info("oauth_callback_error", provider=attempt.provider, error=error)
        if phase == AttemptPhase.DENIED:
            raise AuthorizationDeniedError(description or "Authorization denied by user")
        raise ExchangeFailedError(description or error)

    async def handle_callback(self, provider: str, code: str, state: str) -> CallbackResult:
        """Exchange ``code`` and persist the account.

        Raises:
            InvalidStateError: state not issued here, already used, or for
                another provider
            AttemptExpiredError: the callback came after the state lifetime
            ExchangeFailedError: provider rejected the code
            TransientNetworkError: provider unreachable; the state stays
                valid so the callback can be retried
        """
        attempt = self._claim(provider, state)

        async with attempt.lock:
            if attempt.is_terminal:
                raise InvalidStateError()
            if attempt.is_past_deadline(self.registry.now()):
                self.registry.retire(attempt, AttemptPhase.EXPIRED)
                raise AttemptExpiredError("Authorization request expired; start again")

            spec = self.providers.require_redirect(provider)
            redirect_uri = attempt.redirect_uri
            if redirect_uri is None:
                raise InvalidStateError()
            try:
                tokens = await self.http.exchange_code(
                    spec, code, redirect_uri, attempt.code_verifier
                )
            except TokenEndpointError as e:
                self.registry.retire(attempt, AttemptPhase.ERROR)
                logger.error(
                    "oauth_code_exchange_failed",
                    provider=provider,
                    error=e.error,
                    status=e.status_code,
                )
                raise ExchangeFailedError(
                    f"Token exchange failed: {e}",
                    upstream_status=e.status_code,
                    response_text=e.response_text,
                ) from e

            identity = await self.http.fetch_identity(spec, tokens.access_token)
            account, created = await record_grant(
                self.store,
                spec,
                tokens,
                identity,
                GrantType.AUTHORIZATION_CODE,
                default_priority=self.rotation.default_priority,
                clock=self._clock,
            )
            self.registry.retire(attempt, AttemptPhase.COMPLETE)

        logger.info(
            "oauth_callback_complete",
            provider=provider,
            account_id=account.account_id,
            created=created,
        )
        return CallbackResult(account=account, created=created, return_to=attempt.return_to)
