"""Shared OAuth token endpoint calls.

All provider calls go through ``OAuthHttpClient`` so that timeouts, transport
failures and 5xx answers surface uniformly as ``TransientNetworkError`` while
4xx answers (and GitHub's 200-with-error bodies) surface as
``TokenEndpointError`` carrying the RFC 6749 error code.
"""

from dataclasses import dataclass, field
from typing import Any

import httpx
from structlog import get_logger

from oauth_pool.exceptions import TransientNetworkError, UnsupportedProviderError
from oauth_pool.oauth.constants import (
    AUTHORIZATION_CODE_GRANT_TYPE,
    DEFAULT_DEVICE_EXPIRES_IN_SECONDS,
    DEFAULT_DEVICE_INTERVAL_SECONDS,
    DEVICE_CODE_GRANT_TYPE,
    REFRESH_TOKEN_GRANT_TYPE,
    USER_AGENT,
)
from oauth_pool.providers import ProviderSpec


logger = get_logger(__name__)


class TokenEndpointError(Exception):
    """The provider answered, and the answer was an OAuth error."""

    def __init__(
        self,
        error: str,
        description: str | None = None,
        status_code: int | None = None,
        response_text: str | None = None,
    ) -> None:
        super().__init__(f"{error}: {description}" if description else error)
        self.error = error
        self.description = description
        self.status_code = status_code
        self.response_text = response_text


@dataclass
class TokenResponse:
    """Successful token endpoint answer."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str | None = None
    id_token: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def expires_at_ms(self, now_ms: int) -> int | None:
        if self.expires_in is None:
            return None
        return now_ms + self.expires_in * 1000

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TokenResponse":
        expires_in = payload.get("expires_in")
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or None,
            token_type=payload.get("token_type") or "Bearer",
            expires_in=int(expires_in) if expires_in is not None else None,
            scope=payload.get("scope"),
            id_token=payload.get("id_token"),
            raw=payload,
        )


@dataclass
class DeviceCodeResponse:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int = DEFAULT_DEVICE_EXPIRES_IN_SECONDS
    interval: int = DEFAULT_DEVICE_INTERVAL_SECONDS


@dataclass
class UserIdentity:
    subject: str | None = None
    email: str | None = None


def _truncate(text: str, limit: int = 500) -> str:
    return text[:limit] if len(text) > limit else text


class OAuthHttpClient:
    """Thin wrapper over a shared ``httpx.AsyncClient``."""

    def __init__(
        self, http_client: httpx.AsyncClient | None = None, timeout: float = 20.0
    ) -> None:
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._timeout = timeout

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _headers() -> dict[str, str]:
        return {"Accept": "application/json", "User-Agent": USER_AGENT}

    async def _send(
        self, method: str, url: str, operation: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await self._client.request(
                method, url, timeout=self._timeout, **kwargs
            )
        except httpx.TimeoutException as e:
            logger.warning("oauth_request_timeout", operation=operation, url=url)
            raise TransientNetworkError(f"{operation} timed out") from e
        except httpx.TransportError as e:
            logger.warning(
                "oauth_request_transport_error",
                operation=operation,
                url=url,
                error=str(e),
            )
            raise TransientNetworkError(f"{operation} failed to reach provider") from e

        if response.status_code >= 500:
            logger.warning(
                "oauth_request_upstream_error",
                operation=operation,
                status=response.status_code,
            )
            raise TransientNetworkError(
                f"{operation} failed: provider answered {response.status_code}"
            )
        return response

    async def post_token_request(
        self, url: str, data: dict[str, str], operation: str
    ) -> dict[str, Any]:
        """POST a form-encoded token request and return the JSON body."""
        response = await self._send(
            "POST", url, operation, data=data, headers=self._headers()
        )
        text = _truncate(response.text)
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not isinstance(payload, dict):
            logger.error(
                f"oauth_{operation}_failed",
                status=response.status_code,
                error="non_json_response",
            )
            raise TokenEndpointError(
                "invalid_response",
                "Provider returned a non-JSON body",
                status_code=response.status_code,
                response_text=text,
            )

        # GitHub answers device polls and some failures with 200 + error
        if response.status_code >= 400 or payload.get("error"):
            error = str(payload.get("error") or f"http_{response.status_code}")
            raise TokenEndpointError(
                error,
                payload.get("error_description"),
                status_code=response.status_code,
                response_text=text,
            )
        return payload

    async def request_device_code(self, spec: ProviderSpec) -> DeviceCodeResponse:
        """Start a device authorization at the provider."""
        if not spec.device_code_url:
            raise UnsupportedProviderError(spec.id, grant="device_code")
        payload = await self.post_token_request(
            spec.device_code_url,
            {"client_id": spec.require_client_id(), "scope": spec.scope},
            "device_code",
        )
        try:
            return DeviceCodeResponse(
                device_code=payload["device_code"],
                user_code=payload["user_code"],
                verification_uri=payload.get("verification_uri")
                or payload["verification_url"],
                expires_in=int(
                    payload.get("expires_in") or DEFAULT_DEVICE_EXPIRES_IN_SECONDS
                ),
                interval=int(payload.get("interval") or DEFAULT_DEVICE_INTERVAL_SECONDS),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise TokenEndpointError(
                "invalid_response", f"Malformed device code response: {e}"
            ) from e

    async def exchange_device_code(
        self, spec: ProviderSpec, device_code: str
    ) -> TokenResponse:
        """One exchange attempt for a device code."""
        payload = await self.post_token_request(
            spec.token_url,
            {
                "client_id": spec.require_client_id(),
                "device_code": device_code,
                "grant_type": DEVICE_CODE_GRANT_TYPE,
            },
            "device_token",
        )
        return self._parse_token(payload)

    async def exchange_code(
        self,
        spec: ProviderSpec,
        code: str,
        redirect_uri: str,
        code_verifier: str | None,
    ) -> TokenResponse:
        """Exchange an authorization code for tokens."""
        data = {
            "grant_type": AUTHORIZATION_CODE_GRANT_TYPE,
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": spec.require_client_id(),
        }
        if spec.client_secret:
            data["client_secret"] = spec.client_secret
        if code_verifier:
            data["code_verifier"] = code_verifier
        payload = await self.post_token_request(spec.token_url, data, "token_exchange")
        return self._parse_token(payload)

    async def refresh(self, spec: ProviderSpec, refresh_token: str) -> TokenResponse:
        """Redeem a refresh token."""
        data = {
            "grant_type": REFRESH_TOKEN_GRANT_TYPE,
            "refresh_token": refresh_token,
            "client_id": spec.require_client_id(),
        }
        if spec.client_secret:
            data["client_secret"] = spec.client_secret
        payload = await self.post_token_request(spec.token_url, data, "token_refresh")
        return self._parse_token(payload)

    async def fetch_identity(self, spec: ProviderSpec, access_token: str) -> UserIdentity:
        """Best-effort user info lookup; an empty identity on any failure."""
        if not spec.userinfo_url:
            return UserIdentity()
        try:
            response = await self._send(
                "GET",
                spec.userinfo_url,
                "userinfo",
                headers={**self._headers(), "Authorization": f"Bearer {access_token}"},
            )
        except TransientNetworkError:
            return UserIdentity()
        if response.status_code != 200:
            logger.warning(
                "oauth_userinfo_failed",
                provider=spec.id,
                status=response.status_code,
            )
            return UserIdentity()
        try:
            data = response.json()
        except ValueError:
            return UserIdentity()
        if not isinstance(data, dict):
            return UserIdentity()

        # Google: id/sub + email. GitHub: numeric id + email (may be null).
        subject = data.get("sub") or data.get("id")
        email = data.get("email")
        return UserIdentity(
            subject=str(subject) if subject is not None else None,
            email=email if isinstance(email, str) and email else None,
        )

    @staticmethod
    def _parse_token(payload: dict[str, Any]) -> TokenResponse:
        if not payload.get("access_token"):
            raise TokenEndpointError(
                "invalid_response", "Token response carried no access_token"
            )
        return TokenResponse.from_payload(payload)
