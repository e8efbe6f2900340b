"""Request and response bodies for the OAuth routes.

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from oauth_pool.oauth.attempts import AuthorizationAttempt
from oauth_pool.oauth.device_flow import DevicePollResult
from oauth_pool.rotation.accounts import Account
from oauth_pool.services.status import AccountView, PoolStatus, ProviderStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _iso(ms: int | None) -> str | None:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=UTC).isoformat()


# ============================================================================
# Accounts & status
# ============================================================================


class AccountResponse(CamelModel):
    """One account as shown to the dashboard. Never includes tokens."""

    provider: str
    account_id: str
    label: str | None = None
    status: str
    active: bool
    priority: int
    model_override: str | None = None
    source: str
    grant_type: str
    scope: str | None = None
    email: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    expires_at: str | None = None
    has_refresh_token: bool
    last_refreshed_at: str | None = None
    refresh_failed: bool
    last_error: str | None = None
    execution_ready: bool | None = None
    runnable: bool | None = None
    expired: bool | None = None
    needs_reauthorization: bool | None = None
    cooling_down: bool | None = None
    cooldown_remaining_seconds: int | None = None
    is_default: bool | None = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            provider=account.provider,
            account_id=account.account_id,
            label=account.label,
            status=account.status.value,
            active=account.active,
            priority=account.priority,
            model_override=account.model_override,
            source=account.source.value,
            grant_type=account.grant_type.value,
            scope=account.scope,
            email=account.email,
            created_at=_iso(account.created_at),
            updated_at=_iso(account.updated_at),
            expires_at=_iso(account.expires_at),
            has_refresh_token=account.has_refresh_token,
            last_refreshed_at=_iso(account.last_refreshed_at),
            refresh_failed=account.refresh_failed,
            last_error=account.last_error,
        )

    @classmethod
    def from_view(cls, view: AccountView) -> "AccountResponse":
        response = cls.from_account(view.account)
        response.execution_ready = view.execution_ready
        response.runnable = view.runnable
        response.expired = view.expired
        response.needs_reauthorization = view.terminal or (
            view.expired and view.account.refresh_failed
        )
        response.cooling_down = view.cooling_down
        response.cooldown_remaining_seconds = view.cooldown_remaining_seconds
        response.is_default = view.is_default
        return response


class AccountCounts(CamelModel):
    total: int
    active: int
    runnable: int


class ProviderStatusResponse(CamelModel):
    provider: str
    display_name: str
    connected: bool
    storage_ready: bool
    detected: bool
    execution_ready: bool
    supports_device_code: bool
    supports_web_redirect: bool
    supports_file_detection: bool
    # Default account, flattened as the dashboard expects
    source: str | None = None
    email: str | None = None
    scope: str | None = None
    expires_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    counts: AccountCounts
    accounts: list[AccountResponse]

    @classmethod
    def from_status(cls, status: ProviderStatus) -> "ProviderStatusResponse":
        default = status.default_account
        return cls(
            provider=status.spec.id,
            display_name=status.spec.display_name,
            connected=status.connected,
            storage_ready=status.storage_ready,
            detected=status.detected,
            execution_ready=status.execution_ready,
            supports_device_code=status.spec.supports_device_code,
            supports_web_redirect=status.spec.supports_web_redirect,
            supports_file_detection=status.spec.supports_file_detection,
            source=default.source.value if default else None,
            email=default.email if default else None,
            scope=default.scope if default else None,
            expires_at=_iso(default.expires_at) if default else None,
            created_at=_iso(default.created_at) if default else None,
            updated_at=_iso(default.updated_at) if default else None,
            counts=AccountCounts(**status.counts.to_dict()),
            accounts=[AccountResponse.from_view(v) for v in status.accounts],
        )


class StatusResponse(CamelModel):
    storage_ready: bool
    auto_swap: bool
    providers: dict[str, ProviderStatusResponse]

    @classmethod
    def from_status(cls, status: PoolStatus) -> "StatusResponse":
        return cls(
            storage_ready=status.storage_ready,
            auto_swap=status.auto_swap,
            providers={
                k: ProviderStatusResponse.from_status(v)
                for k, v in status.providers.items()
            },
        )


# ============================================================================
# Authorization
# ============================================================================


class DeviceStartResponse(CamelModel):
    state_id: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int

    @classmethod
    def from_attempt(cls, attempt: AuthorizationAttempt, now_ms: int) -> "DeviceStartResponse":
        return cls(
            state_id=attempt.state_id,
            user_code=attempt.user_code or "",
            verification_uri=attempt.verification_uri,
            expires_in=attempt.expires_in(now_ms),
            interval=attempt.poll_interval,
        )


class DevicePollRequest(CamelModel):
    state_id: str


class DevicePollResponse(CamelModel):
    status: str
    error: str | None = None
    interval: int | None = None
    account_id: str | None = None
    email: str | None = None

    @classmethod
    def from_result(cls, result: DevicePollResult) -> "DevicePollResponse":
        return cls(
            status=result.status.value,
            error=result.error,
            interval=result.interval,
            account_id=result.account.account_id if result.account else None,
            email=result.account.email if result.account else None,
        )


class AuthorizationUrlResponse(CamelModel):
    url: str


class CallbackResponse(CamelModel):
    ok: bool = True
    provider: str
    account_id: str
    created: bool


# ============================================================================
# Administration
# ============================================================================


class ProviderRequest(CamelModel):
    provider: str


class DisconnectResponse(CamelModel):
    ok: bool = True
    account_id: str | None = None


class ActivateRequest(CamelModel):
    provider: str
    account_id: str
    action: Literal["add", "remove"]


class UpdateAccountRequest(CamelModel):
    """Only fields present in the body are changed."""

    provider: str | None = None
    label: str | None = None
    model_override: str | None = None
    priority: int | None = None
    status: Literal["active", "disabled"] | None = None


class RefreshRequest(CamelModel):
    provider: str | None = None
    account_id: str | None = None


class OkResponse(CamelModel):
    ok: bool = True


class ModelsResponse(CamelModel):
    models: dict[str, list[str]]


# ============================================================================
# Execution
# ============================================================================


class SelectRequest(CamelModel):
    provider: str
    preferred_account_id: str | None = None


class SelectResponse(CamelModel):
    provider: str
    account_id: str
    access_token: str
    token_type: str
    expires_at: str | None = None
    model_override: str | None = None


class ReportRequest(CamelModel):
    provider: str
    account_id: str
    outcome: Literal["success", "failure"]
    reason: str | None = None
    retry_after: str | None = Field(
        default=None, description="Provider Retry-After header value, if any"
    )


class PoolSettingsRequest(CamelModel):
    auto_swap: bool


class PoolSettingsResponse(CamelModel):
    auto_swap: bool
    cooldown_seconds: int
    allow_file_detected_execution: bool
