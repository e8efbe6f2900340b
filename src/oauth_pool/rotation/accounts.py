"""Account model for the credential pool.

An ``Account`` carries only metadata that is safe to show and to store in
plaintext. Token material lives in ``AccountSecrets`` and is encrypted at
rest by the credential store.
"""

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any

from oauth_pool.exceptions import InvalidPriorityError


class AccountStatus(StrEnum):
    """Administrative toggle, independent of token validity."""

    ACTIVE = "active"
    DISABLED = "disabled"


class AccountSource(StrEnum):
    """How the credential was obtained."""

    WEB_REDIRECT = "web-redirect"
    FILE_DETECTED = "file-detected"


class GrantType(StrEnum):
    DEVICE_CODE = "device_code"
    AUTHORIZATION_CODE = "authorization_code"
    LOCAL_FILE = "local_file"


def validate_priority(priority: Any) -> int:
    """Return ``priority`` if it is a positive integer, else raise."""
    if isinstance(priority, bool) or not isinstance(priority, int) or priority <= 0:
        raise InvalidPriorityError(priority)
    return priority


@dataclass
class AccountSecrets:
    """Token material for one account. Never logged, never returned by the API."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    id_token: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AccountSecrets":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type") or "Bearer",
            id_token=data.get("id_token"),
            extra=data.get("extra") or {},
        )


@dataclass
class Account:
    """One authorization grant, keyed by ``(provider, account_id)``.

    All timestamps are epoch milliseconds. ``expires_at`` is ``None`` when the
    provider did not report an expiry.
    """

    provider: str
    account_id: str
    created_at: int
    updated_at: int
    label: str | None = None
    status: AccountStatus = AccountStatus.ACTIVE
    active: bool = True
    priority: int = 100
    model_override: str | None = None
    source: AccountSource = AccountSource.WEB_REDIRECT
    grant_type: GrantType = GrantType.AUTHORIZATION_CODE
    scope: str | None = None
    email: str | None = None
    subject: str | None = None
    expires_at: int | None = None
    has_refresh_token: bool = False
    last_refreshed_at: int | None = None
    refresh_failed: bool = False
    last_error: str | None = None

    @property
    def sort_key(self) -> tuple[int, int, str]:
        """Total order used for listing and selection."""
        return (self.priority, self.created_at, self.account_id)

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at is not None and self.expires_at <= now_ms

    @property
    def is_refreshable(self) -> bool:
        """A stored refresh token that the provider has not rejected."""
        return self.has_refresh_token and not self.refresh_failed

    def is_terminal(self, now_ms: int) -> bool:
        """Expired with no refresh token: only re-authorization helps."""
        return self.is_expired(now_ms) and not self.has_refresh_token

    def is_execution_ready(self, now_ms: int, allow_file_detected: bool = False) -> bool:
        """Whether the credential can currently back an agent execution."""
        if self.status != AccountStatus.ACTIVE:
            return False
        if self.source == AccountSource.FILE_DETECTED and not allow_file_detected:
            return False
        return not self.is_expired(now_ms) or self.is_refreshable

    def needs_refresh(self, now_ms: int, window_ms: int) -> bool:
        """Inside the renewal window and eligible for a scheduled refresh."""
        if not self.is_refreshable or self.expires_at is None:
            return False
        return self.expires_at - now_ms <= window_ms


def sort_accounts(accounts: list[Account]) -> list[Account]:
    return sorted(accounts, key=lambda a: a.sort_key)
