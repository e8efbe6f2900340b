"""In-flight authorization attempts.

Attempts live only in memory. The registry enforces one non-terminal attempt
per (provider, session): registering a new one cancels the previous one,
after which its ``state_id`` is unknown to ``get``.
"""

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum

from cachetools import TLRUCache
from structlog import get_logger

from oauth_pool.core.clock import Clock, now_ms, system_clock
from oauth_pool.core.logging import truncate_secret
from oauth_pool.exceptions import AttemptNotFoundError


logger = get_logger(__name__)

# Attempts are kept this long past their own deadline, so late polls
# still report expiry instead of not-found
DEFAULT_ATTEMPT_RETENTION_SECONDS = 3600


class AttemptKind(StrEnum):
    DEVICE_CODE = "device_code"
    WEB_REDIRECT = "web_redirect"


class AttemptPhase(StrEnum):
    PENDING = "pending"
    COMPLETE = "complete"
    EXPIRED = "expired"
    DENIED = "denied"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_PHASES = frozenset(
    {
        AttemptPhase.COMPLETE,
        AttemptPhase.EXPIRED,
        AttemptPhase.DENIED,
        AttemptPhase.ERROR,
        AttemptPhase.CANCELLED,
    }
)


@dataclass
class AuthorizationAttempt:
    """One device-code or redirect flow that has not finished yet."""

    provider: str
    session: str
    kind: AttemptKind
    state_id: str
    verification_uri: str
    expires_at: int  # epoch ms
    created_at: int  # epoch ms
    poll_interval: int = 5  # seconds
    user_code: str | None = None
    phase: AttemptPhase = AttemptPhase.PENDING

    # Never leave the process
    device_code: str | None = field(default=None, repr=False)
    code_verifier: str | None = field(default=None, repr=False)
    redirect_uri: str | None = None
    return_to: str | None = None

    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def is_past_deadline(self, now: int) -> bool:
        return now >= self.expires_at

    def expires_in(self, now: int) -> int:
        """Whole seconds left before the deadline (never negative)."""
        return max(0, (self.expires_at - now) // 1000)


class AttemptRegistry:
    """Holds pending attempts keyed by state id."""

    def __init__(
        self,
        clock: Clock = system_clock,
        maxsize: int = 1000,
        retention_seconds: int = DEFAULT_ATTEMPT_RETENTION_SECONDS,
    ) -> None:
        self._clock = clock
        # Evicted retention_seconds after the deadline; when full, the attempt
        # that expires soonest goes first
        self._attempts: TLRUCache[str, AuthorizationAttempt] = TLRUCache(  # type: ignore[no-any-unimported]
            maxsize=maxsize,
            ttu=lambda _key, attempt, _now: attempt.expires_at / 1000 + retention_seconds,
            timer=clock,
        )
        self._by_session: dict[tuple[str, str], str] = {}

    def now(self) -> int:
        return now_ms(self._clock)

    def register(self, attempt: AuthorizationAttempt) -> AuthorizationAttempt:
        """Store ``attempt``, cancelling any prior one for its session."""
        self.cancel(attempt.provider, attempt.session)
        self._prune()
        self._attempts[attempt.state_id] = attempt
        self._by_session[(attempt.provider, attempt.session)] = attempt.state_id
        logger.debug(
            "authorization_attempt_registered",
            provider=attempt.provider,
            kind=attempt.kind.value,
            state_id=truncate_secret(attempt.state_id),
        )
        return attempt

    def get(self, state_id: str) -> AuthorizationAttempt:
        """Return the live attempt for ``state_id``."""
        attempt = self._attempts.get(state_id)
        if attempt is None or attempt.is_terminal:
            raise AttemptNotFoundError(state_id)
        return attempt

    def peek(self, state_id: str) -> AuthorizationAttempt | None:
        return self._attempts.get(state_id)

    def retire(self, attempt: AuthorizationAttempt, phase: AttemptPhase) -> None:
        """Mark ``attempt`` terminal and forget it."""
        attempt.phase = phase
        self._attempts.pop(attempt.state_id, None)
        key = (attempt.provider, attempt.session)
        if self._by_session.get(key) == attempt.state_id:
            del self._by_session[key]
        logger.debug(
            "authorization_attempt_retired",
            provider=attempt.provider,
            phase=phase.value,
            state_id=truncate_secret(attempt.state_id),
        )

    def cancel(self, provider: str, session: str) -> bool:
        """Cancel the live attempt for (provider, session), if any."""
        state_id = self._by_session.get((provider, session))
        if state_id is None:
            return False
        attempt = self._attempts.get(state_id)
        if attempt is None:
            del self._by_session[(provider, session)]
            return False
        self.retire(attempt, AttemptPhase.CANCELLED)
        logger.info(
            "authorization_attempt_cancelled",
            provider=provider,
            state_id=truncate_secret(state_id),
        )
        return True

    def _prune(self) -> None:
        """Drop session entries whose attempt the cache already evicted."""
        self._attempts.expire()
        stale = [
            key
            for key, state_id in self._by_session.items()
            if state_id not in self._attempts
        ]
        for key in stale:
            del self._by_session[key]

    def session_count(self) -> int:
        return len(self._by_session)

    def __len__(self) -> int:
        return len(self._attempts)
