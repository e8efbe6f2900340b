"""Account selection for agent executions, with swap-on-failure.

With auto-swap on, a reported failure puts the account into a cool-down and
later selections fall through to the next runnable account. Selection never
comes back empty while a runnable account exists: if every candidate is
cooling down, the first one by priority is returned anyway.
"""

from datetime import UTC

from dateutil import parser as dateutil_parser
from structlog import get_logger

from oauth_pool.config.rotation import RotationSettings
from oauth_pool.core.clock import Clock, system_clock
from oauth_pool.exceptions import NoRunnableAccountError
from oauth_pool.rotation.accounts import Account
from oauth_pool.rotation.pool import AccountPool


logger = get_logger(__name__)


def parse_retry_after(value: str | None, now: float) -> float | None:
    """Parse a Retry-After value (seconds or HTTP date) into an epoch time."""
    if not value:
        return None
    try:
        return now + max(0, int(value))
    except ValueError:
        pass
    try:
        dt = dateutil_parser.parse(value)
    except (ValueError, OverflowError, dateutil_parser.ParserError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.timestamp()


class FailoverSelector:
    """Picks the account an execution should run with."""

    def __init__(
        self,
        pool: AccountPool,
        rotation: RotationSettings | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.pool = pool
        self.rotation = rotation or pool.rotation
        self._clock = clock
        # (provider, account_id) -> epoch seconds when the cool-down ends
        self._cooldowns: dict[tuple[str, str], float] = {}
        pool.add_delete_listener(self._forget)

    @property
    def auto_swap(self) -> bool:
        return self.rotation.auto_swap

    @auto_swap.setter
    def auto_swap(self, enabled: bool) -> None:
        self.rotation.auto_swap = enabled
        logger.info("auto_swap_changed", enabled=enabled)

    def is_cooling_down(self, provider: str, account_id: str) -> bool:
        key = (provider, account_id)
        until = self._cooldowns.get(key)
        if until is None:
            return False
        if self._clock() >= until:
            del self._cooldowns[key]
            return False
        return True

    def cooldown_remaining(self, provider: str, account_id: str) -> float | None:
        """Seconds left in the cool-down, or None."""
        if not self.is_cooling_down(provider, account_id):
            return None
        return self._cooldowns[(provider, account_id)] - self._clock()

    async def runnable(self, provider: str) -> list[Account]:
        """Runnable accounts in selection order."""
        return [a for a in await self.pool.list(provider) if self.pool.is_runnable(a)]

    async def select_for_execution(
        self, provider: str, preferred_account_id: str | None = None
    ) -> Account:
        """Return the account to use for ``provider``.

        ``preferred_account_id`` pins an account when it is runnable and (with
        auto-swap on) not cooling down.

        Raises:
            NoRunnableAccountError: no account passes the runnable filter
        """
        candidates = await self.runnable(provider)
        if not candidates:
            logger.warning("no_runnable_account", provider=provider)
            raise NoRunnableAccountError(provider)

        if self.auto_swap:
            eligible = [
                a for a in candidates if not self.is_cooling_down(provider, a.account_id)
            ]
        else:
            eligible = candidates

        if preferred_account_id is not None:
            for account in eligible:
                if account.account_id == preferred_account_id:
                    return account

        if eligible:
            selected = eligible[0]
        else:
            selected = candidates[0]
            logger.info(
                "all_accounts_cooling_down",
                provider=provider,
                fallback_account_id=selected.account_id,
            )

        if selected.account_id != candidates[0].account_id:
            logger.info(
                "account_swapped",
                provider=provider,
                skipped_account_id=candidates[0].account_id,
                account_id=selected.account_id,
            )
        return selected

    async def report_failure(
        self,
        provider: str,
        account_id: str,
        reason: str,
        retry_after: str | None = None,
    ) -> Account:
        """Record a failed execution.

        ``last_error`` is always recorded. The cool-down only applies while
        auto-swap is on; it lasts ``cooldown_seconds`` or until the
        provider's Retry-After, whichever is later.
        """
        account = await self.pool.get(provider, account_id)

        if self.auto_swap:
            now = self._clock()
            until = now + self.rotation.cooldown_seconds
            reset_at = parse_retry_after(retry_after, now)
            if reset_at is not None:
                until = max(until, reset_at)
            self._cooldowns[(provider, account.account_id)] = until
            logger.info(
                "account_cooldown_started",
                provider=provider,
                account_id=account_id,
                cooldown_seconds=round(until - now),
                reason=reason,
            )

        return await self.pool.record_error(provider, account_id, reason)

    async def report_success(self, provider: str, account_id: str) -> None:
        """Clear any cool-down for the account."""
        await self.pool.get(provider, account_id)
        if self._cooldowns.pop((provider, account_id), None) is not None:
            logger.info("account_cooldown_cleared", provider=provider, account_id=account_id)

    def _forget(self, account: Account) -> None:
        self._cooldowns.pop((account.provider, account.account_id), None)

    def cooldowns(self) -> dict[tuple[str, str], float]:
        """Active cool-downs as (provider, account_id) -> end time (epoch seconds)."""
        now = self._clock()
        return {k: v for k, v in self._cooldowns.items() if v > now}
