"""Persisting a completed grant as an account.

Both authorizers end here. An existing account with the same upstream subject
(or, failing that, the same email) is re-authorized in place; otherwise a new
account is created at the default priority.
"""

from oauth_pool.core.clock import Clock, now_ms, system_clock
from oauth_pool.db.credential_store import CredentialStore
from oauth_pool.oauth.token_exchange import TokenResponse, UserIdentity
from oauth_pool.providers import ProviderSpec
from oauth_pool.rotation.accounts import (
    Account,
    AccountSecrets,
    AccountSource,
    GrantType,
)
from oauth_pool.utils.id_generator import generate_account_id


async def record_grant(
    store: CredentialStore,
    spec: ProviderSpec,
    tokens: TokenResponse,
    identity: UserIdentity,
    grant_type: GrantType,
    *,
    default_priority: int = 100,
    clock: Clock = system_clock,
) -> tuple[Account, bool]:
    """Create or re-authorize the account for this grant.

    Returns the account and whether it was newly created.
    """
    now = now_ms(clock)
    expires_at = tokens.expires_at_ms(now)

    async with store.creation_lock(spec.id):
        existing = await store.find_by_identity(
            spec.id, identity.subject, identity.email
        )
        if existing is not None:

            def reauthorize(account: Account, secrets: AccountSecrets) -> None:
                account.source = AccountSource.WEB_REDIRECT
                account.grant_type = grant_type
                account.scope = tokens.scope or account.scope
                account.email = identity.email or account.email
                account.subject = identity.subject or account.subject
                account.expires_at = expires_at
                account.refresh_failed = False
                account.last_error = None
                secrets.access_token = tokens.access_token
                secrets.token_type = tokens.token_type
                secrets.id_token = tokens.id_token or secrets.id_token
                # Keep the stored refresh token if the provider sent none
                if tokens.refresh_token:
                    secrets.refresh_token = tokens.refresh_token

            updated = await store.update_secrets(
                spec.id, existing.account_id, reauthorize
            )
            return updated, False

        account = Account(
            provider=spec.id,
            account_id=generate_account_id(),
            created_at=now,
            updated_at=now,
            priority=default_priority,
            source=AccountSource.WEB_REDIRECT,
            grant_type=grant_type,
            scope=tokens.scope or spec.scope,
            email=identity.email,
            subject=identity.subject,
            expires_at=expires_at,
        )
        secrets = AccountSecrets(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            id_token=tokens.id_token,
        )
        return await store.create(account, secrets), True
