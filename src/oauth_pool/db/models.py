"""SQLModel database models."""

from sqlmodel import Field, SQLModel


class OAuthAccountRecord(SQLModel, table=True):
    """Persisted credential for one (provider, account) pair.

    Metadata columns are plaintext so status can be reported without the
    encryption key. Token material is in ``encrypted_data``.
    """

    __tablename__ = "oauth_accounts"

    provider: str = Field(primary_key=True)
    account_id: str = Field(primary_key=True, index=True)

    label: str | None = None
    status: str = Field(default="active")
    active: bool = Field(default=True)
    priority: int = Field(default=100)
    model_override: str | None = None
    source: str = Field(default="web-redirect")
    grant_type: str = Field(default="authorization_code")

    scope: str | None = None
    email: str | None = Field(default=None, index=True)
    subject: str | None = Field(default=None, index=True)

    # Epoch milliseconds
    created_at: int
    updated_at: int
    expires_at: int | None = None
    last_refreshed_at: int | None = None

    has_refresh_token: bool = Field(default=False)
    refresh_failed: bool = Field(default=False)
    last_error: str | None = None

    encrypted_data: str
