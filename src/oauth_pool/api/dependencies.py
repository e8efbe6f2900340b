"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Header, Request

from oauth_pool.exceptions import StorageNotReadyError
from oauth_pool.services.credential_service import CredentialService


DEFAULT_SESSION = "default"


def get_credential_service(request: Request) -> CredentialService:
    """Get the credential service from app state."""
    service: CredentialService | None = getattr(request.app.state, "credential_service", None)
    if service is None:
        raise StorageNotReadyError("Credential service is not initialized")
    return service


def get_session_id(
    x_oauth_session: Annotated[str | None, Header(alias="X-OAuth-Session")] = None,
) -> str:
    """Caller session used to scope authorization attempts."""
    return x_oauth_session or DEFAULT_SESSION


ServiceDep = Annotated[CredentialService, Depends(get_credential_service)]
SessionDep = Annotated[str, Depends(get_session_id)]
