"""OAuth credential routes used by the dashboard and by agent executions."""

from typing import Annotated
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Query
from fastapi.responses import RedirectResponse
from starlette import status
from structlog import get_logger

from oauth_pool.api.dependencies import ServiceDep, SessionDep
from oauth_pool.api.schemas import (
    AccountResponse,
    ActivateRequest,
    AuthorizationUrlResponse,
    CallbackResponse,
    DevicePollRequest,
    DevicePollResponse,
    DeviceStartResponse,
    DisconnectResponse,
    ModelsResponse,
    OkResponse,
    PoolSettingsRequest,
    PoolSettingsResponse,
    ProviderRequest,
    RefreshRequest,
    ReportRequest,
    SelectRequest,
    SelectResponse,
    StatusResponse,
    UpdateAccountRequest,
    _iso,
)
from oauth_pool.exceptions import OAuthPoolError, ValidationError


logger = get_logger(__name__)

router = APIRouter(prefix="/api/oauth", tags=["oauth"])


def _with_query(url: str, **params: str) -> str:
    """Append query parameters to ``url``, keeping existing ones."""
    parts = urlsplit(url)
    query = [*parse_qsl(parts.query, keep_blank_values=True), *params.items()]
    return urlunsplit(parts._replace(query=urlencode(query)))


# =============================================================================
# Status
# =============================================================================


@router.get("/status", response_model=StatusResponse)
async def get_status(service: ServiceDep) -> StatusResponse:
    """Per-provider connection, readiness and account status."""
    return StatusResponse.from_status(await service.get_status())


@router.get("/models", response_model=ModelsResponse)
async def list_models(
    service: ServiceDep, provider: Annotated[str | None, Query()] = None
) -> ModelsResponse:
    return ModelsResponse(models=await service.list_models(provider))


@router.get("/providers/{provider}/accounts", response_model=list[AccountResponse])
async def list_accounts(provider: str, service: ServiceDep) -> list[AccountResponse]:
    return [AccountResponse.from_account(a) for a in await service.list_accounts(provider)]


# =============================================================================
# Device-code grant
# =============================================================================


@router.post("/{provider}/device-start", response_model=DeviceStartResponse)
async def device_start(
    provider: str, service: ServiceDep, session: SessionDep
) -> DeviceStartResponse:
    attempt = await service.start_device_flow(provider, session)
    return DeviceStartResponse.from_attempt(attempt, service.attempts.now())


@router.post("/{provider}/device-poll", response_model=DevicePollResponse)
async def device_poll(
    provider: str, body: DevicePollRequest, service: ServiceDep
) -> DevicePollResponse:
    result = await service.poll_device_flow(body.state_id, provider)
    return DevicePollResponse.from_result(result)


# =============================================================================
# Redirect grant
# =============================================================================


@router.get("/authorize-url", response_model=AuthorizationUrlResponse)
async def authorize_url(
    service: ServiceDep,
    session: SessionDep,
    provider: Annotated[str, Query()],
    redirect_uri: Annotated[str | None, Query()] = None,
) -> AuthorizationUrlResponse:
    url = service.get_authorization_url(
        provider, redirect_uri or service.redirect_uri(), session
    )
    return AuthorizationUrlResponse(url=url)


@router.get("/start")
async def start_redirect(
    service: ServiceDep,
    session: SessionDep,
    provider: Annotated[str, Query()],
    redirect_to: Annotated[str | None, Query()] = None,
) -> RedirectResponse:
    """Send the browser to the provider's consent page."""
    url = service.get_authorization_url(
        provider, service.redirect_uri(), session, return_to=redirect_to
    )
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.get("/callback", response_model=None)
async def oauth_callback(
    service: ServiceDep,
    state: Annotated[str, Query()],
    code: Annotated[str | None, Query()] = None,
    error: Annotated[str | None, Query()] = None,
    error_description: Annotated[str | None, Query()] = None,
    provider: Annotated[str | None, Query()] = None,
) -> CallbackResponse | RedirectResponse:
    """Provider redirect target.

    When the flow was started through ``/start`` with ``redirect_to``, the
    browser is sent back there with ``?oauth=<provider>`` on success or
    ``?oauth_error=<message>`` on failure. Otherwise the result is JSON.
    """
    return_to = service.callback_return_to(state)
    pending_provider = provider or service.web.pending_provider(state)

    try:
        if error:
            service.reject_callback(state, error, error_description)
        if not code:
            raise ValidationError("Missing authorization code")
        result = await service.handle_callback(provider, code, state)
    except OAuthPoolError as e:
        if return_to is None:
            raise
        return RedirectResponse(
            _with_query(return_to, oauth_error=e.message),
            status_code=status.HTTP_302_FOUND,
        )

    if return_to is not None:
        return RedirectResponse(
            _with_query(return_to, oauth=pending_provider or result.account.provider),
            status_code=status.HTTP_302_FOUND,
        )
    return CallbackResponse(
        provider=result.account.provider,
        account_id=result.account.account_id,
        created=result.created,
    )


@router.post("/{provider}/import-detected", response_model=AccountResponse)
async def import_detected(provider: str, service: ServiceDep) -> AccountResponse:
    """Register the local CLI credential as a file-detected account."""
    return AccountResponse.from_account(await service.import_detected(provider))


# =============================================================================
# Administration
# =============================================================================


@router.post("/disconnect", response_model=DisconnectResponse)
async def disconnect(body: ProviderRequest, service: ServiceDep) -> DisconnectResponse:
    removed = await service.disconnect(body.provider)
    return DisconnectResponse(account_id=removed.account_id if removed else None)


@router.post("/accounts/activate", response_model=AccountResponse)
async def activate_account(body: ActivateRequest, service: ServiceDep) -> AccountResponse:
    account = await service.activate_account(body.provider, body.account_id, body.action)
    return AccountResponse.from_account(account)


@router.patch("/accounts/{account_id}", response_model=AccountResponse)
async def update_account(
    account_id: str, body: UpdateAccountRequest, service: ServiceDep
) -> AccountResponse:
    """Change label, model override, priority and/or status.

    Only fields present in the body are applied; an explicit ``null`` clears
    label or model override.
    """
    changes = body.model_dump(
        include=body.model_fields_set & {"label", "model_override", "priority"}
    )
    account = await service.update_account(
        account_id, provider=body.provider, status=body.status, **changes
    )
    return AccountResponse.from_account(account)


@router.delete("/providers/{provider}/accounts/{account_id}", response_model=OkResponse)
async def delete_account(provider: str, account_id: str, service: ServiceDep) -> OkResponse:
    await service.delete_account(provider, account_id)
    return OkResponse()


@router.post("/refresh", response_model=AccountResponse)
async def refresh_token(body: RefreshRequest, service: ServiceDep) -> AccountResponse:
    account = await service.refresh_token(provider=body.provider, account_id=body.account_id)
    return AccountResponse.from_account(account)


@router.get("/settings", response_model=PoolSettingsResponse)
async def get_pool_settings(service: ServiceDep) -> PoolSettingsResponse:
    return PoolSettingsResponse(**service.settings_snapshot())


@router.put("/settings", response_model=PoolSettingsResponse)
async def update_pool_settings(
    body: PoolSettingsRequest, service: ServiceDep
) -> PoolSettingsResponse:
    service.set_auto_swap(body.auto_swap)
    return PoolSettingsResponse(**service.settings_snapshot())


# =============================================================================
# Execution
# =============================================================================


@router.post("/select", response_model=SelectResponse)
async def select_account(body: SelectRequest, service: ServiceDep) -> SelectResponse:
    """Pick the account an execution should use and return its token."""
    credential = await service.acquire_credential(body.provider, body.preferred_account_id)
    account = credential.account
    return SelectResponse(
        provider=account.provider,
        account_id=account.account_id,
        access_token=credential.access_token,
        token_type=credential.token_type,
        expires_at=_iso(account.expires_at),
        model_override=account.model_override,
    )


@router.post("/report", response_model=OkResponse)
async def report_outcome(body: ReportRequest, service: ServiceDep) -> OkResponse:
    """Execution callers report how the selected account fared."""
    if body.outcome == "success":
        await service.report_success(body.provider, body.account_id)
    else:
        await service.report_failure(
            body.provider,
            body.account_id,
            body.reason or "execution failed",
            retry_after=body.retry_after,
        )
    return OkResponse()
