"""
API Routes - FastAPI endpoints for the broker.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from dataclasses import replace

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from broker.api.dependencies import get_request_context
from broker.config import settings
from broker.db.session import get_read_db, get_write_db
from broker.exceptions import (
    CloudProviderError,
    ConsentRequiredError,
    CredentialError,
    InvalidActionParamsError,
    UnknownActionError,
    UnknownCategoryError,
    UnknownPermissionCheckError,
    WriteVerificationError,
)
from broker.models.api import (
    ActionRequest,
    ActionResponse,
    ConsentCategoryRequest,
    ConsentChangeResponse,
    ConsentStatusResponse,
    CredentialErrorKind,
    CredentialErrorResponse,
    CredentialSetupRequest,
    CredentialStatusResponse,
    CredentialVerifyResponse,
    ErrorResponse,
    HealthResponse,
    LegacyPreferenceRequest,
    LegacyPreferenceResponse,
    NotificationPreferenceRequest,
    NotificationPreferenceResponse,
    NotificationTargetsResponse,
    NotificationType,
    PaidCategoryResponse,
    PermissionCheckResponse,
    PermissionReportResponse,
    PolicyDocument,
)
from broker.models.domain import RequestContext
from broker.services.actions import ActionGateway
from broker.services.catalog import list_paid_categories
from broker.services.cloud import CloudClientFactory
from broker.services.consent import ConsentGate, blocked_response
from broker.services.credentials import CredentialResolver, CredentialService
from broker.services.notifications import NotificationRouter, PreferenceService
from broker.services.permissions import (
    PermissionService,
    get_check,
    list_checks,
    required_policy,
)

logger = get_logger(__name__)

router = APIRouter()

CREDENTIAL_ERROR_STATUS: dict[CredentialErrorKind, int] = {
    CredentialErrorKind.UNCONFIGURED: status.HTTP_401_UNAUTHORIZED,
    CredentialErrorKind.INVALID: status.HTTP_401_UNAUTHORIZED,
    CredentialErrorKind.EXPIRED: status.HTTP_401_UNAUTHORIZED,
    CredentialErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
}


def credential_error_response(exc: CredentialError) -> JSONResponse:
    """Uniform credential failure payload, whatever provider code produced it."""
    body = CredentialErrorResponse(
        error_kind=exc.kind,
        message=str(exc),
        remediation=exc.remediation,
    )
    return JSONResponse(
        status_code=CREDENTIAL_ERROR_STATUS[exc.kind],
        content=body.model_dump(mode="json", by_alias=True),
    )


def provider_error_response(exc: CloudProviderError) -> JSONResponse:
    body = ErrorResponse(error=exc.message or str(exc), code=exc.code)
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body.model_dump())


# =============================================================================
# Credentials
# =============================================================================


@router.put("/v1/credentials", response_model=CredentialStatusResponse)
async def save_credentials(
    request: CredentialSetupRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> CredentialStatusResponse:
    """
    Create or replace the caller's cloud credentials.

    Write operation - requires primary database.
    """
    try:
        return await CredentialService(db).save(ctx.user_id, request)
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


@router.get("/v1/credentials/status", response_model=CredentialStatusResponse)
async def get_credential_status(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> CredentialStatusResponse:
    """Configured flag, region and masked key. Reads the primary so a save is visible at once."""
    return await CredentialService(db).status(ctx.user_id)


@router.delete("/v1/credentials", status_code=status.HTTP_204_NO_CONTENT)
async def delete_credentials(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> None:
    """Remove the caller's credentials."""
    deleted = await CredentialService(db).delete(ctx.user_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No credentials configured",
        )


@router.post(
    "/v1/credentials/verify",
    response_model=CredentialVerifyResponse,
    responses={401: {"model": CredentialErrorResponse}, 403: {"model": CredentialErrorResponse}},
)
async def verify_credentials(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> CredentialVerifyResponse | JSONResponse:
    """Check the stored credentials against the provider."""
    try:
        credentials = await CredentialResolver(db).resolve(ctx.user_id)
        return await CredentialService(db).verify(credentials)
    except CredentialError as exc:
        return credential_error_response(exc)
    except CloudProviderError as exc:
        return provider_error_response(exc)


@router.post(
    "/v1/credentials/permissions",
    response_model=PermissionReportResponse,
    responses={401: {"model": CredentialErrorResponse}},
)
async def check_permissions(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> PermissionReportResponse | JSONResponse:
    """Run every permission check with the stored credentials."""
    try:
        credentials = await CredentialResolver(db).resolve(ctx.user_id)
        factory = CloudClientFactory(credentials, region=ctx.region)
        return await PermissionService(factory).check_all()
    except CredentialError as exc:
        return credential_error_response(exc)
    except CloudProviderError as exc:
        return provider_error_response(exc)


@router.post(
    "/v1/credentials/permissions/{check_key}",
    response_model=PermissionCheckResponse,
    responses={401: {"model": CredentialErrorResponse}},
)
async def check_permission(
    check_key: str,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> PermissionCheckResponse | JSONResponse:
    """Run a single permission check."""
    try:
        get_check(check_key)
        credentials = await CredentialResolver(db).resolve(ctx.user_id)
        factory = CloudClientFactory(credentials, region=ctx.region)
        return await PermissionService(factory).check(check_key)
    except UnknownPermissionCheckError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown permission check: {exc.key}. Available: {', '.join(list_checks())}",
        ) from exc
    except CredentialError as exc:
        return credential_error_response(exc)


@router.get("/v1/credentials/policy", response_model=PolicyDocument)
async def get_required_policy(include_write: bool = True) -> PolicyDocument:
    """IAM policy document to attach to the broker's credentials."""
    return required_policy(include_write)


# =============================================================================
# Consent
# =============================================================================


@router.get("/v1/consent/categories", response_model=list[PaidCategoryResponse])
async def list_consent_categories() -> list[PaidCategoryResponse]:
    """Metered categories that require opt-in."""
    return [
        PaidCategoryResponse(
            category_id=category.category_id,
            label=category.label,
            description=category.description,
            cost_description=category.cost_description,
            action_count=len(category.actions),
        )
        for category in list_paid_categories()
    ]


@router.get("/v1/consent/status", response_model=ConsentStatusResponse)
async def get_consent_status(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> ConsentStatusResponse:
    return await ConsentGate(db).status(ctx.user_id)


@router.post("/v1/consent/grant", response_model=ConsentChangeResponse)
async def grant_consent(
    request: ConsentCategoryRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> ConsentChangeResponse:
    try:
        return await ConsentGate(db).grant(ctx.user_id, request.category_id)
    except UnknownCategoryError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown category: {exc.category_id}",
        ) from exc


@router.post("/v1/consent/revoke", response_model=ConsentChangeResponse)
async def revoke_consent(
    request: ConsentCategoryRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> ConsentChangeResponse:
    try:
        return await ConsentGate(db).revoke(ctx.user_id, request.category_id)
    except UnknownCategoryError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown category: {exc.category_id}",
        ) from exc


@router.post("/v1/consent/revoke-all", response_model=ConsentChangeResponse)
async def revoke_all_consent(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> ConsentChangeResponse:
    return await ConsentGate(db).revoke_all(ctx.user_id)


# =============================================================================
# Notifications
# =============================================================================


@router.put(
    "/v1/notifications/preferences/{notification_type}",
    response_model=NotificationPreferenceResponse,
)
async def save_notification_preference(
    notification_type: NotificationType,
    request: NotificationPreferenceRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> NotificationPreferenceResponse:
    """Per-type override. Takes precedence over the legacy settings once saved."""
    return await PreferenceService(db).save_preference(
        ctx.user_id, notification_type, request.channel, request.enabled
    )


@router.get(
    "/v1/notifications/preferences",
    response_model=list[NotificationPreferenceResponse],
)
async def list_notification_preferences(
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_read_db),
) -> list[NotificationPreferenceResponse]:
    return await PreferenceService(db).list_preferences(ctx.user_id)


@router.put("/v1/notifications/legacy", response_model=LegacyPreferenceResponse)
async def save_legacy_preference(
    request: LegacyPreferenceRequest,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> LegacyPreferenceResponse:
    return await PreferenceService(db).save_legacy(ctx.user_id, request)


@router.get(
    "/v1/notifications/targets/{notification_type}",
    response_model=NotificationTargetsResponse,
)
async def get_notification_targets(
    notification_type: NotificationType,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_read_db),
) -> NotificationTargetsResponse:
    """Where a notification of this type would be delivered right now."""
    resolution = await NotificationRouter(db).resolve(ctx.user_id, notification_type)
    return NotificationTargetsResponse(
        user_id=ctx.user_id,
        notification_type=notification_type,
        targets=list(resolution.targets),
        source=resolution.source,
    )


# =============================================================================
# Action envelope
# =============================================================================


@router.post(
    "/v1/actions",
    response_model=None,
    responses={
        200: {"model": ActionResponse},
        401: {"model": CredentialErrorResponse},
        403: {"model": CredentialErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def execute_action(
    request: ActionRequest,
    background_tasks: BackgroundTasks,
    ctx: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_write_db),
) -> ActionResponse | JSONResponse:
    """
    Run one cloud action for the caller.

    A metered action without consent returns ``allowed: false`` with the
    category's label and cost; re-submit with ``consent: true`` to proceed.
    """
    if request.region:
        ctx = replace(ctx, region=request.region)

    gateway = ActionGateway(db, schedule=background_tasks.add_task)
    try:
        return await gateway.execute(
            ctx, request.service, request.action, request.params, request.consent
        )
    except ConsentRequiredError as exc:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content=blocked_response(exc.category).model_dump(mode="json", by_alias=True),
        )
    except UnknownActionError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown action: {exc.service}:{exc.action}",
        ) from exc
    except InvalidActionParamsError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except CredentialError as exc:
        return credential_error_response(exc)
    except CloudProviderError as exc:
        return provider_error_response(exc)


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc

    return HealthResponse(status="healthy", database="connected", version=settings.api_version)
