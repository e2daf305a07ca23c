"""Security endpoints: MFA, API key management, audit trail."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status

from trustcore.auth.dependencies import (
    current_user_id,
    get_services,
    hold_lock,
    rate_limit,
    require_permission,
)
from trustcore.container import ServiceContainer
from trustcore.exceptions import AuthFailureError
from trustcore.models.api_key import (
    ALL_ACCESS_SCOPE,
    PERMISSION_DESCRIPTIONS,
    PERMISSION_PRESETS,
    ApiKeyPublic,
)
from trustcore.models.audit import (
    AuditCategory,
    AuditPage,
    AuditResult,
    AuditSearchFilters,
    AuditSeverity,
    IntegrityReport,
)
from trustcore.schemas.security import (
    CreateApiKeyRequest,
    CreateApiKeyResponse,
    MFAEnableRequest,
    MFAEnableResponse,
    MFASetupRequest,
    MFASetupResponse,
    MFAVerifyRequest,
    MFAVerifyResponse,
    PermissionsResponse,
    RecoveryCodeRequest,
    RecoveryCodeResponse,
    RevokeApiKeyResponse,
    RotateApiKeyResponse,
)

router = APIRouter(prefix="/security", tags=["Security"])


# MFA


@router.post(
    "/mfa/setup",
    response_model=MFASetupResponse,
    dependencies=[Depends(rate_limit("auth"))],
)
async def setup_mfa(
    body: MFASetupRequest,
    user_id: str = Depends(current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> MFASetupResponse:
    """
    Start MFA enrollment.

    Returns the secret and the otpauth:// URI for the authenticator app.
    """
    setup = await services.mfa.setup_mfa(user_id, body.email)
    return MFASetupResponse(secret=setup.secret, uri=setup.uri, state=setup.credential.state)


@router.post(
    "/mfa/enable",
    response_model=MFAEnableResponse,
    dependencies=[Depends(rate_limit("auth"))],
)
async def enable_mfa(
    body: MFAEnableRequest,
    user_id: str = Depends(current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> MFAEnableResponse:
    """
    Confirm enrollment with the first code and issue recovery codes.

    Raises:
        AuthFailureError: If the code is wrong
    """
    result = await services.mfa.enable_mfa(user_id, body.secret, body.token)
    if not result.success:
        raise AuthFailureError()
    return MFAEnableResponse(enabled=True, recovery_codes=result.recovery_codes)


@router.post(
    "/mfa/verify",
    response_model=MFAVerifyResponse,
    dependencies=[Depends(rate_limit("auth"))],
)
async def verify_mfa(
    body: MFAVerifyRequest,
    user_id: str = Depends(current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> MFAVerifyResponse:
    valid = services.mfa.verify_mfa(body.secret, body.token)
    if not valid:
        await services.audit_log.try_record_action(
            "mfa_failed",
            user_id=user_id,
            resource="mfa",
            result="failure",
            error_message="Invalid token on verify",
        )
    return MFAVerifyResponse(valid=valid)


@router.post(
    "/mfa/recovery",
    response_model=RecoveryCodeResponse,
    dependencies=[Depends(rate_limit("auth"))],
)
async def use_recovery_code(
    body: RecoveryCodeRequest,
    user_id: str = Depends(current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> RecoveryCodeResponse:
    result = await services.mfa.use_recovery_code(user_id, body.codes, body.code)
    return RecoveryCodeResponse(
        valid=result.valid, remaining=result.remaining, updated_codes=result.updated_codes
    )


# API keys


@router.get("/api-keys/permissions", response_model=PermissionsResponse)
async def list_permissions() -> PermissionsResponse:
    """Available scopes and presets."""
    return PermissionsResponse(permissions=PERMISSION_DESCRIPTIONS, presets=PERMISSION_PRESETS)


@router.get("/api-keys", response_model=list[ApiKeyPublic])
async def list_api_keys(
    user_id: str = Depends(current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> list[ApiKeyPublic]:
    return await services.api_keys.list_keys(user_id)


@router.post(
    "/api-keys",
    response_model=CreateApiKeyResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("general"))],
)
async def create_api_key(
    body: CreateApiKeyRequest,
    user_id: str = Depends(current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> CreateApiKeyResponse:
    """
    Create an API key.

    The plaintext key and secret are in this response only.
    """
    result = await services.api_keys.create_key(
        user_id,
        name=body.name,
        permissions=body.permissions or [],
        ip_whitelist=body.ip_whitelist,
        expiry_days=body.expiry_days,
        rate_limit_per_minute=body.rate_limit_per_minute,
        description=body.description,
        environment=body.environment,
    )
    return CreateApiKeyResponse(key=result.key, api_key=result.api_key, api_secret=result.api_secret)


def _key_lock(request: Request) -> str:
    return f"api_key:{request.path_params['key_id']}"


@router.post(
    "/api-keys/{key_id}/rotate",
    response_model=RotateApiKeyResponse,
    dependencies=[Depends(rate_limit("general")), Depends(hold_lock(_key_lock))],
)
async def rotate_api_key(
    key_id: str,
    user_id: str = Depends(current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> RotateApiKeyResponse:
    """Issue a new secret; the old one stops working immediately."""
    new_secret = await services.api_keys.rotate_key(key_id, user_id)
    return RotateApiKeyResponse(key_id=key_id, api_secret=new_secret)


@router.delete(
    "/api-keys/{key_id}",
    response_model=RevokeApiKeyResponse,
    dependencies=[Depends(hold_lock(_key_lock))],
)
async def revoke_api_key(
    key_id: str,
    user_id: str = Depends(current_user_id),
    services: ServiceContainer = Depends(get_services),
) -> RevokeApiKeyResponse:
    await services.api_keys.revoke_key(key_id, user_id)
    return RevokeApiKeyResponse(key_id=key_id)


# Audit trail (all-access API keys only)


@router.get("/audit/events", response_model=AuditPage)
async def search_audit_events(
    user_id: Optional[str] = Query(None),
    category: Optional[AuditCategory] = Query(None),
    action: Optional[str] = Query(None),
    severity: Optional[AuditSeverity] = Query(None),
    result: Optional[AuditResult] = Query(None),
    resource: Optional[str] = Query(None),
    start_time: Optional[datetime] = Query(None),
    end_time: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    key: ApiKeyPublic = Depends(require_permission(ALL_ACCESS_SCOPE)),
    services: ServiceContainer = Depends(get_services),
) -> AuditPage:
    """Search the audit trail, newest first."""
    filters = AuditSearchFilters(
        user_id=user_id,
        category=category,
        action=action,
        severity=severity,
        result=result,
        resource=resource,
        start_time=start_time,
        end_time=end_time,
        limit=limit,
        offset=offset,
    )
    return await services.audit_log.search(filters)


@router.get("/audit/integrity", response_model=IntegrityReport)
async def verify_audit_integrity(
    key: ApiKeyPublic = Depends(require_permission(ALL_ACCESS_SCOPE)),
    services: ServiceContainer = Depends(get_services),
) -> IntegrityReport:
    """Recompute every audit digest and list mismatches."""
    return await services.audit_log.verify_integrity()
