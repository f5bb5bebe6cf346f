"""Token-management endpoints.

POST   /api/verify-token/{platform}                    → check a pasted token
POST   /api/{platform}/exchange-token                  → OAuth code exchange + save
GET    /api/integrations                               → connection status per platform
GET    /api/{platform}/tokens/{platform_account_id}    → stored credentials (masked)
DELETE /api/{platform}/tokens/{platform_account_id}    → revoke locally
POST   /api/tokens/refresh                             → manual refresh

The application user comes from the bearer JWT, falling back to userId
in the body or query string.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from leadflow.api.auth import resolve_app_user_id
from leadflow.api.services import Services, get_services
from leadflow.credentials.models import CredentialKey, Platform
from leadflow.errors import NotFoundError, ValidationError
from leadflow.infra.time import utc_now

router = APIRouter(prefix="/api", tags=["tokens"])


# ── Schemas ───────────────────────────────────────────────────────────────────


class VerifyTokenRequest(BaseModel):
    token: str | None = None


class ExchangeTokenRequest(BaseModel):
    code: str | None = None
    redirectUri: str | None = None
    userId: str | None = None


class RefreshRequest(BaseModel):
    platform: str | None = None
    platformAccountId: str | None = None
    userId: str | None = None


# ── Routes ────────────────────────────────────────────────────────────────────


@router.post("/verify-token/{platform}")
async def verify_token(
    platform: str,
    body: VerifyTokenRequest,
    services: Services = Depends(get_services),
) -> dict:
    info = await services.onboarding.verify_token(platform, body.token)
    return {"success": True, "message": "Token verified successfully", "accountInfo": info}


@router.post("/{platform}/exchange-token")
async def exchange_token(
    platform: str,
    body: ExchangeTokenRequest,
    request: Request,
    services: Services = Depends(get_services),
) -> dict:
    parsed = Platform.parse(platform)
    app_user_id = resolve_app_user_id(request, body.userId)
    if not body.code:
        raise ValidationError("Authorization code is required")

    onboarding = services.onboarding
    if parsed == Platform.INSTAGRAM:
        bundle = await onboarding.exchange_instagram_code(app_user_id, body.code, body.redirectUri)
    elif parsed == Platform.FACEBOOK:
        bundle = await onboarding.exchange_facebook_code(app_user_id, body.code, body.redirectUri)
    else:
        bundle = await onboarding.exchange_linkedin_code(app_user_id, body.code, body.redirectUri)

    return {
        "success": True,
        "message": f"{parsed.value.title()} account connected",
        "credentials": bundle.to_public_dict(utc_now()),
    }


@router.get("/integrations")
async def integrations(
    request: Request,
    user_id: str | None = Query(None, alias="userId"),
    services: Services = Depends(get_services),
) -> dict:
    app_user_id = resolve_app_user_id(request, user_id)
    overview = await services.onboarding.integrations_overview(app_user_id)
    return {"success": True, "integrations": overview}


@router.post("/tokens/refresh")
async def refresh_tokens(
    body: RefreshRequest,
    request: Request,
    services: Services = Depends(get_services),
) -> dict:
    """Manual refresh of one identity, or of every stale one when the
    body names none. Does not move the scheduled-run marker."""
    if body.platform or body.platformAccountId:
        if not body.platform or not body.platformAccountId:
            raise ValidationError("platform and platformAccountId must be given together")
        key = CredentialKey(
            resolve_app_user_id(request, body.userId),
            Platform.parse(body.platform),
            body.platformAccountId,
        )
        await services.token_store.require(key)
        summary = await services.scheduler.trigger(key)
    else:
        summary = await services.scheduler.trigger()

    return {"success": summary.failed == 0, "summary": summary.to_dict()}


@router.get("/{platform}/tokens/{platform_account_id}")
async def get_tokens(
    platform: str,
    platform_account_id: str,
    request: Request,
    user_id: str | None = Query(None, alias="userId"),
    services: Services = Depends(get_services),
) -> dict:
    key = CredentialKey(
        resolve_app_user_id(request, user_id), Platform.parse(platform), platform_account_id
    )
    bundle = await services.token_store.require(key)
    return {"success": True, "credentials": bundle.to_public_dict(utc_now())}


@router.delete("/{platform}/tokens/{platform_account_id}")
async def delete_tokens(
    platform: str,
    platform_account_id: str,
    request: Request,
    user_id: str | None = Query(None, alias="userId"),
    services: Services = Depends(get_services),
) -> dict:
    key = CredentialKey(
        resolve_app_user_id(request, user_id), Platform.parse(platform), platform_account_id
    )
    if not await services.token_store.delete(key):
        raise NotFoundError(
            f"No {key.platform.value} credentials for this account",
            details={"platformAccountId": platform_account_id},
        )
    return {"success": True, "message": "Credentials deleted"}
