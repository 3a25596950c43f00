from __future__ import annotations

from typing import Callable, Optional, Union

from fastapi import APIRouter, Depends, Header, Path, Request, status

from officegate.api.schemas import (
    AuthResponse,
    CompanyAccessResponse,
    CompanyScopeResponse,
    Envelope,
    LoginRequest,
    LogoutResponse,
    MfaCodeRequest,
    MfaLoginRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    RegisterRequest,
    TokenRefreshRequest,
    UserResponse,
)
from officegate.service.auth import AuthResult
from officegate.service.errors import AuthenticationError, ForbiddenError
from officegate.service.roles import Role
from officegate.service.runtime import get_runtime
from officegate.service.tokens import Principal, extract_bearer
from officegate.service.totp import MfaStatus
from officegate.storage.models import User

router = APIRouter(prefix="/v1")


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_addr": request.client.host if request.client else None,
        "user_agent": request.headers.get("User-Agent"),
    }


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=str(getattr(user.role, "value", user.role)),
        status=user.status.value,
        mfa_enabled=user.mfa_enabled,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=_user_response(result.user),
        session_id=result.session.id,
        session_expires_at=result.session.expires_at,
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
        token_type=result.tokens.token_type,
        expires_in=result.tokens.expires_in,
    )


def _mfa_status_response(mfa: MfaStatus) -> MfaStatusResponse:
    return MfaStatusResponse(
        enabled=mfa.enabled, activated_at=mfa.activated_at, pending=mfa.pending
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


def _bearer_token(authorization: Optional[str]) -> str:
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return token


def require_roles(*roles: Union[str, Role]) -> Callable:
    """Dependency factory admitting principals whose role passes ``authorize``."""

    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        runtime = get_runtime()
        if not runtime.auth.authorize(principal, roles):
            raise ForbiddenError("insufficient role for this operation")
        return principal

    return _dependency


async def company_access(
    company_id: str = Path(..., min_length=1, max_length=128),
    principal: Principal = Depends(get_principal),
) -> Principal:
    """Guard for company-scoped routes: 404 for unknown, 403 for denied."""
    runtime = get_runtime()
    runtime.tenancy.require_company_access(principal, company_id)
    return principal


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=status.HTTP_201_CREATED,
    tags=["auth"],
)
async def register(body: RegisterRequest, request: Request):
    """Create a pending client account and return its first token pair."""
    runtime = get_runtime()
    if not runtime.settings.allow_registration:
        raise ForbiddenError("registration is disabled")
    result = await runtime.auth.register(
        body.email, body.password, body.name, **_client_meta(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401 invalid_credentials / account_locked: password step failed
        401 mfa_required: send ``mfa_token`` and a code to /auth/login/mfa
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, body.mfa_code, **_client_meta(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login/mfa", response_model=Envelope, tags=["auth"])
async def login_mfa(body: MfaLoginRequest, request: Request):
    runtime = get_runtime()
    result = await runtime.auth.complete_mfa_login(
        body.mfa_token, body.code, **_client_meta(request)
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    authorization: Optional[str] = Header(None),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    terminated = await runtime.auth.logout(principal, _bearer_token(authorization))
    return Envelope(status="ok", data=LogoutResponse(terminated=terminated))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    terminated = await runtime.auth.logout_all(principal)
    return Envelope(status="ok", data=LogoutResponse(terminated=terminated))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_user_response(runtime.auth.profile(principal)))


@router.get("/auth/2fa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_mfa_status_response(runtime.auth.mfa_status(principal)))


@router.post("/auth/2fa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: Principal = Depends(get_principal)):
    """Start enrollment; returns the secret, otpauth URI and a PNG data URI."""
    runtime = get_runtime()
    enrollment = await runtime.auth.begin_mfa_enrollment(principal)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=enrollment.secret,
            otpauth_uri=enrollment.otpauth_uri,
            qr_code=enrollment.qr_code,
        ),
    )


@router.delete("/auth/2fa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup_cancel(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    mfa = await runtime.auth.cancel_mfa_enrollment(principal)
    return Envelope(status="ok", data=_mfa_status_response(mfa))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(body: MfaCodeRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    mfa = await runtime.auth.confirm_mfa_enrollment(principal, body.code)
    return Envelope(status="ok", data=_mfa_status_response(mfa))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(body: MfaCodeRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    mfa = await runtime.auth.disable_mfa(principal, body.code)
    return Envelope(status="ok", data=_mfa_status_response(mfa))


@router.get("/access/companies", response_model=Envelope, tags=["access"])
async def accessible_companies(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    scope = runtime.tenancy.accessible_companies(principal)
    return Envelope(status="ok", data=CompanyScopeResponse(**scope.as_dict()))


@router.get("/access/companies/{company_id}", response_model=Envelope, tags=["access"])
async def company_access_check(
    company_id: str = Path(..., min_length=1, max_length=128),
    principal: Principal = Depends(company_access),
):
    return Envelope(status="ok", data=CompanyAccessResponse(company_id=company_id, allowed=True))


@router.post(
    "/admin/users/{user_id}/deactivate",
    response_model=Envelope,
    tags=["admin"],
)
async def deactivate_user(
    user_id: str = Path(..., min_length=1, max_length=128),
    principal: Principal = Depends(require_roles(Role.SYSTEM_ADMIN)),
):
    """Mark an account inactive and end its sessions; system administrators only."""
    runtime = get_runtime()
    user = await runtime.auth.deactivate_user(user_id)
    return Envelope(status="ok", data=_user_response(user))
