from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import RedirectResponse

from rbacauth.api.error_handling import envelope_kwargs
from rbacauth.api.schemas import (
    CreateRoleRequest,
    CreateUserRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    RegisterRequest,
    ResendOTPRequest,
    ResetPasswordRequest,
    RolePermissionsRequest,
    UpdateRoleRequest,
    UpdateUserRequest,
    VerifyOTPRequest,
)
from rbacauth.logging import get_logger
from rbacauth.service.errors import AuthenticationError, ServiceError
from rbacauth.service.runtime import get_runtime
from rbacauth.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _ok(data: Any = None) -> Envelope:
    return Envelope(status="ok", data=data, **envelope_kwargs())


def client_ip(request: Request) -> str:
    """Best-effort client address; forwarded headers only count behind a trusted proxy."""
    if get_runtime().settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> User:
    runtime = get_runtime()
    user = await runtime.auth.authenticate(
        authorization,
        ip=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    if user is None:
        raise AuthenticationError("Not authorized to access this route")
    return user


async def get_optional_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[User]:
    return await get_runtime().auth.authenticate(
        authorization,
        ip=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        optional=True,
    )


def _screen(request: Request, movement_data) -> str:
    ip = client_ip(request)
    get_runtime().bans.screen(ip, movement_data, request.headers.get("User-Agent"))
    return ip


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    _screen(request, body.movement_data)
    result = await get_runtime().auth.register(
        body.email, body.password, body.first_name, body.last_name
    )
    return _ok(result)


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOTPRequest):
    result = await get_runtime().auth.verify_otp(body.user_id, body.otp)
    return _ok(result.to_dict())


@router.post("/auth/resend-otp", response_model=Envelope, tags=["auth"])
async def resend_otp(body: ResendOTPRequest):
    await get_runtime().auth.resend_otp(body.user_id)
    return _ok({"message": "OTP sent successfully"})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    ip = _screen(request, body.movement_data)
    result = await get_runtime().auth.login(
        body.email,
        body.password,
        remember_me=body.remember_me,
        ip=ip,
        user_agent=request.headers.get("User-Agent"),
    )
    return _ok(result.to_dict())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, principal: Optional[User] = Depends(get_optional_principal)):
    await get_runtime().auth.logout(
        principal, ip=client_ip(request), user_agent=request.headers.get("User-Agent")
    )
    return _ok({"message": "Logged out successfully"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: User = Depends(get_principal)):
    return _ok(get_runtime().auth.get_me(principal.id))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    await get_runtime().auth.forgot_password(body.email)
    return _ok({"message": "If an account exists with that email, a reset link has been sent"})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    result = await get_runtime().auth.reset_password(body.token, body.password)
    return _ok(result.to_dict())


@router.get("/auth/google", tags=["auth"])
async def google_start():
    url = await get_runtime().oauth.authorization_url()
    return RedirectResponse(url, status_code=302)


@router.get("/auth/google/callback", tags=["auth"])
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    runtime = get_runtime()
    frontend = runtime.settings.frontend_url
    if error:
        logger.warning("oauth_provider_error", provider="google", error=error)
        return RedirectResponse(f"{frontend}/login?error=authentication_failed", status_code=302)
    try:
        identity = await runtime.oauth.exchange_code(code or "", state or "")
        result = await runtime.auth.oauth_login(
            identity, ip=client_ip(request), user_agent=request.headers.get("User-Agent")
        )
    except ServiceError as exc:
        logger.warning("oauth_callback_failed", provider="google", error=exc.message)
        return RedirectResponse(f"{frontend}/login?error=authentication_failed", status_code=302)
    return RedirectResponse(f"{frontend}/?token={result.token}", status_code=302)


# users


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    search: Optional[str] = Query(None, max_length=200),
    role_name: Optional[str] = Query(None, max_length=64),
    is_active: Optional[bool] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: User = Depends(get_principal),
):
    return _ok(
        get_runtime().users.list_users(
            principal,
            search=search,
            role_name=role_name,
            is_active=is_active,
            page=page,
            limit=limit,
        )
    )


@router.post("/users", response_model=Envelope, status_code=201, tags=["users"])
async def create_user(body: CreateUserRequest, principal: User = Depends(get_principal)):
    result = await get_runtime().users.create_user(
        principal,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role_name=body.role_name,
    )
    return _ok(result)


@router.get("/users/stats", response_model=Envelope, tags=["users"])
async def user_stats(principal: User = Depends(get_principal)):
    return _ok(get_runtime().users.get_user_stats(principal))


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user(user_id: str, principal: User = Depends(get_principal)):
    return _ok(get_runtime().users.get_user(principal, user_id))


@router.patch("/users/{user_id}", response_model=Envelope, tags=["users"])
async def update_user(
    user_id: str,
    body: UpdateUserRequest,
    request: Request,
    principal: User = Depends(get_principal),
):
    result = get_runtime().users.update_user(
        principal,
        user_id,
        body.model_dump(exclude_unset=True),
        ip=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return _ok(result)


@router.delete("/users/{user_id}", response_model=Envelope, tags=["users"])
async def delete_user(user_id: str, principal: User = Depends(get_principal)):
    get_runtime().users.delete_user(principal, user_id)
    return _ok({"message": "User deleted successfully"})


@router.post("/users/{user_id}/restore", response_model=Envelope, tags=["users"])
async def restore_user(user_id: str, principal: User = Depends(get_principal)):
    return _ok(get_runtime().users.restore_user(principal, user_id))


@router.get("/users/{user_id}/sessions", response_model=Envelope, tags=["users"])
async def list_user_sessions(
    user_id: str,
    authorization: Optional[str] = Header(None),
    principal: User = Depends(get_principal),
):
    sessions = get_runtime().users.get_user_sessions(
        principal, user_id, _bearer_token(authorization)
    )
    return _ok({"sessions": sessions})


@router.delete("/users/{user_id}/sessions/{session_id}", response_model=Envelope, tags=["users"])
async def terminate_user_session(
    user_id: str, session_id: str, principal: User = Depends(get_principal)
):
    return _ok(get_runtime().users.terminate_session(principal, user_id, session_id))


@router.delete("/users/{user_id}/sessions", response_model=Envelope, tags=["users"])
async def terminate_other_sessions(
    user_id: str,
    authorization: Optional[str] = Header(None),
    principal: User = Depends(get_principal),
):
    result = get_runtime().users.terminate_other_sessions(
        principal, user_id, _bearer_token(authorization) or ""
    )
    return _ok(result)


# roles


@router.get("/roles", response_model=Envelope, tags=["roles"])
async def list_roles(principal: User = Depends(get_principal)):
    return _ok({"roles": get_runtime().roles.list_roles(principal)})


@router.post("/roles", response_model=Envelope, status_code=201, tags=["roles"])
async def create_role(body: CreateRoleRequest, principal: User = Depends(get_principal)):
    role = get_runtime().roles.create_role(
        principal, name=body.name, description=body.description
    )
    return _ok(role)


@router.get("/roles/permissions", response_model=Envelope, tags=["roles"])
async def list_permissions(principal: User = Depends(get_principal)):
    return _ok({"permissions": get_runtime().roles.list_permissions(principal)})


@router.get("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def get_role(role_id: str, principal: User = Depends(get_principal)):
    return _ok(get_runtime().roles.get_role(principal, role_id))


@router.patch("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def update_role(
    role_id: str, body: UpdateRoleRequest, principal: User = Depends(get_principal)
):
    role = get_runtime().roles.update_role(
        principal, role_id, name=body.name, description=body.description
    )
    return _ok(role)


@router.put("/roles/{role_id}/permissions", response_model=Envelope, tags=["roles"])
async def update_role_permissions(
    role_id: str, body: RolePermissionsRequest, principal: User = Depends(get_principal)
):
    role = get_runtime().roles.update_role_permissions(principal, role_id, body.permission_ids)
    return _ok(role)


@router.delete("/roles/{role_id}", response_model=Envelope, tags=["roles"])
async def delete_role(role_id: str, principal: User = Depends(get_principal)):
    get_runtime().roles.delete_role(principal, role_id)
    return _ok({"message": "Role deleted successfully"})


# audit logs


@router.get("/audit-logs", response_model=Envelope, tags=["audit"])
async def list_audit_logs(
    resource_type: Optional[str] = Query(None, max_length=32),
    actor_email: Optional[str] = Query(None, max_length=254),
    action: Optional[str] = Query(None, max_length=64),
    resource_id: Optional[str] = Query(None, max_length=254),
    date_from: Optional[str] = Query(None, max_length=64),
    date_to: Optional[str] = Query(None, max_length=64),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    principal: User = Depends(get_principal),
):
    filters = {
        "resource_type": resource_type,
        "actor_email": actor_email,
        "action": action,
        "resource_id": resource_id,
        "date_from": date_from,
        "date_to": date_to,
    }
    return _ok(get_runtime().audit_logs.list_logs(principal, filters, page=page, limit=limit))


@router.get("/audit-logs/{log_id}", response_model=Envelope, tags=["audit"])
async def get_audit_log(log_id: str, principal: User = Depends(get_principal)):
    return _ok(get_runtime().audit_logs.get_log(principal, log_id))
