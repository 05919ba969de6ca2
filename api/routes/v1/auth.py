"""
api/routes/v1/auth.py -- Local account endpoints.

Routes:
  POST /api/v1/auth/register   -- create a local account (if enabled); sets token cookie
  POST /api/v1/auth/login      -- email/password login; sets token cookie
  POST /api/v1/auth/logout     -- clears token and context cookies
  GET  /api/v1/auth/me         -- current principal (either token scheme)

Tokens issued here are the local scheme ({id, email, role}, 30 days).
Remote-scheme tokens are never issued by this service; they are only accepted.

Security:
  POST /login is rate-limited per IP (Settings.login_rate_limit).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on responses carrying a token.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import LoginRequest, LoginResponse, MeResponse, MessageResponse, RegisterRequest
from auth.dependencies import get_current_principal
from auth.models import User
from auth.store import UserStore
from auth.tokens import (
    ACCESS_COOKIE,
    ORG_COOKIE,
    PROJECT_COOKIE,
    authenticate_user,
    create_access_token,
    hash_password,
    set_auth_cookie,
)
from core.config import get_settings

logger = logging.getLogger("goalmap.api")

_settings = get_settings()

# Auth policy:
# - POST /api/v1/auth/register: public, disabled when SELF_REGISTRATION_ENABLED=false
# - POST /api/v1/auth/login:    public
# - POST /api/v1/auth/logout:   public -- clearing cookies needs no prior auth
# - GET  /api/v1/auth/me:       requires auth (get_current_principal)
router = APIRouter()


def _token_response(user: User, status_code: int = 200) -> JSONResponse:
    token = create_access_token(user.user_id, user.email, user.role)
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            expires_in=_settings.token_expire_seconds,
            user_id=user.user_id,
            email=user.email,
            role=user.role,
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a local account and log it in.

    Accounts always start with the legacy "user" role; admins are promoted
    out of band.
    """
    if not _settings.self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    user_store: UserStore = request.app.state.user_store
    email = str(body.email).lower()
    user = User(
        email=email,
        username=body.username or email.split("@", 1)[0],
        role="user",
        hashed_password=hash_password(body.password),
    )
    try:
        user.user_id = user_store.create_user(user)
    except IntegrityError:
        raise HTTPException(
            status_code=409,
            detail={"code": "email_taken", "message": "An account with this email already exists."},
        )
    logger.info("Registered user %s", user.user_id)
    return _token_response(user, status_code=201)


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the token cookie.

    Returns the same generic error for an unknown email and a wrong
    password ("bad_credentials") to avoid leaking which accounts exist.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, str(body.email), body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _token_response(user)


@router.post("/auth/logout", response_model=MessageResponse)
async def logout() -> JSONResponse:
    """Clear the token cookie and the remembered org/project selection."""
    resp = JSONResponse(content={"message": "Logged out."})
    for name in (ACCESS_COOKIE, ORG_COOKIE, PROJECT_COOKIE):
        resp.delete_cookie(name)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: User = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the authenticated principal."""
    return MeResponse(
        user_id=current_user.user_id,
        email=current_user.email,
        username=current_user.username,
        role=current_user.role,
        remote_linked=current_user.remote_subject is not None,
        last_active_org_id=current_user.last_active_org_id,
    )
