"""
api/routes/v1/auth.py -- Authentication and user management REST endpoints.

Routes:
  POST  /api/v1/auth/login          -- password login; token pair + session cookie
  POST  /api/v1/auth/register       -- self-registration (role "user"); token pair
  POST  /api/v1/auth/refresh        -- redeem a refresh token for a new access token
  POST  /api/v1/auth/logout         -- revoke the supplied refresh token; clear cookie
  POST  /api/v1/auth/logout-all     -- revoke every refresh token of the caller
  GET   /api/v1/auth/me             -- current principal (requires auth)
  GET   /api/v1/auth/verify         -- introspect the bearer token; owner + decoded claims
  POST  /api/v1/auth/password       -- change password; revokes all refresh tokens
  GET   /api/v1/auth/users          -- list users (collaborator or above)
  POST  /api/v1/auth/users          -- create user (admin only)
  PATCH /api/v1/auth/users/{id}     -- update role/is_active (admin only)

Security:
  POST /login and /register are rate-limited per IP.
  authenticate_user() provides timing equalization -- use it, never inline.
  PATCH /users/{id} blocks self-deactivation and last-admin deactivation, and
      revokes every refresh token of a deactivated account.
  Cache-Control: no-store on every response that carries tokens.

AuthError raised from here or from auth/ is rendered by api/main.py.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter, login_limit, register_limit
from api.models import (
    LoginRequest,
    LogoutRequest,
    MeResponse,
    PasswordChange,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RevokedResponse,
    TokenClaims,
    TokenResponse,
    UserCreate,
    UserPatch,
    UserResponse,
    VerifyResponse,
)
from auth.dependencies import get_current_user, require_admin, require_collaborator
from auth.errors import AuthError, AuthErrorKind
from auth.lifecycle import TokenLifecycleManager
from auth.models import IssuedTokens, Principal, TokenType, User
from auth.passwords import authenticate_user, hash_password, verify_password
from auth.roles import Role
from auth.session import extract_bearer
from auth.store import UserStore
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.config import Settings

logger = logging.getLogger("inkwell.api")

# Auth policy:
# - POST  /auth/login, /auth/register, /auth/refresh, /auth/logout: public
# - POST  /auth/logout-all, /auth/password, GET /auth/me: get_current_user
# - GET   /auth/verify: bearer header only, checked inline
# - GET   /auth/users: require_collaborator
# - POST  /auth/users, PATCH /auth/users/{id}: require_admin
router = APIRouter()


def _tokens(request: Request) -> TokenLifecycleManager:
    return request.app.state.tokens


def _users(request: Request) -> UserStore:
    return request.app.state.user_store


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _token_json(request: Request, body: dict, tokens: IssuedTokens, status_code: int = 200) -> JSONResponse:
    """Deliver tokens in the JSON body and the access token as the session cookie."""
    settings = _settings(request)
    resp = JSONResponse(status_code=status_code, content=body)
    set_auth_cookie(
        resp,
        tokens.access_token,
        name=settings.session_cookie_name,
        max_age=tokens.expires_in,
        secure=settings.secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_limit)
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; return a token pair.

    Returns the same generic error for wrong username, wrong password and
    deactivated accounts to avoid leaking account state.
    """
    user_store = _users(request)
    user = authenticate_user(user_store, body.username, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    # Stamp first so a store failure cannot strand an undelivered refresh record.
    user_store.update_last_login(user.id)
    tokens = _tokens(request).generate_token_pair(Principal.from_user(user))
    logger.info("Login succeeded for %r", user.username)
    return _token_json(request, TokenResponse.from_issued(tokens, user).model_dump(), tokens)


@limiter.limit(register_limit)
@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a "user" account and sign it in immediately."""
    if not _settings(request).self_registration_enabled:
        raise HTTPException(
            status_code=403,
            detail={"code": "registration_disabled", "message": "Self-registration is disabled."},
        )
    user_store = _users(request)
    new_user = User(
        username=body.username,
        email=body.email,
        role=Role.user.value,
        hashed_password=hash_password(body.password),
    )
    try:
        new_user.id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username or email already exists."},
        ) from exc

    tokens = _tokens(request).generate_token_pair(Principal.from_user(new_user))
    logger.info("Registered new user %r", new_user.username)
    return _token_json(request, TokenResponse.from_issued(tokens, new_user).model_dump(), tokens, status_code=201)


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Redeem a refresh token for a fresh access token.

    The returned refresh_token equals the submitted one unless rotation is
    enabled, in which case the submitted one is now revoked.
    """
    tokens = _tokens(request).refresh_access_token(body.refresh_token)
    content = RefreshResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
    ).model_dump()
    return _token_json(request, content, tokens)


@router.post("/auth/logout")
def logout(request: Request, body: LogoutRequest | None = None) -> JSONResponse:
    """Revoke the supplied refresh token (if any) and clear the session cookie."""
    if body is not None and body.refresh_token:
        _tokens(request).revoke(body.refresh_token)
    resp = JSONResponse(content={"message": "Logged out."})
    clear_auth_cookie(resp, name=_settings(request).session_cookie_name)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=RevokedResponse)
def logout_all(request: Request, current_user: Principal = Depends(get_current_user)) -> JSONResponse:
    """Revoke every refresh token issued to the caller ("log out everywhere")."""
    revoked = _tokens(request).revoke_all(current_user.id)
    resp = JSONResponse(content=RevokedResponse(message="Logged out everywhere.", revoked=revoked).model_dump())
    clear_auth_cookie(resp, name=_settings(request).session_cookie_name)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: Principal = Depends(get_current_user)) -> MeResponse:
    """Return identity information for the currently authenticated user."""
    return MeResponse.from_principal(current_user)


@router.get("/auth/verify", response_model=VerifyResponse)
def verify(request: Request) -> VerifyResponse:
    """Verify the bearer token and return its owner and decoded claims.

    Only the Authorization header is consulted, never the cookie. A rejected
    token answers with its exact kind (expired, invalid_signature,
    wrong_token_type, ...) rather than the generic unauthenticated.
    """
    token = extract_bearer(request.headers.get("Authorization"))
    if token is None:
        raise AuthError(AuthErrorKind.UNAUTHENTICATED, "Authorization header is required.")
    payload = _tokens(request).codec.verify_type(token, TokenType.access)
    user = _users(request).get_by_username(payload.subject)
    if user is None or not user.is_active:
        raise AuthError(AuthErrorKind.UNAUTHENTICATED, "User not found or inactive.")
    return VerifyResponse(
        user=MeResponse.from_principal(Principal.from_user(user)),
        payload=TokenClaims.from_payload(payload),
    )


@router.post("/auth/password", response_model=RevokedResponse)
def change_password(
    request: Request,
    body: PasswordChange,
    current_user: Principal = Depends(get_current_user),
) -> RevokedResponse:
    """Change the caller's password and revoke all of their refresh tokens.

    Access tokens already issued keep working until they expire (at most the
    access TTL); refresh tokens stop working immediately.
    """
    user_store = _users(request)
    user = user_store.get_by_id(current_user.id)
    if user is None or user.hashed_password is None or not verify_password(body.current_password, user.hashed_password):
        raise HTTPException(
            status_code=400,
            detail={"code": "bad_credentials", "message": "Current password is incorrect."},
        )
    user_store.update_user(current_user.id, hashed_password=hash_password(body.new_password))
    revoked = _tokens(request).revoke_all(current_user.id)
    return RevokedResponse(message="Password changed.", revoked=revoked)


# ---------------------------------------------------------------------------
# User management
# ---------------------------------------------------------------------------


@router.get("/auth/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    current_user: Principal = Depends(require_collaborator),
) -> list[UserResponse]:
    """List all user accounts. Collaborators and admins."""
    return [_user_to_response(u) for u in _users(request).list_users()]


@router.post("/auth/users", response_model=UserResponse, status_code=201)
def create_user(
    request: Request,
    body: UserCreate,
    current_user: Principal = Depends(require_admin),
) -> UserResponse:
    """Create a user account with any role. Admin only."""
    user_store = _users(request)
    new_user = User(
        username=body.username,
        email=body.email,
        role=body.role.value,
        hashed_password=hash_password(body.password),
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username or email already exists."},
        ) from exc
    return _user_to_response(user_store.get_by_id(user_id))


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: Principal = Depends(require_admin),
) -> UserResponse:
    """Update a user's role or active status. Admin only.

    Prevents:
      - Self-deactivation (admin accidentally locking themselves out).
      - Deactivating the last active admin (no recovery path without DB access).
    Deactivation revokes every refresh token of the account. Its access
    tokens stop resolving on the next request because the session resolver
    re-checks is_active against the directory.
    """
    user_store = _users(request)
    target = user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})

    updates: dict = {}
    if body.role is not None:
        updates["role"] = body.role.value
    if body.is_active is not None:
        if not body.is_active and target.id == current_user.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        if not body.is_active and target.role == Role.admin.value and user_store.count_active_admins() <= 1:
            raise HTTPException(
                status_code=400,
                detail={"code": "last_admin", "message": "Cannot deactivate the last active admin account."},
            )
        updates["is_active"] = body.is_active

    if not updates:
        raise HTTPException(status_code=400, detail={"code": "no_changes", "message": "No fields to update."})

    user_store.update_user(user_id, **updates)
    if updates.get("is_active") is False:
        _tokens(request).revoke_all(user_id)
    return _user_to_response(user_store.get_by_id(user_id))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_to_response(user: User | None) -> UserResponse:
    if user is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse(
        id=user.id,
        username=user.username,
        email=user.email,
        role=user.role,
        is_active=user.is_active,
        created_at=user.created_at or "",
        last_login=user.last_login,
    )
