"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST /api/v1/auth/login                       -- password login; 200 + cookies or 202 MFA challenge
  POST /api/v1/auth/mfa/verify                  -- complete MFA with an OTP; 200 + cookies
  POST /api/v1/auth/mfa/resend                  -- invalidate outstanding OTPs, send a new one
  POST /api/v1/auth/logout                      -- revoke the current session; always clears cookies
  GET  /api/v1/auth/me                          -- current principal
  GET  /api/v1/auth/sections                    -- sections the caller's role can see
  GET  /api/v1/auth/sections/{section}          -- can the caller see one section
  POST /api/v1/auth/session/touch               -- on-demand activity refresh
  GET  /api/v1/auth/sessions                    -- caller's session history
  POST /api/v1/auth/users/{user_id}/force-logout -- revoke another user's session (admin)
  GET  /api/v1/auth/mfa-policy                  -- read MFA policy (super-admin)
  PUT  /api/v1/auth/mfa-policy                  -- update MFA policy (super-admin)
  GET  /api/v1/auth/providers                   -- enabled SSO providers (public)
  GET  /api/v1/auth/oauth/{provider}            -- redirect to SSO provider
  GET  /api/v1/auth/callback/{provider}         -- SSO callback; cookies + redirect

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [C1] LoginService.login() runs bcrypt for unknown emails too -- never inline
       a lookup + verify here.
  [M5] Cache-Control: no-store on every response that carries a token.

Handlers that run bcrypt are plain `def` so FastAPI executes them in its
threadpool instead of blocking the event loop.

AuthError subclasses raised here are rendered by the handler in api/main.py.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    MessageResponse,
    MFAChallengeResponse,
    MFAPolicyResponse,
    MFAPolicyUpdate,
    MFAResendRequest,
    MFAVerifyRequest,
    OAuthProviderInfo,
    PrincipalResponse,
    SectionAccessResponse,
    SectionsResponse,
    SessionHistoryRow,
    SessionInfo,
    TouchRequest,
)
from auth.dependencies import (
    clear_session_cookies,
    device_signals_from_request,
    get_client_ip,
    get_current_principal,
    require_admin,
    require_super_admin,
    set_session_cookies,
    try_get_current_principal,
)
from auth.errors import AuthError
from auth.models import MFAChallenge, Principal
from auth.oauth import get_enabled_providers, get_oauth_email
from auth.roles import accessible_sections, can_access_section
from auth.service import LoginService
from auth.tokens import create_mfa_token, decode_mfa_token

logger = logging.getLogger("retailauth.api.auth")

# Auth policy:
# - login, mfa/*, logout, providers, oauth/*, callback/*: public
# - me, sections, session/touch, sessions:                 requires a valid session
# - users/{id}/force-logout:                               requires admin (super-admin, hr-admin)
# - mfa-policy:                                            requires super-admin
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(request: Request) -> LoginService:
    return request.app.state.login_service


def _principal_response(principal: Principal, include_token: bool = False) -> PrincipalResponse:
    session = principal.session
    return PrincipalResponse(
        user_id=principal.user_id,
        email=principal.user.email,
        display_name=principal.user.display_name,
        role=principal.role_name,
        sections=list(principal.sections),
        session=SessionInfo(
            id=session.id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            login_method=session.login_method,
            mfa_used=session.mfa_used,
            risk_tier=session.risk_tier,
        ),
        access_token=principal.token if include_token else None,
        token_type="bearer" if include_token else None,  # noqa: S106 -- OAuth token type, not a password
    )


def _authenticated(principal: Principal) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=_principal_response(principal, include_token=True).model_dump(),
    )
    set_session_cookies(resp, principal)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _challenged(service: LoginService, challenge: MFAChallenge) -> JSONResponse:
    """Issue the OTP and answer 202 with a short-lived MFA token."""
    service.start_mfa(challenge)
    mfa_token = create_mfa_token(challenge.user_id, challenge.email)
    resp = JSONResponse(
        status_code=202,
        content=MFAChallengeResponse(
            user_id=challenge.user_id,
            email=challenge.email,
            display_name=challenge.display_name,
            user_role=challenge.role,
            mfa_token=mfa_token,
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


# ---------------------------------------------------------------------------
# Login / MFA / logout
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=PrincipalResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    200: session created, cookies set, token in body.
    202: second factor owed; an OTP has been sent and no session exists.
    401/403/423: error envelope, see auth/errors.py.
    """
    service = _service(request)
    signals = device_signals_from_request(request, body.device.screen_resolution, body.device.timezone)
    result = service.login(body.email, body.password, signals, get_client_ip(request))
    if isinstance(result, MFAChallenge):
        return _challenged(service, result)
    return _authenticated(result)


@limiter.limit(login_rate_limit)
@router.post("/auth/mfa/verify", response_model=PrincipalResponse)
def verify_mfa(request: Request, body: MFAVerifyRequest) -> JSONResponse:
    """Exchange an MFA token + OTP code for a session."""
    service = _service(request)
    user_id = decode_mfa_token(body.mfa_token)
    signals = device_signals_from_request(request, body.device.screen_resolution, body.device.timezone)
    principal = service.complete_mfa_login(user_id, body.code, signals, get_client_ip(request))
    return _authenticated(principal)


@limiter.limit(login_rate_limit)
@router.post("/auth/mfa/resend", status_code=202, response_model=MessageResponse)
def resend_mfa(request: Request, body: MFAResendRequest) -> MessageResponse:
    user_id = decode_mfa_token(body.mfa_token)
    _service(request).resend_mfa(user_id)
    return MessageResponse(message="A new verification code has been sent.")


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the caller's session if the token is still valid, then clear cookies.

    Logging out with an expired or invalid token is not an error: the cookies
    are cleared either way.
    """
    principal = try_get_current_principal(request)
    if principal is not None:
        _service(request).logout(principal.session.id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_session_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=PrincipalResponse)
def me(principal: Principal = Depends(get_current_principal)) -> PrincipalResponse:
    return _principal_response(principal)


@router.get("/auth/sections", response_model=SectionsResponse)
def sections(principal: Principal = Depends(get_current_principal)) -> SectionsResponse:
    return SectionsResponse(role=principal.role_name, sections=accessible_sections(principal.role_name))


@router.get("/auth/sections/{section}", response_model=SectionAccessResponse)
def section_access(section: str, principal: Principal = Depends(get_current_principal)) -> SectionAccessResponse:
    return SectionAccessResponse(section=section, allowed=can_access_section(principal.role_name, section))


@router.post("/auth/session/touch", response_model=MessageResponse)
def touch_session(
    request: Request,
    body: TouchRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    """Refresh last_activity now. Never extends the session's expiry."""
    _service(request).sessions.touch(principal.session.id, body.current_page)
    return MessageResponse(message="Activity recorded.")


@router.get("/auth/sessions", response_model=list[SessionHistoryRow])
def list_sessions(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> list[SessionHistoryRow]:
    rows = _service(request).sessions.list_sessions(principal.user_id)
    return [SessionHistoryRow(**r) for r in rows]


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.post("/auth/users/{user_id}/force-logout", response_model=MessageResponse)
def force_logout(
    request: Request,
    user_id: int,
    principal: Principal = Depends(require_admin),
) -> MessageResponse:
    if not _service(request).sessions.force_logout(user_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User has no active session."},
        )
    logger.warning("user_id=%s forced logout of user_id=%s", principal.user_id, user_id)
    return MessageResponse(message="User has been signed out.")


@router.get("/auth/mfa-policy", response_model=MFAPolicyResponse)
def get_mfa_policy(
    request: Request,
    principal: Principal = Depends(require_super_admin),
) -> MFAPolicyResponse:
    return MFAPolicyResponse(**_service(request).store.get_mfa_policy())


@router.put("/auth/mfa-policy", response_model=MFAPolicyResponse)
def update_mfa_policy(
    request: Request,
    body: MFAPolicyUpdate,
    principal: Principal = Depends(require_super_admin),
) -> MFAPolicyResponse:
    store = _service(request).store
    store.update_mfa_policy(require_mfa=body.require_mfa, mfa_roles=body.mfa_roles)
    logger.info("MFA policy updated by user_id=%s", principal.user_id)
    return MFAPolicyResponse(**store.get_mfa_policy())


# ---------------------------------------------------------------------------
# SSO
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers() -> list[OAuthProviderInfo]:
    """Configured SSO providers. Empty when no provider env vars are set."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list so a spoofed name
    cannot be used to build a redirect.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse("/login?error=oauth_failed", status_code=302)
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the SSO code flow and log the matching user in.

    Flow:
      1. Exchange the code for tokens (authlib checks state via the session).
      2. Extract the verified email [H1].
      3. LoginService.complete_sso_login() -- lockout, account and MFA checks.
      4. Set cookies and redirect to "/", or redirect to the login page with
         an error code or an MFA token.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    try:
        email = get_oauth_email(provider, token)
    except ValueError:
        logger.warning("SSO login rejected: unverified or missing email from %r", provider)
        return RedirectResponse("/login?error=oauth_failed", status_code=302)

    service = _service(request)
    signals = device_signals_from_request(request)
    try:
        result = await run_in_threadpool(service.complete_sso_login, email, signals, get_client_ip(request))
        if isinstance(result, MFAChallenge):
            await run_in_threadpool(service.start_mfa, result)
            mfa_token = create_mfa_token(result.user_id, result.email)
            resp = RedirectResponse(f"/login?mfa_token={mfa_token}", status_code=302)
            resp.headers["Cache-Control"] = "no-store"  # [M5]
            return resp
    except AuthError as e:
        return RedirectResponse(f"/login?error={e.code}", status_code=302)

    resp = RedirectResponse("/", status_code=302)
    set_session_cookies(resp, result)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp
