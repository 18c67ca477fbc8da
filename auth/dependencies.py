"""
auth/dependencies.py -- FastAPI Depends() helpers and client-state cookies.

Bearer tokens are read in priority order:
  1. "retail_token" cookie -- set by the login routes.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on SessionManager.validate(), which checks the signature, the
token's exp, the session row (active, unexpired, owned by the token's user)
and the account state.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() raises the SessionExpired / SessionInvalid error so
the API exception handler can clear both cookies before answering 401.
require_admin() / require_super_admin() add a 403 role check.

Layer rule: may import fastapi (Depends/HTTPException/Request); nothing from api/.
"""

from __future__ import annotations

import base64

from fastapi import HTTPException, Request, Response

from auth.client import SESSION_KEY, TOKEN_KEY, serialize_session
from auth.errors import SessionInvalid
from auth.models import DeviceSignals, Principal
from auth.roles import SUPER_ADMIN, is_admin
from auth.sessions import SessionManager
from core.config import get_settings

# ---------------------------------------------------------------------------
# Request introspection
# ---------------------------------------------------------------------------


def get_client_ip(request: Request) -> str | None:
    """Client IP from X-Forwarded-For (first hop) or the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


def device_signals_from_request(
    request: Request,
    screen_resolution: str | None = None,
    timezone: str | None = None,
) -> DeviceSignals:
    """Build DeviceSignals from headers plus optional client-reported fields."""
    language = request.headers.get("Accept-Language", "")
    return DeviceSignals(
        user_agent=request.headers.get("User-Agent"),
        language=language.split(",")[0].strip() or None,
        screen_resolution=screen_resolution,
        timezone=timezone,
    )


def _bearer_token(request: Request) -> str | None:
    token: str | None = request.cookies.get(TOKEN_KEY)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def try_get_current_principal(request: Request) -> Principal | None:
    """Return the Principal for the request's token, or None. Never raises auth errors."""
    sessions: SessionManager = request.app.state.login_service.sessions
    return sessions.try_validate(_bearer_token(request))


def get_current_principal(request: Request) -> Principal:
    """Require a valid session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise SessionInvalid()
    sessions: SessionManager = request.app.state.login_service.sessions
    return sessions.validate(token)


def require_admin(request: Request) -> Principal:
    """Require an administrative role (super-admin or hr-admin)."""
    principal = get_current_principal(request)
    if not is_admin(principal.role_name):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return principal


def require_super_admin(request: Request) -> Principal:
    principal = get_current_principal(request)
    if principal.role_name != SUPER_ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Super admin access required."},
        )
    return principal


# ---------------------------------------------------------------------------
# Client-state cookies
# ---------------------------------------------------------------------------


def set_session_cookies(response: Response, principal: Principal) -> None:
    """Write the session + token pair as cookies with the session's lifetime.

    retail_token is httpOnly (XSS mitigation). retail_session is readable by
    the UI: it carries display data only (base64url JSON) and grants nothing
    on its own. samesite="lax" blocks cross-site POSTs; secure follows
    SECURE_COOKIES.
    """
    settings = get_settings()
    encoded = base64.urlsafe_b64encode(serialize_session(principal).encode()).decode()
    response.set_cookie(
        TOKEN_KEY,
        value=principal.token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_ttl_seconds,
    )
    response.set_cookie(
        SESSION_KEY,
        value=encoded,
        httponly=False,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_ttl_seconds,
    )


def clear_session_cookies(response: Response) -> None:
    """Delete both client-state cookies together."""
    response.delete_cookie(TOKEN_KEY)
    response.delete_cookie(SESSION_KEY)
