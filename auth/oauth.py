"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration for SSO login.

Reads configuration from core.config.get_settings() at module load. Only
providers with a client ID and secret configured get registered.

Security notes:
  [H1] Email verification is mandatory. get_oauth_email() raises ValueError
       when the provider does not confirm the email is verified. SSO login
       matches on email, so an unverified address could hand a victim's
       account to whoever typed it in at the provider.

  The OAuth state parameter (CSRF protection) is stored by authlib in the
  Starlette SessionMiddleware session between redirect and callback.

Supported providers:
  google -- Authorization code flow; OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("retailauth.oauth")

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

if _cfg.google_client_id and _cfg.google_client_secret:
    oauth.register(
        name="google",
        client_id=_cfg.google_client_id,
        client_secret=_cfg.google_client_secret,
        server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google OAuth provider registered")

if _cfg.oidc_client_id and _cfg.oidc_client_secret and _cfg.oidc_discovery_url:
    oauth.register(
        name="oidc",
        client_id=_cfg.oidc_client_id,
        client_secret=_cfg.oidc_client_secret,
        server_metadata_url=_cfg.oidc_discovery_url,
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Generic OIDC provider registered (display name: %s)", _cfg.oidc_display_name)


def get_enabled_providers() -> list[dict]:
    """Return {"name", "label"} for every configured SSO provider."""
    cfg = get_settings()
    providers: list[dict] = []
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append({"name": "oidc", "label": cfg.oidc_display_name})
    return providers


def get_oauth_email(provider: str, token: dict) -> str:
    """Extract the verified email from an OIDC token response [H1].

    Raises:
        ValueError: no userinfo, email not verified, or email missing.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    # Providers that omit email_verified are treated as unverified.
    if not userinfo.get("email_verified", False):
        raise ValueError(f"{provider} OAuth: email is not verified")

    email = userinfo.get("email")
    if not email:
        raise ValueError(f"{provider} OAuth: missing email claim in userinfo")
    return email
