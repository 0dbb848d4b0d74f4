from __future__ import annotations

from fastapi import Response

from classifieds.config import Settings

COOKIE_ACCESS = "fc_access"
COOKIE_REFRESH = "fc_refresh"
COOKIE_REAUTH = "fc_reauth"

ACCESS_COOKIE_PATH = "/"
# Only the refresh and logout endpoints ever see the refresh token
REFRESH_COOKIE_PATH = "/api/auth"
# Step-up tokens are only consumed by admin actions
REAUTH_COOKIE_PATH = "/api/admin"


def _cookie_options(settings: Settings) -> dict:
    secure = settings.secure_cookies
    opts = {
        "httponly": True,
        "secure": secure,
        # Cross-site SPA in production needs SameSite=None, which browsers only accept with Secure
        "samesite": "none" if secure and settings.is_production else "lax",
    }
    if settings.cookie_domain:
        opts["domain"] = settings.cookie_domain
    return opts


def set_auth_cookies(
    response: Response, settings: Settings, *, access_token: str, refresh_token: str
) -> None:
    opts = _cookie_options(settings)
    response.set_cookie(
        COOKIE_ACCESS,
        access_token,
        max_age=settings.jwt_access_ttl_seconds,
        path=ACCESS_COOKIE_PATH,
        **opts,
    )
    response.set_cookie(
        COOKIE_REFRESH,
        refresh_token,
        max_age=settings.jwt_refresh_ttl_days * 24 * 60 * 60,
        path=REFRESH_COOKIE_PATH,
        **opts,
    )


def set_reauth_cookie(response: Response, settings: Settings, token: str, max_age: int) -> None:
    response.set_cookie(
        COOKIE_REAUTH,
        token,
        max_age=max_age,
        path=REAUTH_COOKIE_PATH,
        **_cookie_options(settings),
    )


def clear_reauth_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(COOKIE_REAUTH, path=REAUTH_COOKIE_PATH, **_cookie_options(settings))


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    """Expire all three credential cookies."""
    opts = _cookie_options(settings)
    response.delete_cookie(COOKIE_ACCESS, path=ACCESS_COOKIE_PATH, **opts)
    response.delete_cookie(COOKIE_REFRESH, path=REFRESH_COOKIE_PATH, **opts)
    clear_reauth_cookie(response, settings)
