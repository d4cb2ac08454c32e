from __future__ import annotations

from typing import Optional

from fastapi import Request, Response

from sessionguard.config import Settings


def _cookie_attributes(settings: Settings) -> dict:
    # Setting and clearing must agree on every attribute or browsers keep the old cookie.
    return {
        "domain": settings.refresh_cookie_domain,
        "path": settings.refresh_cookie_path,
        "secure": settings.refresh_cookie_secure,
        "httponly": True,
        "samesite": settings.refresh_cookie_samesite,
    }


def set_refresh_cookie(response: Response, settings: Settings, secret: str) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        secret,
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        **_cookie_attributes(settings),
    )


def clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(settings.refresh_cookie_name, **_cookie_attributes(settings))


def read_refresh_cookie(request: Request, settings: Settings) -> Optional[str]:
    return request.cookies.get(settings.refresh_cookie_name) or None
