"""Double-submit cookie CSRF protection.

The token lives in a cookie readable by the page's own scripts, which echo it
back in the ``x-csrf-token`` header on state-changing API calls. A cross-site
request can make the browser send the cookie but cannot read it to fill the
header, so cookie and header only agree for same-origin callers. Nothing is
stored server side.
"""

import secrets
from typing import Optional

from starlette.responses import Response

from config import Settings

CSRF_HEADER = "x-csrf-token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
API_PREFIX = "/api/"


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def requires_csrf_check(method: str, path: str) -> bool:
    if method.upper() in SAFE_METHODS:
        return False
    return path.startswith(API_PREFIX)


def validate_double_submit(
    cookie_token: Optional[str], header_token: Optional[str]
) -> bool:
    if not cookie_token or not header_token:
        return False
    return secrets.compare_digest(
        cookie_token.encode("utf-8"), header_token.encode("utf-8")
    )


def set_csrf_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        settings.csrf_cookie_name,
        token,
        httponly=False,
        secure=settings.is_production,
        samesite="strict",
        path="/",
    )
