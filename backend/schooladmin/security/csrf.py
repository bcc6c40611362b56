"""
CSRF protection for cookie/JWT browser sessions.

Unsafe methods must come from the configured frontend origin. When both an
``X-CSRF-Token`` header and the ``csrf_token`` cookie are present they must
match. Requests authenticated with an API key are never browser sessions and
skip these checks entirely.
"""
import hmac
import secrets
from typing import Optional
from urllib.parse import urlparse

from starlette.requests import HTTPConnection

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
CSRF_COOKIE_NAME = "csrf_token"
CSRF_HEADER_NAME = "x-csrf-token"


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)


def _origin_of(url: str) -> Optional[str]:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def find_csrf_violation(request: HTTPConnection, method: str, allowed_origin: str) -> Optional[str]:
    """Return a short reason when the request fails CSRF validation, else None."""
    if method.upper() in SAFE_METHODS:
        return None

    origin = request.headers.get("origin")
    if origin:
        if origin.rstrip("/") != allowed_origin:
            return "origin_mismatch"
    else:
        referer = request.headers.get("referer")
        if referer and _origin_of(referer) != allowed_origin:
            return "referer_mismatch"

    header_token = request.headers.get(CSRF_HEADER_NAME)
    cookie_token = request.cookies.get(CSRF_COOKIE_NAME)
    if header_token and cookie_token and not hmac.compare_digest(header_token, cookie_token):
        return "token_mismatch"
    return None
