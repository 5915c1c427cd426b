"""
Security middleware

Dashboard and API routes sit behind HTTP Basic Auth when DASH_USER/DASH_PASS
are set. Cron routes are exempt because they check their own bearer secret.
"""
import base64
import binascii
import secrets
from typing import Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from brandsync.config import get_settings

OPEN_PATHS = ("/health", "/robots.txt", "/cron")

# Responses that can carry connection details are never stored
NO_STORE_PATHS = ("/connections",)


def parse_basic_credentials(header: str) -> Optional[Tuple[str, str]]:
    """(user, password) from an Authorization header, None when malformed."""
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        return None
    try:
        user, password = base64.b64decode(encoded, validate=True).decode("utf-8").split(":", 1)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    return user, password


def is_open_path(path: str) -> bool:
    return any(path == p or path.startswith(p + "/") for p in OPEN_PATHS)


class SecurityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        settings = get_settings()
        path = request.url.path
        gated = bool(settings.dash_user and settings.dash_pass)

        if gated and not is_open_path(path):
            credentials = parse_basic_credentials(request.headers.get("authorization", ""))
            if credentials is None or not self._credentials_match(credentials, settings):
                return Response(
                    content="Unauthorized",
                    status_code=401,
                    headers={"WWW-Authenticate": 'Basic realm="brandsync"'},
                )

        response: Response = await call_next(request)

        response.headers["X-Robots-Tag"] = "noindex, nofollow"
        if path.startswith(NO_STORE_PATHS):
            response.headers["Cache-Control"] = "no-store"
        elif "application/json" in response.headers.get("content-type", ""):
            # Progress changes with every drain
            response.headers["Cache-Control"] = "private, no-cache"

        return response

    @staticmethod
    def _credentials_match(credentials: Tuple[str, str], settings) -> bool:
        user, password = credentials
        # Both comparisons always run
        user_ok = secrets.compare_digest(user.encode(), settings.dash_user.encode())
        pass_ok = secrets.compare_digest(password.encode(), settings.dash_pass.encode())
        return user_ok and pass_ok
