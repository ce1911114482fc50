from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import html
import re

from shared.utils import settings

# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:; object-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Order views carry the customer's delivery OTP
        response.headers["Cache-Control"] = "no-store"

        return response

# --- Input Sanitization ---
_WHITESPACE_RUN = re.compile(r"\s+")

def sanitize_input(text: str) -> str:
    """
    Sanitize input string:
    - Strip and collapse whitespace
    - HTML escape
    """
    if not isinstance(text, str):
        return text

    clean_text = _WHITESPACE_RUN.sub(" ", text.strip())
    return html.escape(clean_text)

def is_valid_otp(value: str, length: int = 6) -> bool:
    """True when `value` is exactly `length` ASCII digits."""
    if not isinstance(value, str) or len(value) != length:
        return False
    return all(ch in "0123456789" for ch in value)
