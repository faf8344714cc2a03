"""Security middleware for the trigger API."""

import hmac

from aiohttp import web

from .logging import get_logger

logger = get_logger(__name__)

SUSPICIOUS_PATTERNS = (
    # Path traversal
    '../', '..\\', '..%2f', '%2e%2e%2f',
    # Script injection
    '<script', 'javascript:', 'onerror=',
    # SQL injection
    'union select', 'drop table', "' or '1'='1",
)

# JSON-only API, nothing to frame or load
SECURITY_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'Content-Security-Policy': "default-src 'none'; frame-ancestors 'none'",
    'Referrer-Policy': 'no-referrer',
    'Cache-Control': 'no-store',
    'Server': 'coverage-monitor',
}


def is_suspicious_request(request: web.Request) -> bool:
    """Check the raw path and query for common attack patterns."""
    target = request.raw_path.lower()
    if any(pattern in target for pattern in SUSPICIOUS_PATTERNS):
        return True
    return len(request.raw_path) > 2000 or len(request.query) > 20


def bearer_token(request: web.Request) -> str | None:
    scheme, _, token = request.headers.get('Authorization', '').partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        return None
    return token.strip()


def is_authorized(request: web.Request, secret: str | None) -> bool:
    """A request passes when no secret is configured or it presents the secret."""
    if not secret:
        return True
    token = bearer_token(request)
    return token is not None and hmac.compare_digest(token.encode(), secret.encode())


def trigger_auth_middleware(secret: str | None):
    """Require ``Authorization: Bearer <secret>`` on every request when a secret is set."""

    @web.middleware
    async def middleware(request: web.Request, handler) -> web.StreamResponse:
        if not is_authorized(request, secret):
            logger.warning(
                "Unauthorized trigger request",
                method=request.method,
                path=request.path,
                remote=request.remote,
            )
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    return middleware


@web.middleware
async def security_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Flag suspicious requests and add security headers."""
    if is_suspicious_request(request):
        logger.warning(
            "Suspicious request detected",
            method=request.method,
            path=request.path,
            remote=request.remote,
            user_agent=request.headers.get('User-Agent'),
        )

    try:
        response = await handler(request)
    except web.HTTPException as e:
        e.headers.update(SECURITY_HEADERS)
        raise
    response.headers.update(SECURITY_HEADERS)
    return response
