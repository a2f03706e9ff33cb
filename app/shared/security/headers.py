"""
Secure HTTP headers middleware.

The service only serves JSON, so the policy forbids framing and every
content source, and asks clients and proxies not to store responses:
synthesis results are computed per signed-in caller.

No business logic. Pure cross-cutting concern.
"""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

SECURE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}

# Applied only when the route did not set its own value.
DEFAULT_HEADERS = {
    "Cache-Control": "no-store",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds the JSON API's security headers to every response, errors included."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        for header_name, header_value in SECURE_HEADERS.items():
            response.headers[header_name] = header_value
        for header_name, header_value in DEFAULT_HEADERS.items():
            if header_name not in response.headers:
                response.headers[header_name] = header_value
        return response
