"""
SSE entrypoint for the clipboard history server.

Clipboard history is personal data, so every request must carry the key from
CLIPBOARD_MCP_API_KEY (X-MCP-API-Key header or bearer token). With no key
configured, requests are refused unless CLIPBOARD_MCP_ALLOW_INSECURE_LOCAL is
set and the client is on loopback.
"""

import os
import sys
import hmac
import uvicorn
from typing import Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

# Ensure we can import from backend dir
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from logging_setup import configure_logging, get_logger
from mcp_server import mcp

API_KEY_ENV = "CLIPBOARD_MCP_API_KEY"
API_KEY_HEADER = "X-MCP-API-Key"
ALLOW_INSECURE_LOCAL_ENV = "CLIPBOARD_MCP_ALLOW_INSECURE_LOCAL"
LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})

# Rejection reason -> message returned to the client.
REJECTIONS: Dict[str, str] = {
    "no_key_configured": f"Set {API_KEY_ENV} to serve clipboard history over SSE.",
    "remote_client_without_key": (
        f"{ALLOW_INSECURE_LOCAL_ENV} only admits loopback clients."
    ),
    "bad_key": f"Send the key in the {API_KEY_HEADER} header or as a bearer token.",
}

logger = get_logger("sse")


def _presented_key(request: Request) -> Optional[str]:
    header = request.headers.get(API_KEY_HEADER, "").strip()
    if header:
        return header
    scheme, _, token = request.headers.get("Authorization", "").strip().partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def authorize(request: Request) -> Optional[str]:
    """Return the rejection reason for `request`, or None when it may pass."""
    expected = os.getenv(API_KEY_ENV, "").strip()
    if not expected:
        allow_local = os.getenv(ALLOW_INSECURE_LOCAL_ENV, "").strip().lower() in {
            "1",
            "true",
            "yes",
            "on",
        }
        if not allow_local:
            return "no_key_configured"
        host = (request.client.host if request.client else "").lower()
        return None if host in LOOPBACK_HOSTS else "remote_client_without_key"

    presented = _presented_key(request)
    if presented is None or not hmac.compare_digest(presented, expected):
        return "bad_key"
    return None


class ApiKeyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        reason = authorize(request)
        if reason is None:
            return await call_next(request)
        logger.warning(
            "Refused SSE request",
            extra={
                "reason": reason,
                "client_host": request.client.host if request.client else None,
                "path": request.url.path,
            },
        )
        return JSONResponse(
            {"error": "clipboard_access_denied", "reason": reason, "detail": REJECTIONS[reason]},
            status_code=401,
            headers={"WWW-Authenticate": 'Bearer realm="clipboard-history"'},
        )


def create_sse_app() -> ASGIApp:
    app = mcp.sse_app("/sse")
    app.add_middleware(ApiKeyMiddleware)
    return app


def main():
    configure_logging()
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", 8000))
    get_logger().info(
        "Serving clipboard history over SSE",
        extra={"host": host, "port": port, "endpoint": f"http://{host}:{port}/sse"},
    )
    uvicorn.run(create_sse_app(), host=host, port=port)


if __name__ == "__main__":
    main()
