"""
Cross-origin gate for the public /oauth endpoints.

The allowed set for a request is the portal frontend origin plus the origin of the
requesting application's registered redirect URI. A failed application lookup adds
nothing; it never widens the set.
"""
import logging
from typing import Callable
from urllib.parse import urlsplit

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from portal_oauth.database import SessionLocal
from portal_oauth.errors import OriginNotAllowed, ServerError
from portal_oauth.stores import SqlApplicationRegistry

logger = logging.getLogger(__name__)

_DEFAULT_PORTS = {"http": 80, "https": 443}

ALLOW_METHODS = "GET, POST, OPTIONS"
ALLOW_HEADERS = "Content-Type, Authorization"
PREFLIGHT_MAX_AGE = "600"


def origin_of(url: str | None) -> str | None:
    """Scheme + host + non-default port of an http(s) URL, e.g. https://app.test/cb -> https://app.test."""
    if not url:
        return None
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    host = parts.hostname
    if scheme not in _DEFAULT_PORTS or not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    if port is None or port == _DEFAULT_PORTS[scheme]:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def resolve_allowed_origins(portal_origin: str | None, redirect_uri: str | None = None) -> frozenset[str]:
    """Origins allowed for one request: portal frontend + the application's redirect origin, if known."""
    return frozenset(o for o in (origin_of(portal_origin), origin_of(redirect_uri)) if o)


def is_origin_allowed(origin: str | None, allowed: frozenset[str]) -> bool:
    # No Origin header: not a browser cross-origin call
    if not origin:
        return True
    return origin in allowed


def lookup_registered_redirect(client_id: str) -> str | None:
    """Registered redirect URI for client_id, read in its own short session."""
    db = SessionLocal()
    try:
        application = SqlApplicationRegistry(db).get_by_client_id(client_id)
        return application.redirect_uri if application else None
    finally:
        db.close()


class OAuthOriginMiddleware(BaseHTTPMiddleware):
    """Apply the gate to every request under path_prefix; other paths pass through untouched."""

    def __init__(
        self,
        app,
        *,
        portal_origin: str | None,
        lookup_redirect: Callable[[str], str | None] = lookup_registered_redirect,
        path_prefix: str = "/oauth",
    ):
        super().__init__(app)
        self.portal_origin = portal_origin
        self.lookup_redirect = lookup_redirect
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next):
        if not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        origin = request.headers.get("origin")
        if request.method == "OPTIONS" and origin:
            # Pre-flight carries no clientId; let the browser's probe through
            return self._preflight(origin)
        if not origin:
            return await call_next(request)

        client_id = await self._client_id(request)
        redirect_uri = await run_in_threadpool(self._safe_lookup, client_id) if client_id else None
        allowed = resolve_allowed_origins(self.portal_origin, redirect_uri)
        if not is_origin_allowed(origin, allowed):
            logger.warning("[OAuth CORS] Blocked origin: %s (client_id=%s)", origin, client_id)
            error = OriginNotAllowed()
            return JSONResponse(error.to_body(), status_code=error.status_code)

        try:
            response = await call_next(request)
        except Exception:
            # Server errors would otherwise be rendered outside this middleware, without CORS headers
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            error = ServerError()
            response = JSONResponse(error.to_body(), status_code=error.status_code)

        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers.append("Vary", "Origin")
        return response

    async def _client_id(self, request: Request) -> str | None:
        client_id = None
        if request.method == "POST":
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                client_id = body.get("clientId")
        if not client_id:
            client_id = request.query_params.get("clientId")
        return client_id if isinstance(client_id, str) and client_id else None

    def _safe_lookup(self, client_id: str) -> str | None:
        try:
            return self.lookup_redirect(client_id)
        except Exception as e:
            logger.warning("[OAuth CORS] Application lookup failed for client_id=%s: %s", client_id, e)
            return None

    @staticmethod
    def _preflight(origin: str) -> Response:
        return Response(
            status_code=204,
            headers={
                "Access-Control-Allow-Origin": origin,
                "Access-Control-Allow-Credentials": "true",
                "Access-Control-Allow-Methods": ALLOW_METHODS,
                "Access-Control-Allow-Headers": ALLOW_HEADERS,
                "Access-Control-Max-Age": PREFLIGHT_MAX_AGE,
                "Vary": "Origin",
            },
        )
