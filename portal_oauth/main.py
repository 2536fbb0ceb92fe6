"""
Portal OAuth server: authorization code + PKCE flow for applications that delegate login
to the developer portal. Public endpoints live under /oauth behind the origin gate.
"""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from portal_oauth.config import CODE_SWEEP_INTERVAL_SECONDS, FRONTEND_URL
from portal_oauth.database import SessionLocal, init_db
from portal_oauth.errors import InvalidRequest, OAuthError, ServerError
from portal_oauth.keys import get_signing_key
from portal_oauth.oauth import router as oauth_router
from portal_oauth.origin_gate import OAuthOriginMiddleware
from portal_oauth.seed import seed_from_env
from portal_oauth.sweep import sweep_forever
from portal_oauth.well_known import router as well_known_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, load signing key, seed from env, run the expiry sweep."""
    init_db()
    get_signing_key()
    db = SessionLocal()
    try:
        seed_from_env(db)
    finally:
        db.close()
    sweeper = asyncio.create_task(sweep_forever(CODE_SWEEP_INTERVAL_SECONDS))
    try:
        yield
    finally:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper


app = FastAPI(title="Portal OAuth", version="1.0.0", lifespan=lifespan)
app.add_middleware(OAuthOriginMiddleware, portal_origin=FRONTEND_URL)
app.include_router(oauth_router, tags=["oauth"])
app.include_router(well_known_router, tags=["well-known"])


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError):
    return JSONResponse(exc.to_body(), status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # Malformed bodies get the same 400 envelope as missing fields
    error = InvalidRequest("Malformed request")
    return JSONResponse(error.to_body(), status_code=error.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = ServerError()
    return JSONResponse(error.to_body(), status_code=error.status_code)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok", "service": "portal_oauth"}


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(
        "portal_oauth.main:app",
        host="127.0.0.1",
        port=5000,
        reload=True,
    )
