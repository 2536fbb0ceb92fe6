"""
Public OAuth endpoints: GET /oauth/validate, POST /oauth/authorize,
POST /oauth/authorize-with-token, POST /oauth/token.
Every response is wrapped in a {"success": bool, ...} envelope; errors are rendered by the
OAuthError handler in main.py.
"""
import logging
from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends, Query, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field, field_validator
from sqlalchemy.orm import Session

from portal_oauth.audit import SqlAuditTrail, get_client_ip
from portal_oauth.config import RATE_LIMIT_AUTHORIZE_PER_MINUTE, RATE_LIMIT_TOKEN_PER_MINUTE
from portal_oauth.database import get_db
from portal_oauth.errors import RateLimited
from portal_oauth.oauth_service import OAuthService, utc_now
from portal_oauth.rate_limit import check_and_consume
from portal_oauth.stores import SqlApplicationRegistry, SqlAuthorizationCodeStore, SqlUserDirectory

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/oauth")
bearer = HTTPBearer(auto_error=False)


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @field_validator("*")
    @classmethod
    def _utf8_only(cls, v):
        # JSON allows lone surrogates; hashing and SQLite do not
        if isinstance(v, str):
            try:
                v.encode("utf-8")
            except UnicodeEncodeError:
                raise ValueError("string is not valid UTF-8") from None
        return v


class AuthorizeSessionBody(_Body):
    client_id: str | None = Field(None, alias="clientId")
    redirect_url: str | None = Field(None, alias="redirectUrl")
    code_challenge: str | None = None
    code_challenge_method: str | None = None


class AuthorizeBody(AuthorizeSessionBody):
    email: str | None = None
    password: str | None = None


class TokenBody(_Body):
    code: str | None = None
    code_verifier: str | None = None
    client_id: str | None = Field(None, alias="clientId")


def get_clock() -> Callable[[], datetime]:
    """Dependency: time source for code expiry (overridden in tests)."""
    return utc_now


def get_oauth_service(
    request: Request,
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> OAuthService:
    """Dependency: OAuth core wired to this request's DB session."""
    return OAuthService(
        applications=SqlApplicationRegistry(db),
        users=SqlUserDirectory(db),
        codes=SqlAuthorizationCodeStore(db),
        audit=SqlAuditTrail(db, get_client_ip(request)),
        clock=clock,
    )


def _enforce_rate_limit(request: Request, bucket: str, limit: int) -> None:
    ip = get_client_ip(request) or "unknown"
    allowed, retry_after = check_and_consume(f"{bucket}:{ip}", limit)
    if not allowed:
        logger.warning("Rate limit exceeded: bucket=%s ip=%s", bucket, ip)
        raise RateLimited(headers={"Retry-After": str(retry_after)})


@router.get("/validate")
def validate(
    client_id: str | None = Query(None, alias="clientId"),
    redirect_url: str | None = Query(None, alias="redirectUrl"),
    code_challenge: str | None = None,
    code_challenge_method: str | None = None,
    service: OAuthService = Depends(get_oauth_service),
):
    """Let the login page confirm an authorization request before collecting credentials."""
    application = service.validate_request(client_id, redirect_url, code_challenge, code_challenge_method)
    return {"success": True, "application": {"name": application.name, "clientId": application.client_id}}


@router.post("/authorize")
def authorize(
    body: AuthorizeBody,
    request: Request,
    service: OAuthService = Depends(get_oauth_service),
):
    """Authenticate with email + password and return a short-lived, single-use authorization code."""
    _enforce_rate_limit(request, "authorize", RATE_LIMIT_AUTHORIZE_PER_MINUTE)
    code = service.authorize(
        body.email,
        body.password,
        body.client_id,
        body.redirect_url,
        body.code_challenge,
        body.code_challenge_method,
    )
    return {"success": True, "code": code}


@router.post("/authorize-with-token")
def authorize_with_token(
    body: AuthorizeSessionBody,
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    service: OAuthService = Depends(get_oauth_service),
):
    """Single sign-on: skip the password when the caller already holds a portal session token."""
    _enforce_rate_limit(request, "authorize", RATE_LIMIT_AUTHORIZE_PER_MINUTE)
    code = service.authorize_with_session(
        credentials.credentials if credentials else None,
        body.client_id,
        body.redirect_url,
        body.code_challenge,
        body.code_challenge_method,
    )
    return {"success": True, "code": code}


@router.post("/token")
def token(
    body: TokenBody,
    request: Request,
    service: OAuthService = Depends(get_oauth_service),
):
    """Exchange code + PKCE verifier for a signed access token."""
    _enforce_rate_limit(request, "token", RATE_LIMIT_TOKEN_PER_MINUTE)
    grant = service.exchange_code(body.code, body.code_verifier, body.client_id)
    return {"success": True, **grant.to_body()}
