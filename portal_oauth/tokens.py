"""
JWT minting (RS256, kid header) for application access tokens and portal session tokens.
"""
from datetime import datetime, timedelta, timezone

import jwt

from portal_oauth.config import ACCESS_TOKEN_EXPIRES, ISSUER, SESSION_AUDIENCE, SESSION_TOKEN_EXPIRES
from portal_oauth.keys import get_public_key_for_kid, get_signing_key
from portal_oauth.ports import ApplicationRecord, UserRecord


def _sign(payload: dict) -> str:
    private_key, kid = get_signing_key()
    token = jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid, "typ": "JWT"})
    if isinstance(token, bytes):
        token = token.decode("utf-8")
    return token


def _decode(token: str, audience: str) -> dict:
    """Verify signature (key chosen by kid), issuer, audience and expiry. Raises jwt.InvalidTokenError."""
    kid = jwt.get_unverified_header(token).get("kid")
    public_key = get_public_key_for_kid(kid) if kid else None
    if public_key is None:
        raise jwt.InvalidTokenError("Unknown signing key")
    return jwt.decode(token, public_key, algorithms=["RS256"], issuer=ISSUER, audience=audience)


def mint_access_token(
    user: UserRecord,
    application: ApplicationRecord,
    role: str,
    now: datetime | None = None,
) -> str:
    """Access token for one application; aud is the application's client id."""
    now = now or datetime.now(timezone.utc)
    exp = now + timedelta(seconds=ACCESS_TOKEN_EXPIRES)
    return _sign(
        {
            "iss": ISSUER,
            "sub": str(user.id),
            "aud": application.client_id,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
            "userId": str(user.id),
            "username": user.username,
            "email": user.email,
            "applicationId": str(application.id),
            "clientId": application.client_id,
            "role": role,
        }
    )


def decode_access_token(token: str, client_id: str) -> dict:
    return _decode(token, audience=client_id)


def mint_session_token(user_id: int, now: datetime | None = None) -> str:
    """Portal session token, issued by the portal's own login and accepted by /oauth/authorize-with-token."""
    now = now or datetime.now(timezone.utc)
    exp = now + timedelta(seconds=SESSION_TOKEN_EXPIRES)
    return _sign(
        {
            "iss": ISSUER,
            "sub": str(user_id),
            "aud": SESSION_AUDIENCE,
            "iat": int(now.timestamp()),
            "exp": int(exp.timestamp()),
        }
    )


def decode_session_token(token: str) -> int:
    """Return the user id of a valid portal session token. Raises jwt.InvalidTokenError."""
    payload = _decode(token, audience=SESSION_AUDIENCE)
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise jwt.InvalidTokenError("Invalid token subject")
