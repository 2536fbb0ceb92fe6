"""
Well-known endpoints: JWKS for access-token verification and authorization-server metadata.
"""
from fastapi import APIRouter

from portal_oauth.config import CODE_CHALLENGE_METHOD, ISSUER
from portal_oauth.keys import get_jwks

router = APIRouter()


@router.get("/.well-known/jwks.json")
def jwks_json():
    """JSON Web Key Set; applications verify access tokens against it."""
    return get_jwks()


@router.get("/.well-known/oauth-authorization-server")
def authorization_server_metadata():
    """Where the OAuth endpoints live and what they accept."""
    return {
        "issuer": ISSUER,
        "authorization_endpoint": f"{ISSUER}/oauth/authorize",
        "token_endpoint": f"{ISSUER}/oauth/token",
        "validation_endpoint": f"{ISSUER}/oauth/validate",
        "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "code_challenge_methods_supported": [CODE_CHALLENGE_METHOD],
        "token_endpoint_auth_methods_supported": ["none"],
    }
