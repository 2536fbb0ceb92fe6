"""
PKCE (RFC 7636), S256 only.
Server side: recompute the challenge from the presented verifier and compare.
Client side helper: generate a verifier/challenge pair.
"""
import hashlib
import hmac
import secrets
from base64 import urlsafe_b64encode


def compute_code_challenge(code_verifier: str) -> str:
    """base64url(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("utf-8")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_code_verifier(code_verifier: str, code_challenge: str) -> bool:
    """Constant-time comparison of the recomputed challenge against the stored one."""
    computed = compute_code_challenge(code_verifier)
    return hmac.compare_digest(computed.encode("ascii"), code_challenge.encode("utf-8"))


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, compute_code_challenge(code_verifier)
