"""
RSA signing key(s) for access and portal session tokens.
The current key signs; an optional previous key stays in the JWKS so tokens signed
before a rotation keep verifying. Key material lives in PEM files, never in code.
"""
import base64
import logging
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from portal_oauth.config import SIGNING_KEY_PATH, SIGNING_KEY_PREVIOUS_PATH

logger = logging.getLogger(__name__)

_KEY_BITS = 2048
KID_CURRENT = "portal-key"
KID_PREVIOUS = "portal-key-prev"


def _read_private_key(path: Path) -> rsa.RSAPrivateKey:
    return serialization.load_pem_private_key(path.read_bytes(), password=None)


def load_or_create_signing_key(path: str) -> rsa.RSAPrivateKey:
    """Load the RSA private key from path, or generate one and try to save it there."""
    p = Path(path)
    if p.exists():
        try:
            return _read_private_key(p)
        except (ValueError, TypeError, OSError) as e:
            logger.warning("Failed to load signing key from %s: %s; generating new key", path, e)
    key = rsa.generate_private_key(public_exponent=65537, key_size=_KEY_BITS)
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    try:
        p.write_bytes(pem)
        logger.info("Generated and saved signing key to %s", path)
    except OSError as e:
        logger.warning("Could not save signing key to %s: %s", path, e)
    return key


def _b64url_uint(value: int) -> str:
    raw = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def public_key_to_jwk(public_key: rsa.RSAPublicKey, kid: str) -> dict:
    numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "kid": kid,
        "alg": "RS256",
        "use": "sig",
        "n": _b64url_uint(numbers.n),
        "e": _b64url_uint(numbers.e),
    }


# Set on first use (app startup loads eagerly)
_current_key: rsa.RSAPrivateKey | None = None
_keys_by_kid: dict[str, rsa.RSAPrivateKey] = {}


def _ensure_keys_loaded() -> None:
    global _current_key
    if _current_key is not None:
        return
    _current_key = load_or_create_signing_key(SIGNING_KEY_PATH)
    _keys_by_kid[KID_CURRENT] = _current_key

    if SIGNING_KEY_PREVIOUS_PATH:
        p = Path(SIGNING_KEY_PREVIOUS_PATH)
        try:
            _keys_by_kid[KID_PREVIOUS] = _read_private_key(p)
            logger.info("Loaded previous signing key (kid=%s) for rotation", KID_PREVIOUS)
        except (ValueError, TypeError, OSError) as e:
            logger.warning("Failed to load previous signing key from %s: %s", p, e)


def get_signing_key() -> tuple[rsa.RSAPrivateKey, str]:
    """Return the current private key and its kid."""
    _ensure_keys_loaded()
    return _current_key, KID_CURRENT


def get_public_key_for_kid(kid: str) -> rsa.RSAPublicKey | None:
    """Public key for a token's kid header, or None if unknown."""
    _ensure_keys_loaded()
    private_key = _keys_by_kid.get(kid)
    return private_key.public_key() if private_key is not None else None


def get_jwks() -> dict:
    _ensure_keys_loaded()
    return {"keys": [public_key_to_jwk(k.public_key(), kid) for kid, k in _keys_by_kid.items()]}
