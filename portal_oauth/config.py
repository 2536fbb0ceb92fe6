"""
Portal OAuth configuration. All values come from the environment; no secrets in this file.
"""
import os

# Issuer URL (iss claim, base of the metadata document)
ISSUER = os.environ.get("PORTAL_ISSUER", "http://127.0.0.1:5000").rstrip("/")

# Portal frontend origin; always allowed to call /oauth/* cross-origin
FRONTEND_URL = os.environ.get("PORTAL_FRONTEND_URL", "http://localhost:5173").rstrip("/")

DATABASE_URL = os.environ.get("PORTAL_DATABASE_URL", "sqlite:///./portal_oauth.db")

# Authorization code lifetime (seconds). Fixed at 10 minutes.
CODE_TTL_SECONDS = 600

# Only PKCE method accepted on every endpoint (RFC 7636 spelling, case-sensitive)
CODE_CHALLENGE_METHOD = "S256"

# Access token lifetime (seconds). Default 30 days.
ACCESS_TOKEN_EXPIRES = int(os.environ.get("PORTAL_ACCESS_TOKEN_EXPIRES", "2592000"))

# Portal session tokens (used by /oauth/authorize-with-token)
SESSION_TOKEN_EXPIRES = int(os.environ.get("PORTAL_SESSION_TOKEN_EXPIRES", "86400"))
SESSION_AUDIENCE = os.environ.get("PORTAL_SESSION_AUDIENCE", "devportal")

# Path to RSA private key PEM file. If missing, a key is generated and saved there.
SIGNING_KEY_PATH = os.environ.get("PORTAL_SIGNING_KEY_PATH", ".portal_signing_key.pem")
# Optional rotated-out key: published in JWKS so older tokens still verify, never used to sign.
SIGNING_KEY_PREVIOUS_PATH = os.environ.get("PORTAL_SIGNING_KEY_PREVIOUS_PATH", "").strip() or None

# Background sweep of expired authorization codes
CODE_SWEEP_INTERVAL_SECONDS = int(os.environ.get("PORTAL_CODE_SWEEP_INTERVAL_SECONDS", "60"))

# Rate limiting: per-IP, per minute
RATE_LIMIT_AUTHORIZE_PER_MINUTE = int(os.environ.get("PORTAL_RATE_LIMIT_AUTHORIZE_PER_MINUTE", "20"))
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("PORTAL_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))
