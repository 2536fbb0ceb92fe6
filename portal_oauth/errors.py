"""
Error taxonomy for the /oauth endpoints. Each error carries its HTTP status, a
machine-readable code and a human-readable default message.
"""


class OAuthError(Exception):
    status_code = 500
    error = "server_error"
    message = "Server error"

    def __init__(self, message: str | None = None, headers: dict[str, str] | None = None):
        if message is not None:
            self.message = message
        self.headers = headers
        super().__init__(self.message)

    def to_body(self) -> dict:
        return {"success": False, "error": self.error, "message": self.message}


class InvalidRequest(OAuthError):
    status_code = 400
    error = "invalid_request"
    message = "Missing required parameters"


class UnsupportedChallengeMethod(OAuthError):
    status_code = 400
    error = "unsupported_challenge_method"
    message = "Invalid code_challenge_method. Only S256 is supported."


class UnknownClient(OAuthError):
    status_code = 404
    error = "unknown_client"
    message = "Invalid client ID"


class RedirectMismatch(OAuthError):
    status_code = 400
    error = "redirect_mismatch"
    message = "Redirect URL does not match registered URI"


class InvalidCredentials(OAuthError):
    # Same status and message for unknown user and wrong password
    status_code = 401
    error = "invalid_credentials"
    message = "Invalid credentials"


class AccessDenied(OAuthError):
    status_code = 403
    error = "access_denied"
    message = "You do not have access to this application. Please request access first."


class InvalidGrant(OAuthError):
    status_code = 404
    error = "invalid_grant"
    message = "Invalid or expired authorization code"


class ExpiredGrant(OAuthError):
    status_code = 400
    error = "expired_grant"
    message = "Authorization code has expired"


class ClientMismatch(OAuthError):
    status_code = 400
    error = "client_mismatch"
    message = "Client ID mismatch"


class InvalidVerifier(OAuthError):
    status_code = 400
    error = "invalid_verifier"
    message = "Invalid code verifier"


class OriginNotAllowed(OAuthError):
    status_code = 403
    error = "origin_not_allowed"
    message = "CORS: Origin not allowed"


class RateLimited(OAuthError):
    status_code = 429
    error = "rate_limited"
    message = "Too many requests, please try again later."


class ServerError(OAuthError):
    pass
