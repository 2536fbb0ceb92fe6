"""
Authorization-code-with-PKCE core: request validation, code issuance and code exchange.

Collaborators are passed in (registry reads, code store, audit trail) so the same logic runs
against SQLAlchemy in the app and against in-memory fakes in tests.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import jwt

from portal_oauth.audit import (
    EVENT_ACCESS_DENIED,
    EVENT_CODE_ISSUED,
    EVENT_LOGIN_FAIL,
    EVENT_LOGIN_OK,
    EVENT_TOKEN_FAIL,
    EVENT_TOKEN_ISSUED,
    OUTCOME_FAIL,
    OUTCOME_SUCCESS,
)
from portal_oauth.config import ACCESS_TOKEN_EXPIRES, CODE_CHALLENGE_METHOD, CODE_TTL_SECONDS
from portal_oauth.errors import (
    AccessDenied,
    ClientMismatch,
    ExpiredGrant,
    InvalidCredentials,
    InvalidGrant,
    InvalidRequest,
    InvalidVerifier,
    RedirectMismatch,
    ServerError,
    UnknownClient,
    UnsupportedChallengeMethod,
)
from portal_oauth.pkce import verify_code_verifier
from portal_oauth.ports import (
    ApplicationRecord,
    ApplicationRegistry,
    AuditTrail,
    AuthorizationCodeRecord,
    AuthorizationCodeStore,
    UserDirectory,
    UserRecord,
    is_expired,
)
from portal_oauth.seed import burn_password_check, verify_password
from portal_oauth.tokens import decode_session_token, mint_access_token

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    expires_in: int
    user: UserRecord
    role: str

    def to_body(self) -> dict:
        return {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "user": {"id": str(self.user.id), "username": self.user.username, "email": self.user.email},
            "role": self.role,
        }


class _NullAudit:
    def record(self, event_type, *, client_id=None, user_id=None, outcome=OUTCOME_SUCCESS):
        pass


class OAuthService:
    def __init__(
        self,
        applications: ApplicationRegistry,
        users: UserDirectory,
        codes: AuthorizationCodeStore,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] = utc_now,
        mint_token: Callable[..., str] = mint_access_token,
    ):
        self.applications = applications
        self.users = users
        self.codes = codes
        self.audit = audit or _NullAudit()
        self.clock = clock
        self.mint_token = mint_token

    # --- authorize side ---

    def validate_request(
        self,
        client_id: str | None,
        redirect_url: str | None,
        code_challenge: str | None,
        code_challenge_method: str | None,
    ) -> ApplicationRecord:
        """Check client, redirect and PKCE parameters. Read-only."""
        if not client_id or not redirect_url or not code_challenge or not code_challenge_method:
            raise InvalidRequest(
                "Missing required parameters: clientId, redirectUrl, code_challenge, code_challenge_method"
            )
        return self._check_client(client_id, redirect_url, code_challenge_method)

    def _check_client(self, client_id: str, redirect_url: str, code_challenge_method: str) -> ApplicationRecord:
        if code_challenge_method != CODE_CHALLENGE_METHOD:
            raise UnsupportedChallengeMethod()
        application = self.applications.get_by_client_id(client_id)
        if application is None:
            raise UnknownClient()
        # Exact string match; no trailing-slash or scheme normalization
        if application.redirect_uri != redirect_url:
            raise RedirectMismatch()
        return application

    def authorize(
        self,
        email: str | None,
        password: str | None,
        client_id: str | None,
        redirect_url: str | None,
        code_challenge: str | None,
        code_challenge_method: str | None,
    ) -> str:
        """Authenticate the user by password and issue an authorization code."""
        if not all((email, password, client_id, redirect_url, code_challenge, code_challenge_method)):
            raise InvalidRequest()
        application = self._check_client(client_id, redirect_url, code_challenge_method)

        user = self.users.get_by_email(email)
        if user is None:
            burn_password_check(password)
        if user is None or not verify_password(password, user.password_hash):
            self.audit.record(EVENT_LOGIN_FAIL, client_id=client_id, outcome=OUTCOME_FAIL)
            raise InvalidCredentials()
        self.audit.record(EVENT_LOGIN_OK, client_id=client_id, user_id=user.id)

        return self._issue_code(user, application, redirect_url, code_challenge)

    def authorize_with_session(
        self,
        session_token: str | None,
        client_id: str | None,
        redirect_url: str | None,
        code_challenge: str | None,
        code_challenge_method: str | None,
    ) -> str:
        """Single sign-on: issue a code for a user who already holds a portal session token."""
        if not all((client_id, redirect_url, code_challenge, code_challenge_method)):
            raise InvalidRequest()
        application = self._check_client(client_id, redirect_url, code_challenge_method)

        user = None
        if session_token:
            try:
                user = self.users.get_by_id(decode_session_token(session_token))
            except jwt.InvalidTokenError as e:
                logger.debug("Portal session token rejected: %s", e)
        if user is None:
            self.audit.record(EVENT_LOGIN_FAIL, client_id=client_id, outcome=OUTCOME_FAIL)
            raise InvalidCredentials()

        return self._issue_code(user, application, redirect_url, code_challenge)

    def _issue_code(
        self,
        user: UserRecord,
        application: ApplicationRecord,
        redirect_url: str,
        code_challenge: str,
    ) -> str:
        if self.users.get_access_grant(user.id, application.id) is None:
            self.audit.record(EVENT_ACCESS_DENIED, client_id=application.client_id, user_id=user.id, outcome=OUTCOME_FAIL)
            raise AccessDenied()

        code = secrets.token_hex(32)
        self.codes.add(
            AuthorizationCodeRecord(
                code=code,
                client_id=application.client_id,
                user_id=user.id,
                code_challenge=code_challenge,
                code_challenge_method=CODE_CHALLENGE_METHOD,
                redirect_url=redirect_url,
                expires_at=self.clock() + timedelta(seconds=CODE_TTL_SECONDS),
            )
        )
        self.audit.record(EVENT_CODE_ISSUED, client_id=application.client_id, user_id=user.id)
        logger.info("Authorization code issued for client_id=%s user=%s", application.client_id, user.id)
        return code

    # --- token side ---

    def exchange_code(self, code: str | None, code_verifier: str | None, client_id: str | None) -> TokenGrant:
        """
        Exchange an authorization code plus PKCE verifier for an access token.
        Failures before the verifier check leave the code in place, except expiry which deletes it.
        """
        if not code or not code_verifier or not client_id:
            raise InvalidRequest("Missing required parameters: code, code_verifier, clientId")

        record = self.codes.get(code)
        if record is None:
            raise InvalidGrant()
        if is_expired(record, self.clock()):
            self.codes.delete(code)
            self._token_fail(record.client_id, record.user_id)
            raise ExpiredGrant()
        if record.client_id != client_id:
            self._token_fail(client_id, record.user_id)
            raise ClientMismatch()
        if not verify_code_verifier(code_verifier, record.code_challenge):
            self._token_fail(client_id, record.user_id)
            raise InvalidVerifier()

        # Single use: only the caller whose delete removed the row may mint a token
        if not self.codes.consume(code):
            raise InvalidGrant()

        application = self.applications.get_by_client_id(record.client_id)
        if application is None:
            raise UnknownClient()
        user = self.users.get_by_id(record.user_id)
        if user is None:
            raise InvalidGrant()
        # Re-check the grant: the role may have changed or been revoked since the code was issued
        grant = self.users.get_access_grant(user.id, application.id)
        if grant is None:
            self.audit.record(EVENT_ACCESS_DENIED, client_id=client_id, user_id=user.id, outcome=OUTCOME_FAIL)
            raise AccessDenied()

        try:
            access_token = self.mint_token(user, application, grant.role, now=self.clock())
        except Exception as e:
            logger.exception("Failed to sign access token for client_id=%s", client_id)
            raise ServerError() from e

        self.audit.record(EVENT_TOKEN_ISSUED, client_id=client_id, user_id=user.id)
        logger.info("Access token issued for client_id=%s user=%s role=%s", client_id, user.id, grant.role)
        return TokenGrant(access_token=access_token, expires_in=ACCESS_TOKEN_EXPIRES, user=user, role=grant.role)

    def _token_fail(self, client_id: str | None, user_id: int | None) -> None:
        self.audit.record(EVENT_TOKEN_FAIL, client_id=client_id, user_id=user_id, outcome=OUTCOME_FAIL)

    def sweep_expired(self) -> int:
        """Delete codes past their expiry. Cleanup only; exchange_code enforces expiry itself."""
        return self.codes.delete_expired(self.clock())
