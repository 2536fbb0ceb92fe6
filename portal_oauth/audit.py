"""
Audit logging. Security-relevant events only; no codes, verifiers, tokens, passwords or request bodies.
"""
from fastapi import Request
from sqlalchemy.orm import Session

from portal_oauth.models import AuditLog

EVENT_LOGIN_OK = "login_ok"
EVENT_LOGIN_FAIL = "login_fail"
EVENT_ACCESS_DENIED = "access_denied"
EVENT_CODE_ISSUED = "code_issued"
EVENT_TOKEN_ISSUED = "token_issued"
EVENT_TOKEN_FAIL = "token_fail"

OUTCOME_SUCCESS = "success"
OUTCOME_FAIL = "fail"


def get_client_ip(request: Request | None) -> str | None:
    """Client IP if available (request.client.host). Forwarding headers are not trusted."""
    if request is None or request.client is None:
        return None
    return getattr(request.client, "host", None)


def log_audit(
    db: Session,
    event_type: str,
    *,
    client_id: str | None = None,
    user_id: int | None = None,
    ip: str | None = None,
    outcome: str = OUTCOME_SUCCESS,
) -> None:
    """Append one audit record."""
    db.add(
        AuditLog(
            event_type=event_type,
            client_id=client_id,
            user_id=user_id,
            ip=ip,
            outcome=outcome,
        )
    )
    db.commit()


class SqlAuditTrail:
    """AuditTrail bound to one request's session and caller IP."""

    def __init__(self, db: Session, ip: str | None = None):
        self.db = db
        self.ip = ip

    def record(
        self,
        event_type: str,
        *,
        client_id: str | None = None,
        user_id: int | None = None,
        outcome: str = OUTCOME_SUCCESS,
    ) -> None:
        log_audit(self.db, event_type, client_id=client_id, user_id=user_id, ip=self.ip, outcome=outcome)
