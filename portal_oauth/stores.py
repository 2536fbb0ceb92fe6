"""
SQLAlchemy-backed implementations of the OAuth core's collaborator ports.
"""
import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from portal_oauth.models import AppAccess, Application, AuthorizationCode, User
from portal_oauth.ports import (
    AccessGrantRecord,
    ApplicationRecord,
    AuthorizationCodeRecord,
    UserRecord,
    as_utc,
)

logger = logging.getLogger(__name__)


def _application_record(app: Application) -> ApplicationRecord:
    return ApplicationRecord(
        id=app.id,
        name=app.name,
        client_id=app.client_id,
        redirect_uri=app.redirect_uri,
        roles=tuple(app.get_roles_list()),
    )


def _delete_codes(*criteria):
    # Bulk delete by SQL; no in-session objects to keep in sync
    return delete(AuthorizationCode).where(*criteria).execution_options(synchronize_session=False)


def _user_record(user: User) -> UserRecord:
    return UserRecord(id=user.id, username=user.username, email=user.email, password_hash=user.password_hash)


class SqlApplicationRegistry:
    def __init__(self, db: Session):
        self.db = db

    def get_by_client_id(self, client_id: str) -> ApplicationRecord | None:
        app = self.db.scalars(select(Application).where(Application.client_id == client_id)).first()
        return _application_record(app) if app else None


class SqlUserDirectory:
    def __init__(self, db: Session):
        self.db = db

    def get_by_email(self, email: str) -> UserRecord | None:
        user = self.db.scalars(select(User).where(User.email == email.strip().lower())).first()
        return _user_record(user) if user else None

    def get_by_id(self, user_id: int) -> UserRecord | None:
        user = self.db.get(User, user_id)
        return _user_record(user) if user else None

    def get_access_grant(self, user_id: int, application_id: int) -> AccessGrantRecord | None:
        access = self.db.scalars(
            select(AppAccess).where(AppAccess.user_id == user_id, AppAccess.application_id == application_id)
        ).first()
        if access is None:
            return None
        return AccessGrantRecord(
            user_id=access.user_id,
            application_id=access.application_id,
            role=access.role,
            granted_at=access.granted_at,
        )


class SqlAuthorizationCodeStore:
    def __init__(self, db: Session):
        self.db = db

    def add(self, record: AuthorizationCodeRecord) -> None:
        self.db.add(
            AuthorizationCode(
                code=record.code,
                client_id=record.client_id,
                user_id=record.user_id,
                code_challenge=record.code_challenge,
                code_challenge_method=record.code_challenge_method,
                redirect_url=record.redirect_url,
                expires_at=record.expires_at,
            )
        )
        self.db.commit()

    def get(self, code: str) -> AuthorizationCodeRecord | None:
        row = self.db.scalars(select(AuthorizationCode).where(AuthorizationCode.code == code)).first()
        if row is None:
            return None
        return AuthorizationCodeRecord(
            code=row.code,
            client_id=row.client_id,
            user_id=row.user_id,
            code_challenge=row.code_challenge,
            code_challenge_method=row.code_challenge_method,
            redirect_url=row.redirect_url,
            expires_at=as_utc(row.expires_at),
        )

    def consume(self, code: str) -> bool:
        # One conditional DELETE: the row count tells which concurrent caller won
        result = self.db.execute(_delete_codes(AuthorizationCode.code == code))
        self.db.commit()
        return result.rowcount == 1

    def delete(self, code: str) -> None:
        self.db.execute(_delete_codes(AuthorizationCode.code == code))
        self.db.commit()

    def delete_expired(self, now: datetime) -> int:
        result = self.db.execute(_delete_codes(AuthorizationCode.expires_at < now))
        self.db.commit()
        return result.rowcount or 0
