"""
Collaborator interfaces for the OAuth core.

The registry (applications, users, access grants) belongs to the rest of the portal;
the core only reads it. Authorization codes and the audit trail are the core's own writes.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol


@dataclass(frozen=True)
class ApplicationRecord:
    id: int
    name: str
    client_id: str
    redirect_uri: str
    roles: tuple[str, ...] = ()


@dataclass(frozen=True)
class UserRecord:
    id: int
    username: str
    email: str
    password_hash: str


@dataclass(frozen=True)
class AccessGrantRecord:
    user_id: int
    application_id: int
    role: str
    granted_at: datetime | None = None


@dataclass(frozen=True)
class AuthorizationCodeRecord:
    code: str
    client_id: str
    user_id: int
    code_challenge: str
    code_challenge_method: str
    redirect_url: str
    expires_at: datetime


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(record: AuthorizationCodeRecord, now: datetime) -> bool:
    """Single expiry rule shared by the exchange path and the sweep."""
    return now > as_utc(record.expires_at)


class ApplicationRegistry(Protocol):
    def get_by_client_id(self, client_id: str) -> ApplicationRecord | None: ...


class UserDirectory(Protocol):
    def get_by_email(self, email: str) -> UserRecord | None: ...

    def get_by_id(self, user_id: int) -> UserRecord | None: ...

    def get_access_grant(self, user_id: int, application_id: int) -> AccessGrantRecord | None: ...


class AuthorizationCodeStore(Protocol):
    def add(self, record: AuthorizationCodeRecord) -> None: ...

    def get(self, code: str) -> AuthorizationCodeRecord | None: ...

    def consume(self, code: str) -> bool:
        """Atomically delete the code if it still exists. True only for the caller that removed it."""
        ...

    def delete(self, code: str) -> None: ...

    def delete_expired(self, now: datetime) -> int: ...


class AuditTrail(Protocol):
    def record(
        self,
        event_type: str,
        *,
        client_id: str | None = None,
        user_id: int | None = None,
        outcome: str = "success",
    ) -> None: ...
