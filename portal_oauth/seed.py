"""
Password hashing and minimal registry write helpers (user, application, access grant).
The portal's management UI owns these records; here they serve dev seeding and tests.
Optional env seeding: PORTAL_SEED_USER_EMAIL + PORTAL_SEED_USER_PASSWORD, PORTAL_SEED_APP_NAME +
PORTAL_SEED_REDIRECT_URI, PORTAL_SEED_ROLE. No hardcoded credentials.
"""
import json
import logging
import os
import secrets

import bcrypt
from sqlalchemy import select
from sqlalchemy.orm import Session

from portal_oauth.models import AppAccess, Application, User

logger = logging.getLogger(__name__)


def _bcrypt_bytes(password: str) -> bytes:
    # Bcrypt has a 72-byte limit
    return password.encode("utf-8")[:72]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_bcrypt_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_bcrypt_bytes(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


_dummy_hash: str | None = None


def burn_password_check(plain: str) -> None:
    """Spend one bcrypt comparison when no user matched, so unknown emails take as long as wrong passwords."""
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password(secrets.token_urlsafe(16))
    verify_password(plain, _dummy_hash)


def generate_client_id() -> str:
    return "app_" + secrets.token_hex(16)


def generate_client_secret() -> str:
    return "secret_" + secrets.token_hex(32)


def create_user(db: Session, *, username: str, email: str, password: str) -> User:
    user = User(username=username, email=email.strip().lower(), password_hash=hash_password(password))
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def create_application(
    db: Session,
    *,
    name: str,
    redirect_uri: str,
    roles: list[str] | None = None,
    client_id: str | None = None,
) -> tuple[Application, str]:
    """Register an application. Returns (application, plain client secret); the secret is not stored."""
    client_secret = generate_client_secret()
    app = Application(
        name=name.strip(),
        client_id=client_id or generate_client_id(),
        client_secret_hash=hash_password(client_secret),
        redirect_uri=redirect_uri.strip(),
        roles=json.dumps(roles or []),
    )
    db.add(app)
    db.commit()
    db.refresh(app)
    return app, client_secret


def grant_access(db: Session, user: User, application: Application, role: str) -> AppAccess:
    """Give user one role on application. Raises ValueError for an unknown role or an existing grant."""
    valid_roles = application.get_roles_list()
    if valid_roles and role not in valid_roles:
        raise ValueError(f"Role {role!r} is not defined for application {application.client_id}")
    existing = db.scalars(
        select(AppAccess).where(AppAccess.user_id == user.id, AppAccess.application_id == application.id)
    ).first()
    if existing is not None:
        raise ValueError(f"User {user.id} already has access to application {application.client_id}")
    access = AppAccess(user_id=user.id, application_id=application.id, role=role)
    db.add(access)
    db.commit()
    db.refresh(access)
    return access


def revoke_access(db: Session, user: User, application: Application) -> bool:
    access = db.scalars(
        select(AppAccess).where(AppAccess.user_id == user.id, AppAccess.application_id == application.id)
    ).first()
    if access is None:
        return False
    db.delete(access)
    db.commit()
    return True


def seed_from_env(db: Session) -> None:
    """Create one user, one application and a grant between them from env, if set."""
    user = None
    email = os.environ.get("PORTAL_SEED_USER_EMAIL")
    password = os.environ.get("PORTAL_SEED_USER_PASSWORD")
    if email and password:
        user = db.scalars(select(User).where(User.email == email.strip().lower())).first()
        if user is None:
            username = os.environ.get("PORTAL_SEED_USERNAME") or email.split("@")[0]
            user = create_user(db, username=username, email=email, password=password)
            logger.info("Seeded user: %s", user.email)
        else:
            logger.debug("User already exists: %s", user.email)

    app = None
    name = os.environ.get("PORTAL_SEED_APP_NAME")
    redirect_uri = os.environ.get("PORTAL_SEED_REDIRECT_URI")
    if name and redirect_uri:
        client_id = os.environ.get("PORTAL_SEED_CLIENT_ID") or None
        roles = [r.strip() for r in os.environ.get("PORTAL_SEED_ROLES", "").split(",") if r.strip()]
        if client_id:
            app = db.scalars(select(Application).where(Application.client_id == client_id)).first()
        if app is None:
            app, _ = create_application(db, name=name, redirect_uri=redirect_uri, roles=roles, client_id=client_id)
            logger.info("Seeded application: %s (client_id=%s)", app.name, app.client_id)

    role = os.environ.get("PORTAL_SEED_ROLE")
    if user is not None and app is not None and role:
        try:
            grant_access(db, user, app, role)
            logger.info("Seeded access: user=%s app=%s role=%s", user.id, app.client_id, role)
        except ValueError as e:
            logger.debug("Seed grant skipped: %s", e)
