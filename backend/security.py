"""Credential issuance, verification and rotation.

Access tokens are short-lived signed JWTs verified statelessly. Refresh tokens
are opaque random secrets; only their sha256 digest is stored, so a database
read never yields a usable credential. A refresh token is single-use: rotation
deletes the consumed row with an affected-row check before minting a new pair.
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import audit
import config
from errors import AuthorizationFailure, StateConflict
from models import AdminUser, RefreshToken

logger = logging.getLogger(__name__)

REFRESH_TOKEN_BYTES = 64


class AdminEmailTakenError(StateConflict):
    def __init__(self, email: str):
        super().__init__(f"Admin with email {email} already exists")
        self.email = email


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    cookie_options: dict


@dataclass
class RotatedSession(SessionTokens):
    admin: dict = field(default_factory=dict)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(expires_at: datetime) -> bool:
    return as_utc(expires_at) <= now_utc()


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=config.BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


# Compared against when the email is unknown so both failure paths pay the bcrypt cost.
_DUMMY_HASH = hash_password(secrets.token_hex(16))


def to_admin_safe(admin: AdminUser) -> dict:
    return {
        "id": admin.id,
        "email": admin.email,
        "createdAt": admin.created_at,
        "lastLogin": admin.last_login,
    }


def refresh_cookie_options() -> dict:
    return {
        "httponly": True,
        "secure": config.is_production(),
        "samesite": "lax",
        "path": config.REFRESH_COOKIE_PATH,
        "max_age": config.REFRESH_TOKEN_TTL_DAYS * 24 * 60 * 60,
    }


def _normalize_meta(meta: Optional[dict]) -> dict:
    meta = meta or {}
    return {"user_agent": meta.get("user_agent") or None, "ip": meta.get("ip") or None}


# ------------------------
# Access tokens
# ------------------------
def sign_access_token(admin_id: int, email: str) -> str:
    issued = now_utc()
    payload = {
        "sub": str(admin_id),
        "email": email,
        "type": "access",
        "iat": issued,
        "exp": issued + timedelta(minutes=config.ACCESS_TOKEN_TTL_MINUTES),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def verify_access_token(token: str) -> dict:
    """Return the claims of a valid access token.

    Raises:
        jwt.InvalidTokenError: bad signature, malformed, expired, or not an access token.
    """
    claims = jwt.decode(
        token,
        config.JWT_SECRET,
        algorithms=[config.JWT_ALGORITHM],
        options={"require": ["sub", "exp"]},
    )
    if claims.get("type") != "access":
        raise jwt.InvalidTokenError("Not an access token")
    return claims


# ------------------------
# Admin accounts
# ------------------------
def count_admin_users(db: Session) -> int:
    return db.execute(select(func.count()).select_from(AdminUser)).scalar_one()


def authenticate(db: Session, email: str, password: str) -> Optional[AdminUser]:
    """Return the admin on a correct email/password pair, else None.

    Unknown email and wrong password are indistinguishable to the caller.
    """
    admin = db.execute(select(AdminUser).where(AdminUser.email == email)).scalar_one_or_none()
    if admin is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, admin.password_hash):
        return None
    return admin


def record_admin_login(db: Session, admin: AdminUser, meta: Optional[dict] = None) -> None:
    meta = _normalize_meta(meta)
    admin.last_login = now_utc()
    audit.record(db, admin.id, "LOGIN", meta={k: v for k, v in meta.items() if v})
    db.commit()
    logger.info("Admin %s logged in", admin.id)


def create_admin_account(
    db: Session,
    email: str,
    password: str,
    created_by: str = "system",
    audit_meta: Optional[dict] = None,
    first_admin: bool = False,
) -> dict:
    """Create an admin and return its password-free projection.

    With ``first_admin`` the insert is only kept if it is the sole admin
    once flushed, so two concurrent first-run setups cannot both succeed.

    Raises:
        AdminEmailTakenError: the email is already registered.
        AuthorizationFailure: ``first_admin`` and another admin already exists.
    """
    existing = db.execute(select(AdminUser.id).where(AdminUser.email == email)).scalar_one_or_none()
    if existing is not None:
        raise AdminEmailTakenError(email)

    admin = AdminUser(email=email, password_hash=hash_password(password))
    db.add(admin)
    try:
        db.flush()
    except IntegrityError:
        # lost a race on the unique email index
        db.rollback()
        raise AdminEmailTakenError(email)

    if first_admin and count_admin_users(db) > 1:
        db.rollback()
        logger.warning("First-run setup lost to a concurrent setup; %s not created", email)
        raise AuthorizationFailure("Setup has already been completed")

    audit.record(db, admin.id, "CREATE_ADMIN", entity="AdminUser", entity_id=admin.id,
                 meta={"createdBy": created_by, **(audit_meta or {})})
    db.commit()
    db.refresh(admin)
    logger.info("Admin account %s created by %s", admin.id, created_by)
    return to_admin_safe(admin)


# ------------------------
# Refresh tokens
# ------------------------
def issue_session(db: Session, admin: AdminUser, meta: Optional[dict] = None) -> SessionTokens:
    """Persist a new refresh token and sign an access token for ``admin``.

    The raw refresh secret is returned exactly once and cannot be recovered
    from storage afterwards.
    """
    raw = secrets.token_hex(REFRESH_TOKEN_BYTES)
    db.add(RefreshToken(
        token_hash=hash_token(raw),
        admin_id=admin.id,
        expires_at=now_utc() + timedelta(days=config.REFRESH_TOKEN_TTL_DAYS),
        **_normalize_meta(meta),
    ))
    db.commit()
    return SessionTokens(
        access_token=sign_access_token(admin.id, admin.email),
        refresh_token=raw,
        cookie_options=refresh_cookie_options(),
    )


def rotate_refresh_token(db: Session, raw_token: str, meta: Optional[dict] = None) -> Optional[RotatedSession]:
    """Consume ``raw_token`` and issue a fresh pair, or return None.

    None means unknown, reused, or expired token; the caller must force a new
    login. Two concurrent rotations of the same token cannot both succeed:
    only the request whose DELETE affects the row proceeds.
    """
    token_hash = hash_token(raw_token)
    stored = db.execute(select(RefreshToken).where(RefreshToken.token_hash == token_hash)).scalar_one_or_none()
    if stored is None:
        logger.info("Refresh rejected: unknown or already rotated token")
        return None

    if is_expired(stored.expires_at):
        db.execute(delete(RefreshToken).where(RefreshToken.id == stored.id))
        db.commit()
        logger.info("Refresh rejected: expired token for admin %s", stored.admin_id)
        return None

    admin_id = stored.admin_id
    result = db.execute(delete(RefreshToken).where(RefreshToken.id == stored.id))
    if result.rowcount != 1:
        db.rollback()
        logger.info("Refresh rejected: token consumed concurrently for admin %s", admin_id)
        return None
    db.commit()

    admin = db.get(AdminUser, admin_id)
    if admin is None:
        return None

    tokens = issue_session(db, admin, meta)
    return RotatedSession(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        cookie_options=tokens.cookie_options,
        admin=to_admin_safe(admin),
    )


def revoke_refresh_token(db: Session, raw_token: str) -> None:
    db.execute(delete(RefreshToken).where(RefreshToken.token_hash == hash_token(raw_token)))
    db.commit()
