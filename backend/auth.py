"""Request authentication: server-side sessions, bearer tokens and CSRF.

Each request is classified once, in order:

1. a live server-side session cookie -> principal is the session's admin
2. a valid ``Authorization: Bearer`` access token -> principal from its claims
3. otherwise unauthenticated

Invalid or expired bearer tokens are ignored during classification; whether
that is fatal is up to ``require_auth``. Everything downstream sees only an
optional ``Principal`` and never which mechanism produced it.
"""
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends, Request
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

import config
from db import get_db
from errors import AuthenticationFailure, AuthorizationFailure
from models import AdminSession, AdminUser
from security import hash_token, is_expired, now_utc, verify_access_token

logger = logging.getLogger(__name__)

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


@dataclass(frozen=True)
class Principal:
    id: int
    email: Optional[str]


def client_meta(request: Request) -> dict:
    return {
        "user_agent": request.headers.get("user-agent"),
        "ip": request.client.host if request.client else None,
    }


# ------------------------
# Server-side sessions
# ------------------------
def session_cookie_options() -> dict:
    return {
        "httponly": True,
        "secure": config.is_production(),
        "samesite": "lax",
        "path": "/",
        "max_age": config.SESSION_MAX_AGE_SECONDS,
    }


def create_admin_session(db: Session, admin: AdminUser, meta: Optional[dict] = None) -> str:
    """Create a session row for ``admin`` and return the raw cookie value."""
    meta = meta or {}
    raw = secrets.token_urlsafe(32)
    db.add(AdminSession(
        token_hash=hash_token(raw),
        admin_id=admin.id,
        expires_at=now_utc() + timedelta(seconds=config.SESSION_MAX_AGE_SECONDS),
        user_agent=meta.get("user_agent"),
        ip=meta.get("ip"),
    ))
    db.commit()
    return raw


def load_admin_session(db: Session, raw: Optional[str]) -> Optional[AdminSession]:
    if not raw:
        return None
    row = db.execute(select(AdminSession).where(AdminSession.token_hash == hash_token(raw))).scalar_one_or_none()
    if row is None:
        return None
    if is_expired(row.expires_at):
        db.execute(delete(AdminSession).where(AdminSession.id == row.id))
        db.commit()
        return None
    return row


def destroy_admin_session(db: Session, raw: Optional[str]) -> None:
    if not raw:
        return
    db.execute(delete(AdminSession).where(AdminSession.token_hash == hash_token(raw)))
    db.commit()


def ensure_csrf_token(db: Session, session: AdminSession) -> str:
    """Return the session's CSRF token, generating it on first use.

    Once set it stays fixed for the session's lifetime so concurrent
    in-flight requests keep validating.
    """
    if not session.csrf_token:
        session.csrf_token = secrets.token_hex(32)
        db.commit()
    return session.csrf_token


# ------------------------
# Dependencies
# ------------------------
def current_session(request: Request, db: Session = Depends(get_db)) -> Optional[AdminSession]:
    return load_admin_session(db, request.cookies.get(config.SESSION_COOKIE_NAME))


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, value = header.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def resolve_principal(session: Optional[AdminSession], token: Optional[str]) -> Optional[Principal]:
    if session is not None and session.admin is not None:
        return Principal(id=session.admin.id, email=session.admin.email)
    if token:
        try:
            claims = verify_access_token(token)
            return Principal(id=int(claims["sub"]), email=claims.get("email"))
        except (jwt.InvalidTokenError, ValueError):
            pass
    return None


def optional_auth(request: Request, session: Optional[AdminSession] = Depends(current_session)) -> Optional[Principal]:
    principal = resolve_principal(session, bearer_token(request))
    request.state.principal = principal
    return principal


def require_auth(principal: Optional[Principal] = Depends(optional_auth)) -> Principal:
    if principal is None:
        raise AuthenticationFailure("Authentication required")
    return principal


def csrf_protect(request: Request, session: Optional[AdminSession] = Depends(current_session)) -> None:
    """Reject cross-site state changes.

    Session (cookie) callers must echo the session's token in the CSRF header.
    Callers without a session must present an Authorization header instead;
    explicitly attached bearer credentials are not exposed to CSRF.
    """
    if request.method.upper() in SAFE_METHODS:
        return

    if session is not None:
        header_token = request.headers.get(config.CSRF_HEADER)
        if not session.csrf_token:
            logger.warning("CSRF rejected (missing_session_token) on %s", request.url.path)
            raise AuthorizationFailure("CSRF token missing from session")
        if not header_token:
            logger.warning("CSRF rejected (missing_header_token) on %s", request.url.path)
            raise AuthorizationFailure("CSRF token missing from request")
        if not secrets.compare_digest(header_token.encode("utf-8"), session.csrf_token.encode("utf-8")):
            logger.warning("CSRF rejected (token_mismatch) on %s", request.url.path)
            raise AuthorizationFailure("Invalid CSRF token")
        return

    if not request.headers.get("authorization"):
        logger.warning("CSRF rejected (missing_authorization) on %s", request.url.path)
        raise AuthenticationFailure("Unauthenticated - missing Authorization")
