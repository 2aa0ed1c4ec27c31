import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

import audit
import config
from admin import router as admin_router
from auth import (
    Principal, bearer_token, client_meta, create_admin_session, current_session,
    destroy_admin_session, ensure_csrf_token, optional_auth, resolve_principal, session_cookie_options,
)
from bootstrap import ensure_admin_account
from branching import AnswerValue, build_tree, next_directive, visible_questions
from db import Base, SessionLocal, engine, get_db
from errors import AuthenticationFailure, AuthorizationFailure, NotFound, ValidationFailure, register_error_handlers
from models import AdminSession, AdminUser, Contact
from ratelimit import auth_limiter, public_limiter, submission_limiter
from schemas import (
    AdvanceRequest, AnswersSubmit, ContactCreate, EvaluateRequest, LoginRequest,
    SetupRequest, SubmissionCreate,
)
from security import (
    SessionTokens, authenticate, count_admin_users, create_admin_account, issue_session,
    record_admin_login, revoke_refresh_token, rotate_refresh_token, to_admin_safe,
)
from submissions import advance, complete_submission, create_submission, submit_answers
from surveys import find_active, load_survey_tree, survey_out

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)
    if not config.is_test():
        db = SessionLocal()
        try:
            ensure_admin_account(db)
        finally:
            db.close()
    logger.info("Survey API started in %s mode", config.APP_ENV)
    yield
    engine.dispose()


app = FastAPI(title="Survey API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
register_error_handlers(app)
app.include_router(admin_router)


def _set_refresh_cookie(response: Response, tokens: SessionTokens) -> None:
    response.set_cookie(config.REFRESH_COOKIE_NAME, tokens.refresh_token, **tokens.cookie_options)


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(config.REFRESH_COOKIE_NAME, path=config.REFRESH_COOKIE_PATH)


@app.get("/health")
def health():
    """Basic liveness probe."""
    return {"ok": True}


@app.get("/health/ready")
def ready(db: Session = Depends(get_db)):
    """Readiness probe: verifies the database answers."""
    try:
        db.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness check failed")
        return JSONResponse({"status": "degraded"}, status_code=503)
    return {"status": "ready"}


# ------------------------
# Auth: access + refresh tokens
# ------------------------
@app.post("/api/auth/login", dependencies=[Depends(auth_limiter)])
def login(body: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    """Exchange email/password for an access token and a refresh cookie.

    Returns:
        dict: {"accessToken": str, "user": {...}}

    Raises:
        AuthenticationFailure: 401 on any credential problem (never says which).
    """
    admin = authenticate(db, body.email, body.password)
    if admin is None:
        logger.warning("Failed admin login attempt")
        raise AuthenticationFailure()
    meta = client_meta(request)
    record_admin_login(db, admin, meta)
    tokens = issue_session(db, admin, meta)
    _set_refresh_cookie(response, tokens)
    return {"accessToken": tokens.access_token, "user": to_admin_safe(admin)}


@app.post("/api/auth/refresh", dependencies=[Depends(auth_limiter)])
def refresh(request: Request, db: Session = Depends(get_db)):
    """Rotate the refresh cookie and mint a new access token.

    Any failure clears the cookie and answers 401; the client must log in again.
    """
    raw = request.cookies.get(config.REFRESH_COOKIE_NAME)
    rotated = rotate_refresh_token(db, raw, client_meta(request)) if raw else None
    if rotated is None:
        resp = JSONResponse(
            {"detail": AuthenticationFailure.default_detail, "code": AuthenticationFailure.code},
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )
        _clear_refresh_cookie(resp)
        return resp
    resp = JSONResponse({"accessToken": rotated.access_token, "user": jsonable_encoder(rotated.admin)})
    _set_refresh_cookie(resp, rotated)
    return resp


@app.post("/api/auth/logout")
def logout(
    request: Request,
    response: Response,
    principal: Optional[Principal] = Depends(optional_auth),
    db: Session = Depends(get_db),
):
    """Revoke the refresh cookie and any server-side session; always clears cookies."""
    raw = request.cookies.get(config.REFRESH_COOKIE_NAME)
    if raw:
        try:
            revoke_refresh_token(db, raw)
        except Exception:
            db.rollback()
            logger.exception("Refresh token revocation failed during logout")
    destroy_admin_session(db, request.cookies.get(config.SESSION_COOKIE_NAME))
    if principal is not None:
        audit.record(db, principal.id, "LOGOUT")
        db.commit()
    _clear_refresh_cookie(response)
    response.delete_cookie(config.SESSION_COOKIE_NAME, path="/")
    return {"loggedOut": True}


@app.get("/api/auth/me")
def me(principal: Optional[Principal] = Depends(optional_auth)):
    if principal is None:
        return {"authenticated": False}
    return {"authenticated": True, "user": {"id": principal.id, "email": principal.email}}


@app.get("/api/auth/setup-status")
def setup_status(db: Session = Depends(get_db)):
    return {"needsSetup": count_admin_users(db) == 0}


@app.post("/api/auth/setup", dependencies=[Depends(auth_limiter)])
def setup(body: SetupRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    """Create the first admin. Only allowed while no admin exists."""
    if count_admin_users(db) > 0:
        raise AuthorizationFailure("Setup has already been completed")
    safe = create_admin_account(db, body.email, body.password, created_by="setup",
                                audit_meta={"source": "api"}, first_admin=True)
    admin = db.get(AdminUser, safe["id"])
    meta = client_meta(request)
    record_admin_login(db, admin, meta)
    tokens = issue_session(db, admin, meta)
    _set_refresh_cookie(response, tokens)
    return {"accessToken": tokens.access_token, "user": to_admin_safe(admin)}


# ------------------------
# Auth: server-side session (cookie) path
# ------------------------
@app.post("/api/auth/session/login", dependencies=[Depends(auth_limiter)])
def session_login(body: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    """Log in with a server-side session cookie instead of tokens.

    Any session presented with the request is discarded first so a fixed
    session id can never be promoted to an authenticated one.
    """
    admin = authenticate(db, body.email, body.password)
    if admin is None:
        logger.warning("Failed admin session login attempt")
        raise AuthenticationFailure()
    destroy_admin_session(db, request.cookies.get(config.SESSION_COOKIE_NAME))
    meta = client_meta(request)
    record_admin_login(db, admin, meta)
    raw = create_admin_session(db, admin, meta)
    response.set_cookie(config.SESSION_COOKIE_NAME, raw, **session_cookie_options())
    return {"user": to_admin_safe(admin)}


@app.get("/api/auth/csrf-token")
def csrf_token(
    request: Request,
    session: Optional[AdminSession] = Depends(current_session),
    db: Session = Depends(get_db),
):
    """Return the session's CSRF token, creating it on first call.

    Bearer-only callers are CSRF exempt and get an explicit not-applicable answer.
    """
    if session is not None:
        return {"csrfToken": ensure_csrf_token(db, session)}
    if resolve_principal(None, bearer_token(request)) is not None:
        return {"csrfToken": None, "applicable": False}
    raise AuthenticationFailure("Unauthenticated")


# ------------------------
# Public: surveys
# ------------------------
@app.get("/api/surveys/active", dependencies=[Depends(public_limiter)])
def active_survey(event_slug: str = Query(..., alias="eventSlug", min_length=1), db: Session = Depends(get_db)):
    """Return the active survey tree. ``eventSlug`` is required but does not scope the lookup."""
    return survey_out(find_active(db))


@app.get("/api/surveys/{survey_id}", dependencies=[Depends(public_limiter)])
def get_survey(survey_id: int, db: Session = Depends(get_db)):
    return survey_out(load_survey_tree(db, survey_id))


@app.post("/api/surveys/{survey_id}/evaluate", dependencies=[Depends(public_limiter)])
def evaluate_section(survey_id: int, body: EvaluateRequest, db: Session = Depends(get_db)):
    """Evaluate visibility and the leave-section directive for client-held answers.

    Returns:
        dict: {"visibleQuestionIds": [int], "directive": {"action", "targetSectionId", "skipped"}}
    """
    tree = build_tree(load_survey_tree(db, survey_id))
    index = tree.section_index(body.section_id)
    if index < 0:
        raise NotFound("Section not found in this survey")
    answers = {
        a.question_id: AnswerValue(
            choice_values=tuple(a.choice_values or ()),
            text_value=a.text_value,
            number_value=a.number_value,
        )
        for a in body.answers
    }
    section = tree.sections[index]
    return {
        "visibleQuestionIds": [q.id for q in visible_questions(section, answers)],
        "directive": next_directive(tree, section.id, answers).as_dict(),
    }


# ------------------------
# Public: submissions
# ------------------------
@app.post("/api/submissions", status_code=201, dependencies=[Depends(submission_limiter)])
def new_submission(body: SubmissionCreate, db: Session = Depends(get_db)):
    sub = create_submission(db, body.survey_id, body.event_slug)
    return {"submissionId": sub.id}


@app.post("/api/submissions/{submission_id}/answers", dependencies=[Depends(public_limiter)])
def save_answers(submission_id: str, body: AnswersSubmit, db: Session = Depends(get_db)):
    saved = submit_answers(db, submission_id, body.answers)
    return {"saved": saved}


@app.post("/api/submissions/{submission_id}/next", dependencies=[Depends(public_limiter)])
def next_section(submission_id: str, body: AdvanceRequest, db: Session = Depends(get_db)):
    """Leave a section: returns the branch directive, completing the submission on END."""
    return advance(db, submission_id, body.section_id)


@app.post("/api/submissions/{submission_id}/complete", dependencies=[Depends(public_limiter)])
def finish_submission(submission_id: str, db: Session = Depends(get_db)):
    sub = complete_submission(db, submission_id)
    return {"submissionId": sub.id, "completedAt": sub.completed_at, "nextRoute": "/contact"}


# ------------------------
# Public: contacts (kept apart from responses)
# ------------------------
@app.post("/api/contacts", status_code=201, dependencies=[Depends(submission_limiter)])
def create_contact(body: ContactCreate, db: Session = Depends(get_db)):
    """Store opt-in contact details with no link to any submission."""
    if not any([body.name, body.email, body.company, body.role]):
        raise ValidationFailure(
            [{"field": f, "message": "At least one contact field must be provided", "type": "value_error"}
             for f in ("name", "email", "company", "role")],
            "At least one contact field (name, email, company, or role) must be provided",
        )
    contact = Contact(
        event_slug=body.event_slug,
        name=body.name,
        email=body.email,
        company=body.company,
        role=body.role,
        consent=body.consent,
    )
    db.add(contact)
    db.commit()
    message = (
        "Thank you! We'll be in touch soon." if body.consent
        else "Contact information saved without consent for follow-up."
    )
    return {"contactId": contact.id, "message": message}
