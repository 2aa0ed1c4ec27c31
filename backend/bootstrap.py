"""First-run admin provisioning and the demo survey seed.

Run ``python bootstrap.py`` from ``backend/`` to create the tables, the admin
from ``ADMIN_EMAIL``/``ADMIN_PASSWORD`` (or from a terminal prompt when those are
unset) and an active demo survey.
"""
import getpass
import json
import logging
import sys

from pydantic import EmailStr, TypeAdapter, ValidationError
from sqlalchemy.orm import Session

import config
from errors import AuthorizationFailure
from db import Base, SessionLocal, engine
from models import BranchAction, Survey
from schemas import ImportSurvey, SetupRequest
from security import count_admin_users, create_admin_account
from surveys import import_survey

logger = logging.getLogger(__name__)


def ensure_admin_account(db: Session) -> bool:
    """Create the first admin from the environment when none exists.

    Returns:
        bool: True if an admin was created.
    """
    if count_admin_users(db) > 0:
        logger.debug("Admin accounts exist; skipping first-run setup")
        return False

    logger.warning("No admin accounts found. Initial setup is required.")
    if not config.ADMIN_EMAIL or not config.ADMIN_PASSWORD:
        logger.warning(
            "Provide ADMIN_EMAIL and ADMIN_PASSWORD or POST to /api/auth/setup to create the first admin."
        )
        return False

    try:
        creds = SetupRequest(email=config.ADMIN_EMAIL, password=config.ADMIN_PASSWORD)
    except ValidationError as e:
        fields = ", ".join(str(err["loc"][0]) for err in e.errors())
        logger.error("ADMIN_EMAIL/ADMIN_PASSWORD rejected (%s); admin not created", fields)
        return False

    try:
        admin = create_admin_account(db, creds.email, creds.password, created_by="env",
                                     audit_meta={"source": "env", "interactive": False}, first_admin=True)
    except AuthorizationFailure:
        # another worker provisioned the first admin meanwhile
        return False
    logger.info("Initial admin account %s created from environment variables", admin["email"])
    return True


def prompt_for_credentials(ask=input, ask_secret=getpass.getpass, say=print) -> SetupRequest:
    """Ask on the terminal until a valid email and a confirmed password are given."""
    while True:
        email = ask("Enter admin email address: ").strip()
        try:
            TypeAdapter(EmailStr).validate_python(email)
            break
        except ValidationError:
            say("Enter a valid email address.")

    while True:
        password = ask_secret("Create admin password (min 8 chars): ")
        try:
            creds = SetupRequest(email=email, password=password)
        except ValidationError as e:
            say(e.errors()[0]["msg"])
            continue
        if ask_secret("Confirm password: ") != password:
            say("Passwords do not match. Please try again.")
            continue
        return creds


def create_admin_interactive(db: Session, **prompt_kwargs) -> dict:
    creds = prompt_for_credentials(**prompt_kwargs)
    admin = create_admin_account(db, creds.email, creds.password, created_by="cli-setup",
                                 audit_meta={"interactive": True}, first_admin=True)
    logger.info("Initial admin account %s created. Sign in at /admin/login.", admin["email"])
    return admin


DEMO_SURVEY = {
    "title": "Fall Summit 2025 Feedback",
    "description": "Help us improve future events with your quick feedback (5 minutes)",
    "sections": [
        {
            "title": "Overall Experience",
            "questions": [
                {"type": "LIKERT", "prompt": "How would you rate the overall event?",
                 "helpText": "1 = Poor, 5 = Excellent", "required": True},
                {"type": "NPS", "prompt": "How likely are you to recommend this event to a colleague?",
                 "helpText": "0 = Not at all likely, 10 = Extremely likely", "required": True},
                {"type": "SINGLE", "prompt": "What was your favorite part of the event?",
                 "options": ["Keynote Presentations", "Panel Discussions", "Workshops", "Networking Sessions"]},
                {"type": "MULTI", "prompt": "Which topics were most valuable to you? (Select all that apply)",
                 "options": ["AI & Machine Learning", "Cloud Infrastructure", "Security & Privacy", "Data Analytics"]},
                {"type": "SINGLE", "prompt": "Do you have a few more minutes for detailed feedback?",
                 "required": True, "options": ["Yes", "No thanks"]},
            ],
        },
        {
            "title": "Logistics & Venue",
            "questions": [
                {"type": "LIKERT", "prompt": "How would you rate the venue and facilities?"},
                {"type": "SINGLE", "prompt": "Was the event duration appropriate?",
                 "options": ["Too short", "Just right", "Too long"]},
            ],
        },
        {
            "title": "Open Feedback",
            "questions": [
                {"type": "TEXT", "prompt": "What was the highlight of the event for you?",
                 "helpText": "One sentence is fine!"},
                {"type": "LONGTEXT", "prompt": "What could we improve for next time?"},
            ],
        },
    ],
}


def seed_demo_survey(db: Session) -> Survey:
    """Import the demo survey, wire its branches and mark it active."""
    survey = import_survey(db, ImportSurvey.model_validate(DEMO_SURVEY))
    survey.is_active = True

    sections = survey.sections
    decline = next(o for o in sections[0].questions[4].options if o.value == "no-thanks")
    decline.branch_action = BranchAction.SKIP_TO_END.value

    # improvement prompt only for ratings below 4
    rating = sections[0].questions[0]
    sections[2].questions[1].show_if = json.dumps({"questionId": rating.id, "operator": "less_than", "value": 4})

    db.commit()
    db.refresh(survey)
    return survey


if __name__ == "__main__":
    logging.basicConfig(level=config.LOG_LEVEL)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        if not ensure_admin_account(db) and count_admin_users(db) == 0 and sys.stdin.isatty():
            create_admin_interactive(db)
        survey = seed_demo_survey(db)
        logger.info("Seeded survey %s; open /survey?eventSlug=%s", survey.id, config.DEFAULT_EVENT_SLUG)
    finally:
        db.close()
