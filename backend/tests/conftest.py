import os

os.environ["APP_ENV"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["RATE_LIMIT_ENABLED"] = "0"
os.environ["DATABASE_URL"] = "sqlite://"

import json

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from db import Base, enable_sqlite_foreign_keys, get_db
from models import BranchAction, Option, Question, Section, Survey
from security import create_admin_account

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "correct-horse-battery"


@pytest.fixture
def test_engine():
    # one in-memory database per test, shared by every connection in it
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def TestingSessionLocal(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def db(TestingSessionLocal):
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(TestingSessionLocal):
    def _get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def admin(db):
    return create_admin_account(db, ADMIN_EMAIL, ADMIN_PASSWORD)


@pytest.fixture
def access_token(client, admin):
    r = client.post("/api/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert r.status_code == 200, r.text
    return r.json()["accessToken"]


@pytest.fixture
def auth_headers(access_token):
    return {"Authorization": f"Bearer {access_token}"}


@pytest.fixture
def branching_survey(db):
    """Active three-section survey exercising showIf and option branches.

    Section "intro":
        attend (SINGLE: yes / no)
        why_not (TEXT, showIf attend equals "no")
        route (SINGLE: continue / finish -> SKIP_TO_END / details -> SKIP_TO_SECTION "details")
    Section "middle":
        rating (NUMBER)
    Section "details":
        comments (LONGTEXT)
    """
    survey = Survey(title="Branching", description="fixture", is_active=True)
    intro = Section(title="Intro", order=1)
    middle = Section(title="Middle", order=2)
    details = Section(title="Details", order=3)
    survey.sections.extend([intro, middle, details])

    attend = Question(type="SINGLE", prompt="Did you attend?", required=True, order=1)
    attend.options.extend([
        Option(label="Yes", value="yes", order=1),
        Option(label="No", value="no", order=2),
    ])
    why_not = Question(type="TEXT", prompt="Why not?", order=2)
    route = Question(type="SINGLE", prompt="Where next?", order=3)
    intro.questions.extend([attend, why_not, route])

    rating = Question(type="NUMBER", prompt="Rate it", order=1)
    middle.questions.append(rating)
    comments = Question(type="LONGTEXT", prompt="Anything else?", order=1)
    details.questions.append(comments)

    db.add(survey)
    db.flush()

    why_not.show_if = json.dumps({"questionId": attend.id, "operator": "equals", "value": "no"})
    route.options.extend([
        Option(label="Continue", value="continue", order=1),
        Option(label="Finish", value="finish", order=2, branch_action=BranchAction.SKIP_TO_END.value),
        Option(label="Details", value="details", order=3,
               branch_action=BranchAction.SKIP_TO_SECTION.value, target_section_id=details.id),
    ])
    db.commit()

    return {
        "survey_id": survey.id,
        "sections": {"intro": intro.id, "middle": middle.id, "details": details.id},
        "questions": {
            "attend": attend.id,
            "why_not": why_not.id,
            "route": route.id,
            "rating": rating.id,
            "comments": comments.id,
        },
    }
