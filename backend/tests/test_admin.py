from sqlalchemy import select

from models import AuditLog
from conftest import ADMIN_EMAIL


def _create_survey(client, headers, **fields):
    r = client.post("/api/admin/surveys", json={"title": "Admin Test", "description": "desc", **fields}, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()["id"]


def _create_section(client, headers, survey_id, title="S1", order=1):
    r = client.post("/api/admin/sections", json={"surveyId": survey_id, "title": title, "order": order}, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()["id"]


def _actions(db):
    return db.execute(select(AuditLog.action).order_by(AuditLog.id)).scalars().all()


# ------------------------
# Surveys
# ------------------------
def test_survey_crud_is_audited(client, auth_headers, db):
    sid = _create_survey(client, auth_headers)

    listed = client.get("/api/admin/surveys", headers=auth_headers).json()
    assert [(s["id"], s["submissionCount"], s["questionCount"]) for s in listed] == [(sid, 0, 0)]

    r = client.patch(f"/api/admin/surveys/{sid}", json={"title": "Renamed", "isActive": True}, headers=auth_headers)
    assert r.status_code == 200, r.text
    assert r.json()["title"] == "Renamed"
    assert r.json()["isActive"] is True

    # null on a required column is ignored, null on description clears it
    r = client.patch(f"/api/admin/surveys/{sid}", json={"title": None, "description": None}, headers=auth_headers)
    assert r.json()["title"] == "Renamed"
    assert r.json()["description"] is None

    assert client.delete(f"/api/admin/surveys/{sid}", headers=auth_headers).json() == {"ok": True}
    assert client.get(f"/api/admin/surveys/{sid}", headers=auth_headers).status_code == 404

    assert _actions(db)[-4:] == ["CREATE_SURVEY", "UPDATE_SURVEY", "UPDATE_SURVEY", "DELETE_SURVEY"]


def test_missing_entities_are_404(client, auth_headers):
    assert client.patch("/api/admin/surveys/999", json={"title": "x"}, headers=auth_headers).status_code == 404
    assert client.delete("/api/admin/sections/999", headers=auth_headers).status_code == 404
    assert client.post("/api/admin/sections", json={"surveyId": 999, "title": "x"}, headers=auth_headers).status_code == 404


# ------------------------
# Sections / questions / options
# ------------------------
def test_build_survey_tree(client, auth_headers):
    sid = _create_survey(client, auth_headers)
    s1 = _create_section(client, auth_headers, sid, "First", 1)
    s2 = _create_section(client, auth_headers, sid, "Second", 2)

    r = client.post("/api/admin/questions", json={
        "sectionId": s1, "type": "SINGLE", "prompt": "Attend?", "required": True, "order": 1,
        "options": [
            {"label": "Yes", "value": "yes", "order": 1},
            {"label": "No", "value": "no", "order": 2,
             "branchAction": "SKIP_TO_SECTION", "targetSectionId": s2},
        ],
    }, headers=auth_headers)
    assert r.status_code == 201, r.text
    attend = r.json()
    assert [o["value"] for o in attend["options"]] == ["yes", "no"]
    assert attend["options"][1]["targetSectionId"] == s2

    r = client.post("/api/admin/questions", json={
        "sectionId": s1, "type": "TEXT", "prompt": "Why?", "order": 2,
        "showIf": {"questionId": attend["id"], "operator": "equals", "value": "no"},
    }, headers=auth_headers)
    assert r.status_code == 201, r.text
    why = r.json()
    assert '"operator": "equals"' in why["showIf"]

    r = client.patch(f"/api/admin/questions/{why['id']}", json={"showIf": None, "prompt": "Why not?"},
                     headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["showIf"] is None
    assert r.json()["prompt"] == "Why not?"

    tree = client.get(f"/api/admin/surveys/{sid}", headers=auth_headers).json()
    assert [s["title"] for s in tree["sections"]] == ["First", "Second"]
    assert [q["prompt"] for q in tree["sections"][0]["questions"]] == ["Attend?", "Why not?"]


def test_question_validation(client, auth_headers):
    sid = _create_survey(client, auth_headers)
    other = _create_survey(client, auth_headers, title="Other")
    s1 = _create_section(client, auth_headers, sid)
    foreign_section = _create_section(client, auth_headers, other)
    foreign_q = client.post("/api/admin/questions", json={
        "sectionId": foreign_section, "type": "TEXT", "prompt": "elsewhere",
    }, headers=auth_headers).json()["id"]

    r = client.post("/api/admin/questions", json={
        "sectionId": s1, "type": "TEXT", "prompt": "Bad",
        "showIf": {"questionId": foreign_q, "operator": "equals", "value": "x"},
    }, headers=auth_headers)
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "showIf.questionId"

    r = client.post("/api/admin/questions", json={
        "sectionId": s1, "type": "TEXT", "prompt": "Bad", "options": [{"label": "A", "value": "a"}],
    }, headers=auth_headers)
    assert r.status_code == 422

    r = client.post("/api/admin/questions", json={
        "sectionId": s1, "type": "SINGLE", "prompt": "Bad",
        "options": [{"label": "A", "value": "a", "branchAction": "SKIP_TO_SECTION", "targetSectionId": foreign_section}],
    }, headers=auth_headers)
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "options.0.targetSectionId"

    r = client.post("/api/admin/questions", json={
        "sectionId": s1, "type": "RANKING", "prompt": "Unknown type",
    }, headers=auth_headers)
    assert r.status_code == 422

    r = client.post("/api/admin/questions", json={
        "sectionId": s1, "type": "TEXT", "prompt": "Bad op",
        "showIf": {"questionId": foreign_q, "operator": "between", "value": 1},
    }, headers=auth_headers)
    assert r.status_code == 422


def test_option_crud(client, auth_headers, db):
    sid = _create_survey(client, auth_headers)
    s1 = _create_section(client, auth_headers, sid)
    s2 = _create_section(client, auth_headers, sid, "S2", 2)
    qid = client.post("/api/admin/questions", json={"sectionId": s1, "type": "MULTI", "prompt": "Pick"},
                      headers=auth_headers).json()["id"]
    text_q = client.post("/api/admin/questions", json={"sectionId": s1, "type": "TEXT", "prompt": "Say"},
                         headers=auth_headers).json()["id"]

    r = client.post("/api/admin/options", json={"questionId": qid, "label": "A", "value": "a"}, headers=auth_headers)
    assert r.status_code == 201, r.text
    oid = r.json()["id"]

    r = client.patch(f"/api/admin/options/{oid}", json={"branchAction": "SKIP_TO_SECTION", "targetSectionId": s2},
                     headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["branchAction"] == "SKIP_TO_SECTION"
    assert r.json()["targetSectionId"] == s2

    r = client.patch(f"/api/admin/options/{oid}", json={"branchAction": None, "targetSectionId": None},
                     headers=auth_headers)
    assert r.json()["branchAction"] is None
    assert r.json()["targetSectionId"] is None

    bad = client.post("/api/admin/options", json={"questionId": text_q, "label": "B", "value": "b"}, headers=auth_headers)
    assert bad.status_code == 422

    assert client.delete(f"/api/admin/options/{oid}", headers=auth_headers).status_code == 200
    assert client.delete(f"/api/admin/questions/{qid}", headers=auth_headers).status_code == 200
    assert "DELETE_OPTION" in _actions(db) and "DELETE_QUESTION" in _actions(db)


def test_deleting_target_section_clears_branch(client, auth_headers):
    sid = _create_survey(client, auth_headers)
    s1 = _create_section(client, auth_headers, sid)
    s2 = _create_section(client, auth_headers, sid, "S2", 2)
    q = client.post("/api/admin/questions", json={
        "sectionId": s1, "type": "SINGLE", "prompt": "Go?",
        "options": [{"label": "Go", "value": "go", "branchAction": "SKIP_TO_SECTION", "targetSectionId": s2}],
    }, headers=auth_headers).json()

    assert client.delete(f"/api/admin/sections/{s2}", headers=auth_headers).status_code == 200
    tree = client.get(f"/api/admin/surveys/{sid}", headers=auth_headers).json()
    option = tree["sections"][0]["questions"][0]["options"][0]
    assert option["id"] == q["options"][0]["id"]
    assert option["targetSectionId"] is None


# ------------------------
# Accounts, import, audit
# ------------------------
def test_create_admin(client, auth_headers, db):
    r = client.post("/api/admin/admins", json={"email": "second@example.com", "password": "long-enough-pw"},
                    headers=auth_headers)
    assert r.status_code == 201, r.text
    assert r.json()["email"] == "second@example.com"

    entry = db.execute(select(AuditLog).where(AuditLog.action == "CREATE_ADMIN").order_by(AuditLog.id.desc())).scalars().first()
    assert entry.meta["createdBy"] == ADMIN_EMAIL

    dup = client.post("/api/admin/admins", json={"email": "second@example.com", "password": "long-enough-pw"},
                      headers=auth_headers)
    assert dup.status_code == 409


def test_import_survey(client, auth_headers):
    r = client.post("/api/admin/import", json={
        "title": "Imported",
        "sections": [
            {"title": "One", "questions": [
                {"type": "SINGLE", "prompt": "Favourite track?", "options": ["Cloud Infra", "AI & ML"]},
                {"type": "NPS", "prompt": "Recommend?", "required": True},
            ]},
            {"title": "Two", "questions": [{"type": "LONGTEXT", "prompt": "Anything else?"}]},
        ],
    }, headers=auth_headers)
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["isActive"] is False
    assert [s["order"] for s in body["sections"]] == [1, 2]
    options = body["sections"][0]["questions"][0]["options"]
    assert [o["value"] for o in options] == ["cloud-infra", "ai-&-ml"]


def test_audit_listing(client, auth_headers):
    _create_survey(client, auth_headers)
    r = client.get("/api/admin/audit", params={"limit": 2}, headers=auth_headers)
    assert r.status_code == 200
    entries = r.json()
    assert len(entries) == 2
    assert entries[0]["action"] == "CREATE_SURVEY"
    assert entries[0]["adminEmail"] == ADMIN_EMAIL

    assert client.get("/api/admin/audit", params={"limit": 0}, headers=auth_headers).status_code == 422
