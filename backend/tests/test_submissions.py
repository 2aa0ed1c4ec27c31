from sqlalchemy import select

import submissions
from models import Answer, Submission, Survey
from submissions import complete_submission

SLUG = "fall-summit-2025"


def _start(client, survey_id):
    r = client.post("/api/submissions", json={"surveyId": survey_id, "eventSlug": SLUG})
    assert r.status_code == 201, r.text
    return r.json()["submissionId"]


def _answer(client, submission_id, *answers):
    return client.post(f"/api/submissions/{submission_id}/answers", json={"answers": list(answers)})


# ------------------------
# Public survey reads
# ------------------------
def test_active_survey_requires_event_slug(client, branching_survey):
    r = client.get("/api/surveys/active")
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "eventSlug"


def test_active_survey_returns_tree(client, branching_survey):
    r = client.get("/api/surveys/active", params={"eventSlug": SLUG})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["id"] == branching_survey["survey_id"]
    assert [s["title"] for s in body["sections"]] == ["Intro", "Middle", "Details"]
    route = body["sections"][0]["questions"][2]
    assert [o["value"] for o in route["options"]] == ["continue", "finish", "details"]
    assert route["options"][1]["branchAction"] == "SKIP_TO_END"


def test_no_active_survey(client, branching_survey, db):
    db.get(Survey, branching_survey["survey_id"]).is_active = False
    db.commit()
    assert client.get("/api/surveys/active", params={"eventSlug": SLUG}).status_code == 404


def test_get_survey_by_id(client, branching_survey):
    assert client.get(f"/api/surveys/{branching_survey['survey_id']}").status_code == 200
    assert client.get("/api/surveys/9999").status_code == 404


def test_evaluate_section_visibility(client, branching_survey):
    q = branching_survey["questions"]
    sections = branching_survey["sections"]
    url = f"/api/surveys/{branching_survey['survey_id']}/evaluate"

    r = client.post(url, json={"sectionId": sections["intro"], "answers": [
        {"questionId": q["attend"], "choiceValues": ["no"]},
    ]})
    assert r.status_code == 200, r.text
    assert r.json()["visibleQuestionIds"] == [q["attend"], q["why_not"], q["route"]]
    assert r.json()["directive"] == {"action": "NEXT_SECTION", "targetSectionId": sections["middle"], "skipped": False}

    r = client.post(url, json={"sectionId": sections["intro"], "answers": [
        {"questionId": q["attend"], "choiceValues": ["yes"]},
        {"questionId": q["route"], "choiceValues": ["details"]},
    ]})
    assert r.json()["visibleQuestionIds"] == [q["attend"], q["route"]]
    assert r.json()["directive"]["action"] == "JUMP_TO_SECTION"
    assert r.json()["directive"]["targetSectionId"] == sections["details"]


def test_evaluate_unknown_section(client, branching_survey):
    r = client.post(f"/api/surveys/{branching_survey['survey_id']}/evaluate", json={"sectionId": 9999})
    assert r.status_code == 404


# ------------------------
# Creation
# ------------------------
def test_identical_requests_create_distinct_submissions(client, branching_survey, db):
    first = _start(client, branching_survey["survey_id"])
    second = _start(client, branching_survey["survey_id"])
    assert first != second
    assert len(db.execute(select(Submission)).scalars().all()) == 2


def test_cannot_start_inactive_or_missing_survey(client, branching_survey, db):
    db.get(Survey, branching_survey["survey_id"]).is_active = False
    db.commit()
    r = client.post("/api/submissions", json={"surveyId": branching_survey["survey_id"], "eventSlug": SLUG})
    assert r.status_code == 409
    assert r.json()["code"] == "STATE_CONFLICT"
    assert client.post("/api/submissions", json={"surveyId": 9999, "eventSlug": SLUG}).status_code == 404


def test_submission_requires_event_slug(client, branching_survey):
    r = client.post("/api/submissions", json={"surveyId": branching_survey["survey_id"], "eventSlug": ""})
    assert r.status_code == 422


# ------------------------
# Answers
# ------------------------
def test_answers_are_upserted(client, branching_survey, db):
    q = branching_survey["questions"]
    sid = _start(client, branching_survey["survey_id"])

    r = _answer(client, sid,
                {"questionId": q["attend"], "choiceValues": ["no"]},
                {"questionId": q["why_not"], "textValue": "Was travelling"},
                {"questionId": q["rating"], "numberValue": 4})
    assert r.status_code == 200, r.text
    assert r.json() == {"saved": 3}

    r = _answer(client, sid, {"questionId": q["attend"], "choiceValues": ["yes"]})
    assert r.status_code == 200

    rows = {a.question_id: a for a in db.execute(select(Answer).where(Answer.submission_id == sid)).scalars()}
    assert len(rows) == 3
    assert rows[q["attend"]].choice_values == ["yes"]
    assert rows[q["why_not"]].text_value == "Was travelling"
    assert rows[q["rating"]].number_value == 4.0


def test_answer_keeps_only_the_matching_value_field(client, branching_survey, db):
    q = branching_survey["questions"]
    sid = _start(client, branching_survey["survey_id"])
    _answer(client, sid, {"questionId": q["rating"], "numberValue": 3, "textValue": "ignored", "choiceValues": ["x"]})
    row = db.execute(select(Answer)).scalar_one()
    assert row.number_value == 3.0
    assert row.text_value is None
    assert row.choice_values == []


def test_answer_validation(client, branching_survey):
    q = branching_survey["questions"]
    sid = _start(client, branching_survey["survey_id"])

    r = _answer(client, sid, {"questionId": q["attend"], "choiceValues": ["maybe"]})
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "answers.0.choiceValues"

    r = _answer(client, sid, {"questionId": q["attend"], "choiceValues": ["yes", "no"]})
    assert r.status_code == 422

    r = _answer(client, sid,
                {"questionId": q["attend"], "choiceValues": ["yes"]},
                {"questionId": q["why_not"]})
    assert r.status_code == 422
    assert r.json()["errors"][0]["field"] == "answers.1.textValue"

    assert _answer(client, sid).status_code == 422


def test_invalid_batch_writes_nothing(client, branching_survey, db):
    q = branching_survey["questions"]
    sid = _start(client, branching_survey["survey_id"])
    r = _answer(client, sid,
                {"questionId": q["attend"], "choiceValues": ["yes"]},
                {"questionId": q["rating"]})
    assert r.status_code == 422
    assert db.execute(select(Answer)).scalars().all() == []


def test_answer_for_unknown_question_or_submission(client, branching_survey):
    sid = _start(client, branching_survey["survey_id"])

    assert _answer(client, sid, {"questionId": 9999, "textValue": "x"}).status_code == 404
    assert _answer(client, "does-not-exist", {"questionId": branching_survey["questions"]["why_not"],
                                              "textValue": "x"}).status_code == 404


# ------------------------
# Completion
# ------------------------
def test_complete_then_answers_are_frozen(client, branching_survey, db):
    q = branching_survey["questions"]
    sid = _start(client, branching_survey["survey_id"])
    _answer(client, sid, {"questionId": q["attend"], "choiceValues": ["yes"]})

    r = client.post(f"/api/submissions/{sid}/complete")
    assert r.status_code == 200, r.text
    assert r.json()["nextRoute"] == "/contact"
    assert r.json()["completedAt"]

    r = _answer(client, sid, {"questionId": q["attend"], "choiceValues": ["no"]})
    assert r.status_code == 409
    assert r.json()["detail"] == "Cannot modify answers for a completed submission"
    assert db.execute(select(Answer)).scalar_one().choice_values == ["yes"]


def test_completion_committed_mid_write_discards_answers(client, branching_survey, db, TestingSessionLocal, monkeypatch):
    q = branching_survey["questions"]
    sid = _start(client, branching_survey["survey_id"])
    load_tree = submissions.load_survey_tree

    # another request completes the submission after the open check has passed
    def complete_elsewhere(session, survey_id):
        other = TestingSessionLocal()
        try:
            complete_submission(other, sid)
        finally:
            other.close()
        return load_tree(session, survey_id)

    monkeypatch.setattr(submissions, "load_survey_tree", complete_elsewhere)
    r = _answer(client, sid, {"questionId": q["attend"], "choiceValues": ["yes"]})
    assert r.status_code == 409
    assert r.json()["detail"] == "Cannot modify answers for a completed submission"

    assert db.execute(select(Answer)).scalars().all() == []
    assert db.get(Submission, sid).completed_at is not None


def test_complete_twice_is_rejected(client, branching_survey):
    sid = _start(client, branching_survey["survey_id"])
    assert client.post(f"/api/submissions/{sid}/complete").status_code == 200
    again = client.post(f"/api/submissions/{sid}/complete")
    assert again.status_code == 409
    assert again.json()["detail"] == "Submission already completed"


def test_complete_unknown_submission(client):
    assert client.post("/api/submissions/nope/complete").status_code == 404


# ------------------------
# Leaving a section
# ------------------------
def test_next_follows_stored_answers(client, branching_survey):
    q = branching_survey["questions"]
    sections = branching_survey["sections"]
    sid = _start(client, branching_survey["survey_id"])

    _answer(client, sid, {"questionId": q["route"], "choiceValues": ["continue"]})
    r = client.post(f"/api/submissions/{sid}/next", json={"sectionId": sections["intro"]})
    assert r.status_code == 200, r.text
    assert r.json() == {"action": "NEXT_SECTION", "targetSectionId": sections["middle"],
                        "skipped": False, "completed": False}

    _answer(client, sid, {"questionId": q["route"], "choiceValues": ["details"]})
    r = client.post(f"/api/submissions/{sid}/next", json={"sectionId": sections["intro"]})
    assert r.json()["action"] == "JUMP_TO_SECTION"
    assert r.json()["targetSectionId"] == sections["details"]


def test_skip_to_end_completes_submission(client, branching_survey, db):
    q = branching_survey["questions"]
    sid = _start(client, branching_survey["survey_id"])
    _answer(client, sid, {"questionId": q["route"], "choiceValues": ["finish"]})

    r = client.post(f"/api/submissions/{sid}/next", json={"sectionId": branching_survey["sections"]["intro"]})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["action"] == "END"
    assert body["skipped"] is True
    assert body["completed"] is True
    assert body["nextRoute"] == "/contact"
    assert db.get(Submission, sid).completed_at is not None

    assert _answer(client, sid, {"questionId": q["rating"], "numberValue": 5}).status_code == 409


def test_leaving_last_section_completes(client, branching_survey):
    sid = _start(client, branching_survey["survey_id"])
    r = client.post(f"/api/submissions/{sid}/next", json={"sectionId": branching_survey["sections"]["details"]})
    assert r.json()["action"] == "END"
    assert r.json()["skipped"] is False
    assert r.json()["completed"] is True


def test_next_with_unknown_section(client, branching_survey):
    sid = _start(client, branching_survey["survey_id"])
    assert client.post(f"/api/submissions/{sid}/next", json={"sectionId": 9999}).status_code == 404
