"""Submission lifecycle: Open -> Completed.

A submission stays Open until ``complete`` (or a branch that ends the
survey) stamps ``completed_at``; after that its answers are frozen. Answer writes
end with a conditional UPDATE on the submission (``completed_at IS NULL``) in
the same transaction; a completion committed after the opening check makes
that UPDATE match nothing and the answers are rolled back. The write also
takes the database write lock, so a completion started later waits for the
answers to commit first. Row locks (``FOR UPDATE``) add nothing on SQLite.
"""
import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from branching import AnswerValue, build_tree, next_directive, NavAction
from errors import NotFound, StateConflict, ValidationFailure
from models import Answer, Submission, Survey, CHOICE_TYPES, NUMERIC_TYPES, TEXT_TYPES
from security import now_utc
from surveys import load_survey_tree

logger = logging.getLogger(__name__)


def create_submission(db: Session, survey_id: int, event_slug: str) -> Submission:
    """Open a new submission. Identical inputs always yield distinct submissions."""
    survey = db.get(Survey, survey_id)
    if survey is None:
        raise NotFound("Survey not found")
    if not survey.is_active:
        raise StateConflict("Survey is not currently active")
    sub = Submission(survey_id=survey_id, event_slug=event_slug)
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return sub


def _lock_open_submission(db: Session, submission_id: str) -> Submission:
    sub = db.execute(
        select(Submission).where(Submission.id == submission_id).with_for_update()
    ).scalar_one_or_none()
    if sub is None:
        raise NotFound("Submission not found")
    if sub.completed_at is not None:
        raise StateConflict("Cannot modify answers for a completed submission")
    return sub


def _claim_open(db: Session, submission_id: str) -> None:
    # no-op write that only matches while the submission is still open
    result = db.execute(
        update(Submission)
        .where(Submission.id == submission_id, Submission.completed_at.is_(None))
        .values(id=Submission.id)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StateConflict("Cannot modify answers for a completed submission")


def _project_answer(index: int, question, payload) -> dict:
    """Keep only the value field that matches the question type."""
    field_prefix = f"answers.{index}"
    if question.type in CHOICE_TYPES:
        values = list(payload.choice_values or [])
        allowed = {o.value for o in question.options}
        unknown = [v for v in values if v not in allowed]
        if unknown:
            raise ValidationFailure.for_field(f"{field_prefix}.choiceValues", f"Unknown option value(s): {unknown}")
        if question.type == "SINGLE" and len(values) > 1:
            raise ValidationFailure.for_field(f"{field_prefix}.choiceValues", "Single-choice questions take one value")
        return {"choice_values": values, "text_value": None, "number_value": None}
    if question.type in TEXT_TYPES:
        if payload.text_value is None:
            raise ValidationFailure.for_field(f"{field_prefix}.textValue", "Field required for this question type")
        return {"choice_values": [], "text_value": payload.text_value, "number_value": None}
    if question.type in NUMERIC_TYPES:
        if payload.number_value is None:
            raise ValidationFailure.for_field(f"{field_prefix}.numberValue", "Field required for this question type")
        return {"choice_values": [], "text_value": None, "number_value": payload.number_value}
    raise ValidationFailure.for_field(f"{field_prefix}.questionId", f"Unsupported question type {question.type}")


def submit_answers(db: Session, submission_id: str, answers: list) -> int:
    """Upsert answers keyed by (submission, question); last write wins per question.

    Raises:
        NotFound: unknown submission or a question outside the submission's survey.
        StateConflict: the submission is already completed.
        ValidationFailure: an answer does not fit its question.
    """
    try:
        sub = _lock_open_submission(db, submission_id)
        survey = load_survey_tree(db, sub.survey_id)
        questions = {q.id: q for s in survey.sections for q in s.questions}

        projected = {}
        for i, a in enumerate(answers):
            question = questions.get(a.question_id)
            if question is None:
                raise NotFound(f"Question {a.question_id} not found in this survey")
            projected[a.question_id] = _project_answer(i, question, a)

        existing = {
            row.question_id: row
            for row in db.execute(
                select(Answer).where(Answer.submission_id == sub.id, Answer.question_id.in_(list(projected)))
            ).scalars()
        }
        for question_id, values in projected.items():
            row = existing.get(question_id)
            if row is None:
                db.add(Answer(submission_id=sub.id, question_id=question_id, **values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
        db.flush()
        _claim_open(db, sub.id)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return len(projected)


def complete_submission(db: Session, submission_id: str) -> Submission:
    """Mark a submission completed. Completing twice is a caller error.

    Raises:
        NotFound: unknown submission.
        StateConflict: already completed.
    """
    sub = db.get(Submission, submission_id)
    if sub is None:
        raise NotFound("Submission not found")
    result = db.execute(
        update(Submission)
        .where(Submission.id == submission_id, Submission.completed_at.is_(None))
        .values(completed_at=now_utc())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise StateConflict("Submission already completed")
    db.commit()
    db.refresh(sub)
    logger.info("Submission %s completed", sub.id)
    return sub


def stored_answers(db: Session, submission_id: str) -> dict:
    rows = db.execute(select(Answer).where(Answer.submission_id == submission_id)).scalars().all()
    return {row.question_id: AnswerValue.from_row(row) for row in rows}


def advance(db: Session, submission_id: str, section_id: int) -> dict:
    """Evaluate the branch directive for leaving ``section_id`` using stored answers.

    When the directive ends the survey the submission is completed here, so
    later sections never need answers.
    """
    sub = db.get(Submission, submission_id)
    if sub is None:
        raise NotFound("Submission not found")
    if sub.completed_at is not None:
        raise StateConflict("Submission already completed")

    tree = build_tree(load_survey_tree(db, sub.survey_id))
    try:
        directive = next_directive(tree, section_id, stored_answers(db, sub.id))
    except KeyError:
        raise NotFound("Section not found in this survey")

    out = directive.as_dict()
    out["completed"] = False
    if directive.action is NavAction.END:
        complete_submission(db, sub.id)
        out["completed"] = True
        out["nextRoute"] = "/contact"
    return out


def submission_out(sub: Submission) -> dict:
    return {
        "id": sub.id,
        "surveyId": sub.survey_id,
        "eventSlug": sub.event_slug,
        "createdAt": sub.created_at,
        "completedAt": sub.completed_at,
    }
