import json
import re
from datetime import datetime
from typing import Optional

import pandas as pd
from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from errors import NotFound
from models import (
    Answer, Contact, Option, Question, Section, Submission, Survey,
    CHOICE_TYPES, NUMERIC_TYPES, TEXT_TYPES,
)
from security import as_utc

_TREE_OPTIONS = (
    selectinload(Survey.sections).selectinload(Section.questions).selectinload(Question.options),
)


def load_survey_tree(db: Session, survey_id: int) -> Survey:
    """Fetch a survey with sections, questions and options eagerly loaded.

    Raises:
        NotFound: if the survey does not exist.
    """
    survey = db.execute(
        select(Survey).where(Survey.id == survey_id).options(*_TREE_OPTIONS)
    ).scalar_one_or_none()
    if survey is None:
        raise NotFound("Survey not found")
    return survey


def find_active(db: Session) -> Survey:
    """Return "the" active survey; the lowest id wins if several are flagged."""
    survey = db.execute(
        select(Survey).where(Survey.is_active.is_(True)).order_by(Survey.id).limit(1).options(*_TREE_OPTIONS)
    ).scalar_one_or_none()
    if survey is None:
        raise NotFound("No active survey found")
    return survey


# ------------------------
# Serialization
# ------------------------
def option_out(o: Option) -> dict:
    return {
        "id": o.id,
        "questionId": o.question_id,
        "label": o.label,
        "value": o.value,
        "order": o.order,
        "branchAction": o.branch_action,
        "targetQuestionId": o.target_question_id,
        "targetSectionId": o.target_section_id,
        "skipToEnd": bool(o.skip_to_end),
    }


def question_out(q: Question) -> dict:
    return {
        "id": q.id,
        "sectionId": q.section_id,
        "type": q.type,
        "prompt": q.prompt,
        "helpText": q.help_text,
        "required": bool(q.required),
        "order": q.order,
        "showIf": q.show_if,
        "options": [option_out(o) for o in q.options],
    }


def section_out(s: Section) -> dict:
    return {
        "id": s.id,
        "surveyId": s.survey_id,
        "title": s.title,
        "order": s.order,
        "questions": [question_out(q) for q in s.questions],
    }


def survey_out(s: Survey, with_tree: bool = True) -> dict:
    out = {
        "id": s.id,
        "title": s.title,
        "description": s.description,
        "isActive": bool(s.is_active),
        "createdAt": s.created_at,
        "updatedAt": s.updated_at,
    }
    if with_tree:
        out["sections"] = [section_out(sec) for sec in s.sections]
    return out


def dump_show_if(show_if) -> Optional[str]:
    """Serialize a validated ``ShowIfIn`` into the stored JSON text."""
    if show_if is None:
        return None
    return json.dumps({"questionId": show_if.question_id, "operator": show_if.operator, "value": show_if.value})


# ------------------------
# Import
# ------------------------
def slugify_option(label: str) -> str:
    return re.sub(r"\s+", "-", label.strip().lower())


def import_survey(db: Session, payload) -> Survey:
    """Create an inactive survey from an ``ImportSurvey`` payload (caller commits)."""
    survey = Survey(title=payload.title, description=payload.description, is_active=False)
    for s_idx, sec in enumerate(payload.sections, start=1):
        section = Section(title=sec.title, order=s_idx)
        for q_idx, q in enumerate(sec.questions, start=1):
            question = Question(
                type=q.type.value,
                prompt=q.prompt,
                help_text=q.help_text,
                required=q.required,
                order=q_idx,
            )
            for o_idx, label in enumerate(q.options or [], start=1):
                question.options.append(Option(label=label, value=slugify_option(label), order=o_idx))
            section.questions.append(question)
        survey.sections.append(section)
    db.add(survey)
    db.flush()
    return survey


# ------------------------
# Metrics
# ------------------------
def metrics_overview(
    db: Session,
    survey_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> dict:
    survey = db.get(Survey, survey_id)
    if survey is None:
        raise NotFound("Survey not found")

    stmt = select(Submission.created_at, Submission.completed_at).where(Submission.survey_id == survey_id)
    if start is not None:
        stmt = stmt.where(Submission.created_at >= start)
    if end is not None:
        stmt = stmt.where(Submission.created_at <= end)
    rows = db.execute(stmt).all()

    total = len(rows)
    durations = [
        (as_utc(done) - as_utc(created)).total_seconds()
        for created, done in rows if done is not None and created is not None
    ]
    completed = sum(1 for _, done in rows if done is not None)
    question_count = db.execute(
        select(func.count()).select_from(Question).join(Section).where(Section.survey_id == survey_id)
    ).scalar_one()

    return {
        "title": survey.title,
        "totalSubmissions": total,
        "completedSubmissions": completed,
        "completionRate": round(completed / total * 100) if total else 0,
        "avgCompletionTimeSeconds": round(sum(durations) / len(durations)) if durations else 0,
        "questionCount": question_count,
    }


def question_metrics(db: Session, question_id: int) -> dict:
    question = db.get(Question, question_id)
    if question is None:
        raise NotFound("Question not found")
    answers = db.execute(select(Answer).where(Answer.question_id == question_id)).scalars().all()

    analysis = {
        "questionId": question_id,
        "questionType": question.type,
        "totalResponses": len(answers),
    }

    if question.type in CHOICE_TYPES:
        counts: dict[str, int] = {}
        for a in answers:
            for value in a.choice_values or []:
                counts[value] = counts.get(value, 0) + 1
        analysis["distribution"] = counts

    elif question.type in NUMERIC_TYPES:
        numbers = pd.Series([a.number_value for a in answers if a.number_value is not None], dtype="float64")
        if not numbers.empty:
            analysis["average"] = float(numbers.mean())
            analysis["median"] = float(numbers.median())
            analysis["min"] = float(numbers.min())
            analysis["max"] = float(numbers.max())
            analysis["distribution"] = {_number_key(k): int(v) for k, v in numbers.value_counts().sort_index().items()}

    elif question.type in TEXT_TYPES:
        texts = [a.text_value for a in answers if a.text_value]
        analysis["responses"] = texts
        analysis["wordCount"] = sum(len(t.split()) for t in texts)

    return analysis


def _number_key(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


# ------------------------
# CSV export
# ------------------------
def _answer_cell(a: Answer):
    if a.choice_values:
        return ", ".join(a.choice_values)
    if a.text_value:
        return a.text_value
    if a.number_value is not None:
        return a.number_value
    return None


def responses_csv(db: Session, survey_id: int) -> bytes:
    """One row per submission, one column per question prompt (first 50 chars)."""
    survey = load_survey_tree(db, survey_id)
    prompts = [q.prompt[:50] for s in survey.sections for q in s.questions]
    submissions = db.execute(
        select(Submission)
        .where(Submission.survey_id == survey_id)
        .options(selectinload(Submission.answers).selectinload(Answer.question))
        .order_by(Submission.created_at, Submission.id)
    ).scalars().all()

    rows = []
    for sub in submissions:
        row = {
            "submission_id": sub.id,
            "event_slug": sub.event_slug,
            "created_at": sub.created_at.isoformat() if sub.created_at else "",
            "completed_at": sub.completed_at.isoformat() if sub.completed_at else "",
        }
        for a in sub.answers:
            row[a.question.prompt[:50]] = _answer_cell(a)
        rows.append(row)

    columns = ["submission_id", "event_slug", "created_at", "completed_at"]
    columns += [p for p in dict.fromkeys(prompts) if p not in columns]
    df = pd.DataFrame(rows, columns=columns)
    return df.to_csv(index=False).encode("utf-8")


def contacts_csv(db: Session, event_slug: str) -> bytes:
    contacts = db.execute(
        select(Contact).where(Contact.event_slug == event_slug).order_by(Contact.created_at.desc(), Contact.id.desc())
    ).scalars().all()
    df = pd.DataFrame([{
        "contact_id": c.id,
        "event_slug": c.event_slug,
        "name": c.name or "",
        "email": c.email or "",
        "company": c.company or "",
        "role": c.role or "",
        "consent": bool(c.consent),
        "created_at": c.created_at.isoformat() if c.created_at else "",
    } for c in contacts], columns=["contact_id", "event_slug", "name", "email", "company", "role", "consent", "created_at"])
    return df.to_csv(index=False).encode("utf-8")
