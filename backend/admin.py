import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy import func, select
from sqlalchemy.orm import Session

import audit
from auth import Principal, csrf_protect, require_auth
from db import get_db
from errors import NotFound, ValidationFailure
from models import Option, Question, Section, Submission, Survey, CHOICE_TYPES
from schemas import (
    AdminCreate, ImportSurvey, OptionCreate, OptionUpdate, QuestionCreate, QuestionUpdate,
    SectionCreate, SectionUpdate, SurveyCreate, SurveyUpdate,
)
from security import create_admin_account
from surveys import (
    contacts_csv, dump_show_if, import_survey, load_survey_tree, metrics_overview,
    option_out, question_metrics, question_out, responses_csv, section_out, survey_out,
)

logger = logging.getLogger(__name__)

# CSRF runs before auth so a forged cookie request is refused before anything else looks at it
router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(csrf_protect), Depends(require_auth)],
)


def _get_or_404(db: Session, model, pk, label: str):
    row = db.get(model, pk)
    if row is None:
        raise NotFound(f"{label} not found")
    return row


def _changes(payload, nullable: tuple = (), exclude: set = frozenset()) -> dict:
    """Fields present in a PATCH body. An explicit null only clears nullable columns."""
    data = payload.model_dump(exclude_unset=True, exclude=set(exclude))
    return {k: v for k, v in data.items() if v is not None or k in nullable}


def _check_show_if(db: Session, survey_id: int, show_if, question_id: Optional[int] = None) -> None:
    """A showIf may only reference another question of the same survey."""
    if show_if is None:
        return
    if question_id is not None and show_if.question_id == question_id:
        raise ValidationFailure.for_field("showIf.questionId", "A question cannot depend on itself")
    found = db.execute(
        select(Question.id).join(Section).where(Question.id == show_if.question_id, Section.survey_id == survey_id)
    ).scalar_one_or_none()
    if found is None:
        raise ValidationFailure.for_field("showIf.questionId", "Referenced question is not part of this survey")


def _check_branch_targets(db: Session, survey_id: int, target_section_id, target_question_id, prefix: str = "") -> None:
    if target_section_id is not None:
        found = db.execute(
            select(Section.id).where(Section.id == target_section_id, Section.survey_id == survey_id)
        ).scalar_one_or_none()
        if found is None:
            raise ValidationFailure.for_field(f"{prefix}targetSectionId", "Target section is not part of this survey")
    if target_question_id is not None:
        found = db.execute(
            select(Question.id).join(Section).where(Question.id == target_question_id, Section.survey_id == survey_id)
        ).scalar_one_or_none()
        if found is None:
            raise ValidationFailure.for_field(f"{prefix}targetQuestionId", "Target question is not part of this survey")


# ------------------------
# Admin: surveys
# ------------------------
@router.get("/surveys")
def list_surveys(db: Session = Depends(get_db)):
    """List surveys with submission and question counts (no tree).

    Returns:
        list[dict]: survey fields plus ``submissionCount`` and ``questionCount``.
    """
    submissions = dict(db.execute(
        select(Submission.survey_id, func.count()).group_by(Submission.survey_id)
    ).all())
    questions = dict(db.execute(
        select(Section.survey_id, func.count(Question.id)).join(Question).group_by(Section.survey_id)
    ).all())
    out = []
    for s in db.execute(select(Survey).order_by(Survey.created_at.desc(), Survey.id.desc())).scalars():
        row = survey_out(s, with_tree=False)
        row["submissionCount"] = submissions.get(s.id, 0)
        row["questionCount"] = questions.get(s.id, 0)
        out.append(row)
    return out


@router.get("/surveys/{survey_id}")
def get_survey(survey_id: int, db: Session = Depends(get_db)):
    return survey_out(load_survey_tree(db, survey_id))


@router.post("/surveys", status_code=201)
def create_survey(payload: SurveyCreate, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    survey = Survey(title=payload.title.strip(), description=payload.description, is_active=payload.is_active)
    db.add(survey)
    db.flush()
    audit.record(db, principal.id, "CREATE_SURVEY", "Survey", survey.id, {"title": survey.title})
    db.commit()
    db.refresh(survey)
    return survey_out(survey, with_tree=False)


@router.patch("/surveys/{survey_id}")
def update_survey(
    survey_id: int,
    payload: SurveyUpdate,
    principal: Principal = Depends(require_auth),
    db: Session = Depends(get_db),
):
    """Partially update a survey. Only fields present in the body change.

    Raises:
        NotFound: 404 if survey not found.
    """
    survey = _get_or_404(db, Survey, survey_id, "Survey")
    changes = _changes(payload, nullable=("description",))
    for key, value in changes.items():
        setattr(survey, key, value)
    audit.record(db, principal.id, "UPDATE_SURVEY", "Survey", survey.id, {"fields": sorted(changes)})
    db.commit()
    db.refresh(survey)
    return survey_out(survey, with_tree=False)


@router.delete("/surveys/{survey_id}")
def delete_survey(survey_id: int, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    """Hard-delete a survey with its sections, questions, options and submissions.

    Raises:
        NotFound: 404 if survey not found.
    """
    survey = _get_or_404(db, Survey, survey_id, "Survey")
    audit.record(db, principal.id, "DELETE_SURVEY", "Survey", survey.id, {"title": survey.title})
    db.delete(survey)
    db.commit()
    return {"ok": True}


# ------------------------
# Admin: sections
# ------------------------
@router.post("/sections", status_code=201)
def create_section(payload: SectionCreate, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    _get_or_404(db, Survey, payload.survey_id, "Survey")
    section = Section(survey_id=payload.survey_id, title=payload.title.strip(), order=payload.order)
    db.add(section)
    db.flush()
    audit.record(db, principal.id, "CREATE_SECTION", "Section", section.id, {"surveyId": section.survey_id})
    db.commit()
    db.refresh(section)
    return section_out(section)


@router.patch("/sections/{section_id}")
def update_section(
    section_id: int,
    payload: SectionUpdate,
    principal: Principal = Depends(require_auth),
    db: Session = Depends(get_db),
):
    section = _get_or_404(db, Section, section_id, "Section")
    changes = _changes(payload)
    for key, value in changes.items():
        setattr(section, key, value)
    audit.record(db, principal.id, "UPDATE_SECTION", "Section", section.id, {"fields": sorted(changes)})
    db.commit()
    db.refresh(section)
    return section_out(section)


@router.delete("/sections/{section_id}")
def delete_section(section_id: int, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    section = _get_or_404(db, Section, section_id, "Section")
    audit.record(db, principal.id, "DELETE_SECTION", "Section", section.id, {"surveyId": section.survey_id})
    db.delete(section)
    db.commit()
    return {"ok": True}


# ------------------------
# Admin: questions
# ------------------------
@router.post("/questions", status_code=201)
def create_question(payload: QuestionCreate, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    """Create a question (and its options) inside a section.

    Args:
        payload (QuestionCreate): section, type, prompt, optional showIf and options.

    Returns:
        dict: the created question with its options.

    Raises:
        NotFound: 404 if the section does not exist.
        ValidationFailure: 422 if showIf or a branch target points outside the survey,
            or options are given for a non-choice question.
    """
    section = _get_or_404(db, Section, payload.section_id, "Section")
    if payload.options and payload.type.value not in CHOICE_TYPES:
        raise ValidationFailure.for_field("options", "Only SINGLE and MULTI questions take options")
    _check_show_if(db, section.survey_id, payload.show_if)
    for i, o in enumerate(payload.options):
        _check_branch_targets(db, section.survey_id, o.target_section_id, o.target_question_id, f"options.{i}.")

    question = Question(
        section_id=section.id,
        type=payload.type.value,
        prompt=payload.prompt,
        help_text=payload.help_text,
        required=payload.required,
        order=payload.order,
        show_if=dump_show_if(payload.show_if),
    )
    for o in payload.options:
        question.options.append(Option(
            label=o.label,
            value=o.value,
            order=o.order,
            branch_action=o.branch_action.value if o.branch_action else None,
            target_question_id=o.target_question_id,
            target_section_id=o.target_section_id,
            skip_to_end=o.skip_to_end,
        ))
    db.add(question)
    db.flush()
    audit.record(db, principal.id, "CREATE_QUESTION", "Question", question.id, {"sectionId": section.id})
    db.commit()
    db.refresh(question)
    return question_out(question)


@router.patch("/questions/{question_id}")
def update_question(
    question_id: int,
    payload: QuestionUpdate,
    principal: Principal = Depends(require_auth),
    db: Session = Depends(get_db),
):
    """Partially update a question. An explicit ``showIf: null`` clears the condition."""
    question = _get_or_404(db, Question, question_id, "Question")
    survey_id = question.section.survey_id
    changes = _changes(payload, nullable=("help_text",), exclude={"show_if"})
    if "type" in changes:
        changes["type"] = payload.type.value
    if "show_if" in payload.model_fields_set:
        _check_show_if(db, survey_id, payload.show_if, question_id=question.id)
        question.show_if = dump_show_if(payload.show_if)
    for key, value in changes.items():
        setattr(question, key, value)
    fields = sorted(set(changes) | ({"show_if"} & payload.model_fields_set))
    audit.record(db, principal.id, "UPDATE_QUESTION", "Question", question.id, {"fields": fields})
    db.commit()
    db.refresh(question)
    return question_out(question)


@router.delete("/questions/{question_id}")
def delete_question(question_id: int, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    question = _get_or_404(db, Question, question_id, "Question")
    audit.record(db, principal.id, "DELETE_QUESTION", "Question", question.id, {"sectionId": question.section_id})
    db.delete(question)
    db.commit()
    return {"ok": True}


# ------------------------
# Admin: options (carry branch metadata)
# ------------------------
@router.post("/options", status_code=201)
def create_option(payload: OptionCreate, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    question = _get_or_404(db, Question, payload.question_id, "Question")
    if question.type not in CHOICE_TYPES:
        raise ValidationFailure.for_field("questionId", "Only SINGLE and MULTI questions take options")
    _check_branch_targets(db, question.section.survey_id, payload.target_section_id, payload.target_question_id)
    option = Option(
        question_id=question.id,
        label=payload.label,
        value=payload.value,
        order=payload.order,
        branch_action=payload.branch_action.value if payload.branch_action else None,
        target_question_id=payload.target_question_id,
        target_section_id=payload.target_section_id,
        skip_to_end=payload.skip_to_end,
    )
    db.add(option)
    db.flush()
    audit.record(db, principal.id, "CREATE_OPTION", "Option", option.id, {"questionId": question.id})
    db.commit()
    db.refresh(option)
    return option_out(option)


@router.patch("/options/{option_id}")
def update_option(
    option_id: int,
    payload: OptionUpdate,
    principal: Principal = Depends(require_auth),
    db: Session = Depends(get_db),
):
    option = _get_or_404(db, Option, option_id, "Option")
    changes = _changes(payload, nullable=("branch_action", "target_question_id", "target_section_id"))
    if changes.get("branch_action") is not None:
        changes["branch_action"] = payload.branch_action.value
    _check_branch_targets(
        db, option.question.section.survey_id,
        changes.get("target_section_id"), changes.get("target_question_id"),
    )
    for key, value in changes.items():
        setattr(option, key, value)
    audit.record(db, principal.id, "UPDATE_OPTION", "Option", option.id, {"fields": sorted(changes)})
    db.commit()
    db.refresh(option)
    return option_out(option)


@router.delete("/options/{option_id}")
def delete_option(option_id: int, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    option = _get_or_404(db, Option, option_id, "Option")
    audit.record(db, principal.id, "DELETE_OPTION", "Option", option.id, {"questionId": option.question_id})
    db.delete(option)
    db.commit()
    return {"ok": True}


# ------------------------
# Admin: accounts
# ------------------------
@router.post("/admins", status_code=201)
def create_admin(payload: AdminCreate, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    """Create another admin account; the creator is recorded in the audit log.

    Raises:
        StateConflict: 409 if the email is already registered.
    """
    return create_admin_account(db, payload.email, payload.password, created_by=principal.email or str(principal.id))


# ------------------------
# Admin: import
# ------------------------
@router.post("/import", status_code=201)
def import_survey_json(payload: ImportSurvey, principal: Principal = Depends(require_auth), db: Session = Depends(get_db)):
    """Create a survey from a JSON document. Imported surveys start inactive.

    Option values are derived from labels (lowercased, whitespace to '-').
    """
    try:
        survey = import_survey(db, payload)
        audit.record(db, principal.id, "IMPORT_SURVEY", "Survey", survey.id,
                     {"title": survey.title, "sections": len(payload.sections)})
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Survey %s imported by admin %s", survey.id, principal.id)
    return survey_out(load_survey_tree(db, survey.id))


# ------------------------
# Admin: analytics
# ------------------------
@router.get("/metrics/overview")
def overview(
    survey_id: int = Query(..., alias="surveyId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    db: Session = Depends(get_db),
):
    """Submission totals, completion rate and average completion time.

    Args:
        survey_id (int): survey to summarize.
        start_date (datetime|None): only submissions created at or after this instant.
        end_date (datetime|None): only submissions created at or before this instant.
    """
    return metrics_overview(db, survey_id, start_date, end_date)


@router.get("/metrics/question/{question_id}")
def question_analysis(question_id: int, db: Session = Depends(get_db)):
    return question_metrics(db, question_id)


# ------------------------
# Admin: CSV export
# ------------------------
@router.get("/export/responses.csv")
def export_responses(
    survey_id: int = Query(..., alias="surveyId"),
    principal: Principal = Depends(require_auth),
    db: Session = Depends(get_db),
):
    """Export one row per submission with one column per question prompt.

    Returns:
        Response: text/csv attachment ``survey_<id>_responses.csv``.
    """
    csv_bytes = responses_csv(db, survey_id)
    audit.record(db, principal.id, "EXPORT_RESPONSES", "Survey", survey_id)
    db.commit()
    return Response(content=csv_bytes, media_type="text/csv",
                    headers={"Content-Disposition": f"attachment; filename=survey_{survey_id}_responses.csv"})


@router.get("/export/contacts.csv")
def export_contacts(
    event_slug: str = Query(..., alias="eventSlug", min_length=1),
    principal: Principal = Depends(require_auth),
    db: Session = Depends(get_db),
):
    """Export contacts for an event. The file has no column linking to responses."""
    csv_bytes = contacts_csv(db, event_slug)
    audit.record(db, principal.id, "EXPORT_CONTACTS", "Contact", None, {"eventSlug": event_slug})
    db.commit()
    return Response(content=csv_bytes, media_type="text/csv",
                    headers={"Content-Disposition": "attachment; filename=contacts.csv"})


# ------------------------
# Admin: audit log
# ------------------------
@router.get("/audit")
def audit_log(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    return audit.list_entries(db, limit=limit, offset=offset)
