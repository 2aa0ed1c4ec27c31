from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, List, Optional, Literal

from models import QuestionType, BranchAction


class CamelModel(BaseModel):
    """Snake_case attributes, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ------------------------
# Auth
# ------------------------
# bcrypt only reads the first 72 bytes of a password
MAX_PASSWORD_BYTES = 72


def _fits_bcrypt(password: str) -> str:
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {MAX_PASSWORD_BYTES} bytes")
    return password


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, v: str) -> str:
        return _fits_bcrypt(v)


class SetupRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=8, description="Minimum 8 characters, at most 72 bytes")

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, v: str) -> str:
        return _fits_bcrypt(v)


class AdminCreate(SetupRequest):
    pass


# ------------------------
# Survey authoring
# ------------------------
class SurveyCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    is_active: bool = False


class SurveyUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class SectionCreate(CamelModel):
    survey_id: int
    title: str = Field(..., min_length=1, max_length=200)
    order: int = Field(0, ge=0)


class SectionUpdate(CamelModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    order: Optional[int] = Field(None, ge=0)


class ShowIfIn(CamelModel):
    question_id: int
    operator: Literal["equals", "not_equals", "contains", "greater_than", "less_than"]
    value: Any = None


class OptionIn(CamelModel):
    label: str = Field(..., min_length=1, max_length=200)
    value: str = Field(..., min_length=1, max_length=200)
    order: int = Field(0, ge=0)
    branch_action: Optional[BranchAction] = None
    target_question_id: Optional[int] = None
    target_section_id: Optional[int] = None
    skip_to_end: bool = False


class OptionCreate(OptionIn):
    question_id: int


class OptionUpdate(CamelModel):
    label: Optional[str] = Field(None, min_length=1, max_length=200)
    value: Optional[str] = Field(None, min_length=1, max_length=200)
    order: Optional[int] = Field(None, ge=0)
    branch_action: Optional[BranchAction] = None
    target_question_id: Optional[int] = None
    target_section_id: Optional[int] = None
    skip_to_end: Optional[bool] = None


class QuestionCreate(CamelModel):
    section_id: int
    type: QuestionType
    prompt: str = Field(..., min_length=1)
    help_text: Optional[str] = None
    required: bool = False
    order: int = Field(0, ge=0)
    show_if: Optional[ShowIfIn] = None
    options: List[OptionIn] = []


class QuestionUpdate(CamelModel):
    type: Optional[QuestionType] = None
    prompt: Optional[str] = Field(None, min_length=1)
    help_text: Optional[str] = None
    required: Optional[bool] = None
    order: Optional[int] = Field(None, ge=0)
    show_if: Optional[ShowIfIn] = None


class ImportQuestion(CamelModel):
    type: QuestionType
    prompt: str = Field(..., min_length=1)
    required: bool = False
    help_text: Optional[str] = None
    options: Optional[List[str]] = None


class ImportSection(CamelModel):
    title: str = Field(..., min_length=1)
    questions: List[ImportQuestion]


class ImportSurvey(CamelModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    sections: List[ImportSection]


# ------------------------
# Public survey flow
# ------------------------
class SubmissionCreate(CamelModel):
    survey_id: int
    event_slug: str = Field(..., min_length=1, max_length=100)


class AnswerIn(CamelModel):
    question_id: int
    choice_values: Optional[List[str]] = None
    text_value: Optional[str] = None
    number_value: Optional[float] = None


class AnswersSubmit(CamelModel):
    answers: List[AnswerIn] = Field(..., min_length=1)


class AdvanceRequest(CamelModel):
    section_id: int


class EvaluateRequest(CamelModel):
    section_id: int
    answers: List[AnswerIn] = []


# ------------------------
# Contacts
# ------------------------
FORBIDDEN_CONTACT_FIELDS = ("submission_id", "response_id", "answer_id")


class ContactCreate(CamelModel):
    """Opt-in contact capture.

    Closed shape: unknown fields are rejected, and any field naming a
    submission/response/answer is rejected explicitly rather than dropped,
    so a contact can never be stored with a link back to survey answers.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    event_slug: str = Field(..., min_length=1, max_length=100)
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    email: Optional[EmailStr] = None
    company: Optional[str] = Field(None, max_length=200)
    role: Optional[str] = Field(None, max_length=200)
    consent: bool

    submission_id: Any = Field(None, exclude=True)
    response_id: Any = Field(None, exclude=True)
    answer_id: Any = Field(None, exclude=True)

    @field_validator(*FORBIDDEN_CONTACT_FIELDS, mode="before")
    @classmethod
    def _reject_response_link(cls, v):
        raise ValueError("contact records cannot reference a survey response")
