import enum
import uuid

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Boolean, Float, JSON, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from db import Base


class QuestionType(str, enum.Enum):
    SINGLE = "SINGLE"
    MULTI = "MULTI"
    LIKERT = "LIKERT"
    TEXT = "TEXT"
    LONGTEXT = "LONGTEXT"
    NPS = "NPS"
    NUMBER = "NUMBER"


CHOICE_TYPES = {QuestionType.SINGLE.value, QuestionType.MULTI.value}
TEXT_TYPES = {QuestionType.TEXT.value, QuestionType.LONGTEXT.value}
NUMERIC_TYPES = {QuestionType.LIKERT.value, QuestionType.NPS.value, QuestionType.NUMBER.value}


class BranchAction(str, enum.Enum):
    SHOW_QUESTION = "SHOW_QUESTION"
    SKIP_TO_SECTION = "SKIP_TO_SECTION"
    SKIP_TO_END = "SKIP_TO_END"


def _submission_id() -> str:
    return uuid.uuid4().hex


# ------------------------
# Credentials
# ------------------------
class AdminUser(Base):
    __tablename__ = "admin_users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_login = Column(DateTime(timezone=True), nullable=True)
    refresh_tokens = relationship("RefreshToken", back_populates="admin", cascade="all, delete-orphan")
    sessions = relationship("AdminSession", back_populates="admin", cascade="all, delete-orphan")


class RefreshToken(Base):
    __tablename__ = "refresh_tokens"
    id = Column(Integer, primary_key=True, index=True)
    # sha256 of the raw secret; the raw value only ever lives in the client cookie
    token_hash = Column(String(64), unique=True, index=True, nullable=False)
    admin_id = Column(Integer, ForeignKey("admin_users.id", ondelete="CASCADE"), index=True, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    user_agent = Column(String(512), nullable=True)
    ip = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    admin = relationship("AdminUser", back_populates="refresh_tokens")


class AdminSession(Base):
    __tablename__ = "admin_sessions"
    id = Column(Integer, primary_key=True, index=True)
    token_hash = Column(String(64), unique=True, index=True, nullable=False)
    admin_id = Column(Integer, ForeignKey("admin_users.id", ondelete="CASCADE"), index=True, nullable=False)
    csrf_token = Column(String(64), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    user_agent = Column(String(512), nullable=True)
    ip = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    admin = relationship("AdminUser", back_populates="sessions")


# ------------------------
# Survey tree
# ------------------------
class Survey(Base):
    __tablename__ = "surveys"
    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    sections = relationship(
        "Section", back_populates="survey", cascade="all, delete-orphan",
        order_by="[Section.order, Section.id]",
    )
    submissions = relationship("Submission", back_populates="survey", cascade="all, delete-orphan")


class Section(Base):
    __tablename__ = "sections"
    id = Column(Integer, primary_key=True, index=True)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    title = Column(String(200), nullable=False)
    order = Column(Integer, nullable=False, default=0)
    survey = relationship("Survey", back_populates="sections")
    questions = relationship(
        "Question", back_populates="section", cascade="all, delete-orphan",
        order_by="[Question.order, Question.id]",
    )


class Question(Base):
    __tablename__ = "questions"
    id = Column(Integer, primary_key=True, index=True)
    section_id = Column(Integer, ForeignKey("sections.id", ondelete="CASCADE"), index=True, nullable=False)
    type = Column(String(20), nullable=False)
    prompt = Column(Text, nullable=False)
    help_text = Column(Text, nullable=True)
    required = Column(Boolean, nullable=False, default=False)
    order = Column(Integer, nullable=False, default=0)
    # JSON text: {"questionId": ..., "operator": ..., "value": ...}
    show_if = Column(Text, nullable=True)
    section = relationship("Section", back_populates="questions")
    options = relationship(
        "Option", back_populates="question", cascade="all, delete-orphan",
        order_by="[Option.order, Option.id]", foreign_keys="Option.question_id",
    )
    answers = relationship("Answer", back_populates="question", cascade="all, delete-orphan")


class Option(Base):
    __tablename__ = "options"
    id = Column(Integer, primary_key=True, index=True)
    question_id = Column(Integer, ForeignKey("questions.id", ondelete="CASCADE"), index=True, nullable=False)
    label = Column(String(200), nullable=False)
    value = Column(String(200), nullable=False)
    order = Column(Integer, nullable=False, default=0)
    # branch metadata lives on the option that triggers it
    branch_action = Column(String(20), nullable=True)
    target_question_id = Column(Integer, ForeignKey("questions.id", ondelete="SET NULL"), nullable=True)
    target_section_id = Column(Integer, ForeignKey("sections.id", ondelete="SET NULL"), nullable=True)
    skip_to_end = Column(Boolean, nullable=False, default=False)
    question = relationship("Question", back_populates="options", foreign_keys=[question_id])


# ------------------------
# Responses
# ------------------------
class Submission(Base):
    __tablename__ = "submissions"
    id = Column(String(32), primary_key=True, default=_submission_id)
    survey_id = Column(Integer, ForeignKey("surveys.id", ondelete="CASCADE"), index=True, nullable=False)
    # grouping tag only, not a key into anything
    event_slug = Column(String(100), index=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    survey = relationship("Survey", back_populates="submissions")
    answers = relationship("Answer", back_populates="submission", cascade="all, delete-orphan")


class Answer(Base):
    __tablename__ = "answers"
    __table_args__ = (UniqueConstraint("submission_id", "question_id", name="uq_answer_submission_question"),)
    id = Column(Integer, primary_key=True, index=True)
    submission_id = Column(String(32), ForeignKey("submissions.id", ondelete="CASCADE"), index=True, nullable=False)
    question_id = Column(Integer, ForeignKey("questions.id", ondelete="CASCADE"), index=True, nullable=False)
    choice_values = Column(JSON, nullable=False, default=list)
    text_value = Column(Text, nullable=True)
    number_value = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    submission = relationship("Submission", back_populates="answers")
    question = relationship("Question", back_populates="answers")


# ------------------------
# Contacts: no foreign key, column or relationship into the response tables
# ------------------------
class Contact(Base):
    __tablename__ = "contacts"
    id = Column(Integer, primary_key=True, index=True)
    event_slug = Column(String(100), index=True, nullable=False)
    name = Column(String(200), nullable=True)
    email = Column(String(255), nullable=True)
    company = Column(String(200), nullable=True)
    role = Column(String(200), nullable=True)
    consent = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True, index=True)
    admin_id = Column(Integer, ForeignKey("admin_users.id", ondelete="SET NULL"), index=True, nullable=True)
    action = Column(String(50), nullable=False)
    entity = Column(String(50), nullable=True)
    entity_id = Column(String(64), nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    admin = relationship("AdminUser")
