"""Survey tree snapshot and the conditional-flow evaluator.

The ORM tree is copied into frozen dataclasses once per request and each
question's stored ``show_if`` JSON is parsed at that point into one of:

* ``None``       no condition, always visible
* ``MALFORMED``  unparseable or unknown operator, treated as satisfied
* ``ShowIf``     a referenced question id, an operator and a comparison value

Visibility fails closed when the referenced question has no answer and fails
open when the stored condition itself is malformed. Everything here is a pure
function of (tree, answers); no clock, no randomness.
"""
import enum
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from models import BranchAction, CHOICE_TYPES, Survey

logger = logging.getLogger(__name__)


class Operator(str, enum.Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class _Malformed:
    def __repr__(self):
        return "MALFORMED"


MALFORMED = _Malformed()


@dataclass(frozen=True)
class ShowIf:
    question_id: int
    operator: Operator
    value: Any


Condition = Union[None, _Malformed, ShowIf]


@dataclass(frozen=True)
class AnswerValue:
    choice_values: tuple = ()
    text_value: Optional[str] = None
    number_value: Optional[float] = None

    @classmethod
    def from_row(cls, row) -> "AnswerValue":
        return cls(
            choice_values=tuple(row.choice_values or ()),
            text_value=row.text_value,
            number_value=row.number_value,
        )


@dataclass(frozen=True)
class OptionNode:
    id: int
    value: str
    branch_action: Optional[str] = None
    target_section_id: Optional[int] = None
    target_question_id: Optional[int] = None
    skip_to_end: bool = False


@dataclass(frozen=True)
class QuestionNode:
    id: int
    type: str
    required: bool = False
    condition: Condition = None
    options: tuple = ()

    def option_for(self, value: str) -> Optional[OptionNode]:
        for opt in self.options:
            if opt.value == value:
                return opt
        return None


@dataclass(frozen=True)
class SectionNode:
    id: int
    questions: tuple = ()


@dataclass(frozen=True)
class SurveyTree:
    id: int
    sections: tuple = ()

    def section_index(self, section_id: int) -> int:
        for i, s in enumerate(self.sections):
            if s.id == section_id:
                return i
        return -1

    def question_ids(self) -> set:
        return {q.id for s in self.sections for q in s.questions}

    def question(self, question_id: int) -> Optional[QuestionNode]:
        for s in self.sections:
            for q in s.questions:
                if q.id == question_id:
                    return q
        return None


class NavAction(str, enum.Enum):
    NEXT_SECTION = "NEXT_SECTION"
    JUMP_TO_SECTION = "JUMP_TO_SECTION"
    END = "END"


@dataclass(frozen=True)
class Directive:
    action: NavAction
    target_section_id: Optional[int] = None
    # True when an option's metadata ended the survey early
    skipped: bool = False

    def as_dict(self) -> dict:
        return {
            "action": self.action.value,
            "targetSectionId": self.target_section_id,
            "skipped": self.skipped,
        }


# ------------------------
# Parsing
# ------------------------
def parse_show_if(raw: Any) -> Condition:
    """Parse a stored ``show_if`` payload (JSON text or an already-decoded dict)."""
    if raw is None or raw == "":
        return None
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(data, dict):
            return MALFORMED
        question_id = data["questionId"]
        if isinstance(question_id, bool):
            return MALFORMED
        return ShowIf(
            question_id=int(question_id),
            operator=Operator(data["operator"]),
            value=data.get("value"),
        )
    except (ValueError, KeyError, TypeError):
        logger.debug("Malformed showIf payload: %r", raw)
        return MALFORMED


def build_tree(survey: Survey) -> SurveyTree:
    """Snapshot an ORM survey (sections/questions/options already ordered) into a tree."""
    sections = []
    for s in survey.sections:
        questions = []
        for q in s.questions:
            options = tuple(
                OptionNode(
                    id=o.id,
                    value=o.value,
                    branch_action=o.branch_action,
                    target_section_id=o.target_section_id,
                    target_question_id=o.target_question_id,
                    skip_to_end=bool(o.skip_to_end),
                )
                for o in q.options
            )
            questions.append(QuestionNode(
                id=q.id,
                type=q.type,
                required=bool(q.required),
                condition=parse_show_if(q.show_if),
                options=options,
            ))
        sections.append(SectionNode(id=s.id, questions=tuple(questions)))
    return SurveyTree(id=survey.id, sections=tuple(sections))


# ------------------------
# Visibility
# ------------------------
def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def _equals(answer: AnswerValue, value: Any) -> Optional[bool]:
    """Per-shape equality; None when the answer carries no usable value."""
    if answer.choice_values:
        return str(value) in answer.choice_values
    if answer.text_value is not None:
        return answer.text_value == value
    if answer.number_value is not None:
        expected = _as_number(value)
        return expected is not None and answer.number_value == expected
    return None


def evaluate_condition(condition: ShowIf, answer: AnswerValue) -> bool:
    op = condition.operator
    value = condition.value

    if op is Operator.EQUALS:
        return bool(_equals(answer, value))

    if op is Operator.NOT_EQUALS:
        result = _equals(answer, value)
        return False if result is None else not result

    if op is Operator.CONTAINS:
        needle = str(value)
        if answer.choice_values:
            return any(needle in v for v in answer.choice_values)
        if answer.text_value is not None:
            return needle in answer.text_value
        return False

    if op in (Operator.GREATER_THAN, Operator.LESS_THAN):
        if answer.number_value is None:
            return False
        expected = _as_number(value)
        if expected is None:
            return False
        if op is Operator.GREATER_THAN:
            return answer.number_value > expected
        return answer.number_value < expected

    return True


def is_visible(question: QuestionNode, answers: Mapping[int, AnswerValue]) -> bool:
    condition = question.condition
    if condition is None or condition is MALFORMED:
        return True
    answer = answers.get(condition.question_id)
    if answer is None:
        return False
    return evaluate_condition(condition, answer)


def visible_questions(section: SectionNode, answers: Mapping[int, AnswerValue]) -> list[QuestionNode]:
    return [q for q in section.questions if is_visible(q, answers)]


# ------------------------
# Navigation
# ------------------------
def _first_branch(section: SectionNode, answers: Mapping[int, AnswerValue]) -> Optional[OptionNode]:
    # first match wins, in question order then selection order
    for question in section.questions:
        if question.type not in CHOICE_TYPES:
            continue
        answer = answers.get(question.id)
        if answer is None or not answer.choice_values:
            continue
        for selected in answer.choice_values:
            option = question.option_for(selected)
            if option is None:
                continue
            if option.branch_action == BranchAction.SKIP_TO_END.value or option.skip_to_end:
                return option
            if option.branch_action == BranchAction.SKIP_TO_SECTION.value and option.target_section_id is not None:
                return option
    return None


def next_directive(tree: SurveyTree, section_id: int, answers: Mapping[int, AnswerValue]) -> Directive:
    """Decide where the respondent goes when leaving ``section_id``.

    Raises:
        KeyError: if the section is not part of the tree.
    """
    current = tree.section_index(section_id)
    if current < 0:
        raise KeyError(section_id)
    section = tree.sections[current]

    branch = _first_branch(section, answers)
    if branch is not None:
        if branch.branch_action == BranchAction.SKIP_TO_END.value or branch.skip_to_end:
            return Directive(NavAction.END, skipped=True)
        target = tree.section_index(branch.target_section_id)
        # forward jumps only
        if target > current:
            return Directive(NavAction.JUMP_TO_SECTION, target_section_id=tree.sections[target].id)

    if current + 1 < len(tree.sections):
        return Directive(NavAction.NEXT_SECTION, target_section_id=tree.sections[current + 1].id)
    return Directive(NavAction.END)
