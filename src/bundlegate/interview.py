from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Callable, Mapping, Sequence

from .evidence import EvidenceStore
from .models import (
    ChecklistDimension,
    ConstraintStrength,
    Determination,
    EvidenceCategory,
    InterviewRound,
    Question,
)
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

INTERVIEW_SOURCE = "interview"

_NOT_REQUIRED_RE = re.compile(r"^\s*(not required|not needed|n/?a|not applicable|skip)\s*\.?\s*$", re.IGNORECASE)

# Only deliverables answers plan new work; the rest are decisions or descriptions of existing work.
_ANSWER_CATEGORY: dict[ChecklistDimension, tuple[EvidenceCategory, ConstraintStrength | None]] = {
    ChecklistDimension.DELIVERABLES: (EvidenceCategory.REQUIREMENT, None),
    ChecklistDimension.SUCCESS_CRITERIA: (EvidenceCategory.GOAL, None),
    ChecklistDimension.CONSTRAINTS: (EvidenceCategory.CONSTRAINT, ConstraintStrength.HARD),
    ChecklistDimension.INTERFACES: (EvidenceCategory.TARGET_STATE, None),
    ChecklistDimension.OPERATIONAL_EXPECTATIONS: (EvidenceCategory.CONSTRAINT, ConstraintStrength.SOFT),
    ChecklistDimension.VALIDATION_EXPECTATIONS: (EvidenceCategory.GOAL, None),
    ChecklistDimension.DEPENDENCY_CONTRACTS: (EvidenceCategory.CONSTRAINT, ConstraintStrength.HARD),
    ChecklistDimension.CONTRADICTIONS: (EvidenceCategory.CONSTRAINT, ConstraintStrength.HARD),
    ChecklistDimension.PURPOSE_DEMO_FEASIBILITY: (EvidenceCategory.TARGET_STATE, None),
}


def is_not_required(answer: str) -> bool:
    return bool(_NOT_REQUIRED_RE.match(answer))


def interview_anchor(question: Question) -> str:
    return f"{INTERVIEW_SOURCE}#{question.dimension.value}/{question.id}"


def build_round(
    questions: Sequence[Question],
    settings: RuntimeSettings,
    *,
    round_number: int = 1,
    phrase: Callable[[Question], str] | None = None,
) -> InterviewRound | None:
    """Batch the next unanswered questions, in stable order, into one round.

    A round holds ``settings.round_max`` questions unless fewer remain.
    Returns None when nothing is left to ask.
    """
    pending = [question for question in questions if not question.answered]
    if not pending:
        return None
    batch = pending[: settings.round_max]
    if len(batch) < settings.round_min:
        logger.debug("Round %d holds %d question(s); only that many remain", round_number, len(batch))
    prompts = {question.id: (phrase(question) if phrase is not None else question.text) for question in batch}
    return InterviewRound(round_number=round_number, questions=batch, prompts=prompts)


def resolve(
    store: EvidenceStore,
    questions: Sequence[Question],
    answers: Mapping[str, str | None],
    *,
    clock: Callable[[], datetime] | None = None,
) -> int:
    """Record each answer as interview evidence and return how many were new.

    Answers matching "not required" are recorded as an explicit
    ``not-required`` determination. Blank answers are skipped. Re-sending an
    answer already in the store records nothing and does not count.

    Raises:
        ValueError: If an answer names a question id not in ``questions``.
    """
    by_id = {question.id: question for question in questions}
    unknown = sorted(set(answers) - set(by_id))
    if unknown:
        raise ValueError(f"answers reference unknown question id(s): {', '.join(unknown)}")

    now = (clock or (lambda: datetime.now(UTC)))()
    accepted = 0
    for question_id, raw in answers.items():
        text = (raw or "").strip()
        if not text:
            continue
        question = by_id[question_id]
        category, strength = _ANSWER_CATEGORY[question.dimension]
        if is_not_required(text):
            text, determination = f"Not required: {question.gap}", Determination.NOT_REQUIRED
        else:
            determination = Determination.ANSWERED
        before = len(store)
        item_id = store.record(
            category=category,
            text=text,
            anchor=interview_anchor(question),
            source_ref=INTERVIEW_SOURCE,
            strength=strength,
            resolves=question.id,
            determination=determination,
            recorded_at=now.isoformat(),
        )
        if len(store) > before:
            accepted += 1
            logger.debug("Answer to %s recorded as %s", question_id, item_id)
    logger.info("Recorded %d new answer(s) of %d submitted", accepted, len(answers))
    return accepted
