from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from .canonical import content_digest
from .evidence import EvidenceStore, work_items
from .models import (
    CHECKLIST_ORDER,
    Blocker,
    BlockerStatus,
    ChecklistDimension,
    Determination,
    EvidenceCategory,
    EvidenceItem,
    GapReport,
    Question,
)
from .utils import contract_usage, is_placeholder, normalize_text, observable_clause

logger = logging.getLogger(__name__)

_SUCCESS_RE = re.compile(
    r"\b(success\w*|measur\w*|metric\w*|accept\w*|criteri\w*|at least|at most|within|less than|fewer than)\b|\d+\s*%",
    re.IGNORECASE,
)
_INTERFACE_RE = re.compile(
    r"\b(apis?|cli|commands?|endpoints?|interfaces?|protocols?|schemas?|files?|formats?|inputs?|outputs?|ui|screens?|webhooks?|events?|messages?)\b",
    re.IGNORECASE,
)
_OPERATIONAL_RE = re.compile(
    r"\b(deploy\w*|operat\w*|runtime|logs?|logging|monitor\w*|latency|throughput|performance|availability|uptime|scal\w*|timeouts?|retr(y|ies)|environments?|ci)\b",
    re.IGNORECASE,
)
_VALIDATION_RE = re.compile(
    r"\b(test\w*|verif\w*|validat\w*|assert\w*|checks?|review\w*|acceptance|qa)\b",
    re.IGNORECASE,
)

_SUBSTANTIVE = frozenset(
    {
        EvidenceCategory.GOAL,
        EvidenceCategory.CURRENT_STATE,
        EvidenceCategory.TARGET_STATE,
        EvidenceCategory.REQUIREMENT,
        EvidenceCategory.CONSTRAINT,
        EvidenceCategory.RISK,
    }
)


@dataclass(frozen=True)
class DimensionRule:
    satisfies: Callable[[EvidenceItem], bool]
    related: tuple[EvidenceCategory, ...]
    question: str
    impact: str


def _in(*categories: EvidenceCategory) -> frozenset[EvidenceCategory]:
    return frozenset(categories)


def _matches(categories: frozenset[EvidenceCategory], pattern: re.Pattern[str] | None = None) -> Callable[[EvidenceItem], bool]:
    def predicate(item: EvidenceItem) -> bool:
        if item.category not in categories:
            return False
        return pattern is None or bool(pattern.search(item.text))

    return predicate


def _observable(item: EvidenceItem) -> bool:
    return item.category in {EvidenceCategory.REQUIREMENT, EvidenceCategory.TARGET_STATE} and observable_clause(item.text) is not None


CHECKLIST: dict[ChecklistDimension, DimensionRule] = {
    ChecklistDimension.DELIVERABLES: DimensionRule(
        satisfies=_matches(_in(EvidenceCategory.REQUIREMENT, EvidenceCategory.TARGET_STATE)),
        related=(EvidenceCategory.GOAL, EvidenceCategory.TARGET_STATE, EvidenceCategory.CURRENT_STATE),
        question="Which concrete deliverables must this work produce?",
        impact="Without deliverables there is nothing to decompose into bundles.",
    ),
    ChecklistDimension.SUCCESS_CRITERIA: DimensionRule(
        satisfies=_matches(_in(EvidenceCategory.GOAL, EvidenceCategory.TARGET_STATE), _SUCCESS_RE),
        related=(EvidenceCategory.GOAL, EvidenceCategory.REQUIREMENT),
        question="How will success be measured? Name an observable, checkable criterion.",
        impact="Bundles cannot state validation intent without success criteria.",
    ),
    ChecklistDimension.CONSTRAINTS: DimensionRule(
        satisfies=_matches(_in(EvidenceCategory.CONSTRAINT)),
        related=(EvidenceCategory.REQUIREMENT, EvidenceCategory.NON_GOAL, EvidenceCategory.GOAL),
        question="Which hard or soft constraints (technology, compatibility, policy) apply?",
        impact="Unstated constraints surface late and invalidate bundle estimates.",
    ),
    ChecklistDimension.INTERFACES: DimensionRule(
        satisfies=_matches(_SUBSTANTIVE, _INTERFACE_RE),
        related=(EvidenceCategory.REQUIREMENT, EvidenceCategory.TARGET_STATE),
        question="Which interfaces (APIs, commands, files, events) does the work expose or consume?",
        impact="Contract boundaries between bundles are derived from interfaces.",
    ),
    ChecklistDimension.OPERATIONAL_EXPECTATIONS: DimensionRule(
        satisfies=_matches(_SUBSTANTIVE, _OPERATIONAL_RE),
        related=(EvidenceCategory.CONSTRAINT, EvidenceCategory.REQUIREMENT),
        question="What are the operational expectations (runtime environment, logging, performance)?",
        impact="Operational work is otherwise missing from the size estimates.",
    ),
    ChecklistDimension.VALIDATION_EXPECTATIONS: DimensionRule(
        satisfies=_matches(_SUBSTANTIVE, _VALIDATION_RE),
        related=(EvidenceCategory.REQUIREMENT, EvidenceCategory.GOAL),
        question="How is the change expected to be validated (tests, checks, reviews)?",
        impact="Each bundle must carry a validation intent for its purpose demo.",
    ),
    ChecklistDimension.DEPENDENCY_CONTRACTS: DimensionRule(
        satisfies=lambda item: False,
        related=(EvidenceCategory.REQUIREMENT,),
        question=(
            "Contract {subject} is required but no deliverable provides it. Which system outside this series "
            "supplies it? Answer 'not required' to drop the dependency."
        ),
        impact="A consumed capability with no provider leaves a dangling contract.",
    ),
    ChecklistDimension.CONTRADICTIONS: DimensionRule(
        satisfies=lambda item: False,
        related=(),
        question="The evidence contradicts itself at {subject}. Which statement holds?",
        impact="Contradictory evidence cannot be planned against without a decision.",
    ),
    ChecklistDimension.PURPOSE_DEMO_FEASIBILITY: DimensionRule(
        satisfies=_observable,
        related=(EvidenceCategory.REQUIREMENT, EvidenceCategory.TARGET_STATE),
        question="What observable behaviour would prove the change is real (what does it return, print, or emit)?",
        impact="Every bundle needs a purpose demo with an observable effect.",
    ),
}

_UNCONSUMED_CONTRACT = DimensionRule(
    satisfies=lambda item: False,
    related=(EvidenceCategory.REQUIREMENT,),
    question=(
        "Contract {subject} is provided but nothing in this series consumes it. Who uses it outside the series? "
        "Answer 'not required' to drop the contract."
    ),
    impact="A provided capability with no consumer and no outside user leaves a dangling contract.",
)

_MAX_RELATED_REFS = 3

_MISSING_PROVIDER = "provider"
_MISSING_CONSUMER = "consumer"


@dataclass(frozen=True)
class ContractDecisions:
    """Interview decisions on contracts the evidence leaves without a provider or a consumer.

    ``external`` and ``exposed`` map a token to the evidence id of the answer.
    """

    external: dict[str, str] = field(default_factory=dict)
    exposed: dict[str, str] = field(default_factory=dict)
    waived: frozenset[str] = frozenset()


class GapTracker:
    """Computes the completeness delta between the checklist and the evidence store."""

    def __init__(self, store: EvidenceStore) -> None:
        self.store = store

    def compute_gaps(self) -> GapReport:
        items = self.store.snapshot()
        questions: list[Question] = []
        for dimension in CHECKLIST_ORDER:
            if dimension == ChecklistDimension.DEPENDENCY_CONTRACTS:
                questions.extend(question for _, _, question in self._contract_questions(items))
                continue
            for subject, refs in self._gaps_for(dimension, items):
                questions.append(self._question(dimension, subject, refs))

        blockers = [
            Blocker(
                id=f"B-{question.id[2:]}",
                description=f"{question.dimension.value}: {question.gap}",
                related_question_ids=[question.id],
                status=BlockerStatus.RESOLVED if question.answered else BlockerStatus.OPEN,
            )
            for question in questions
        ]
        report = GapReport(questions=questions, blockers=blockers)
        logger.debug(
            "Computed %d gap(s), %d open blocker(s) over %d evidence item(s)",
            len(questions),
            len(report.open_blockers),
            len(items),
        )
        return report

    def contract_decisions(self) -> ContractDecisions:
        """Read the latest answer to each contract question.

        A "not required" answer waives the token. Any other answer marks a
        missing provider as external to the series and a missing consumer as
        exposed outside it.
        """
        external: dict[str, str] = {}
        exposed: dict[str, str] = {}
        waived: set[str] = set()
        for token, missing, question in self._contract_questions(self.store.snapshot()):
            answers = self.store.answers_for(question.id)
            if not answers:
                continue
            latest = answers[-1]
            if latest.determination == Determination.NOT_REQUIRED:
                waived.add(token)
            elif missing == _MISSING_PROVIDER:
                external[token] = latest.id
            else:
                exposed[token] = latest.id
        return ContractDecisions(external=external, exposed=exposed, waived=frozenset(waived))

    # ------------------------------------------------------------------
    # Dimension evaluation
    # ------------------------------------------------------------------

    def _gaps_for(
        self, dimension: ChecklistDimension, items: tuple[EvidenceItem, ...]
    ) -> list[tuple[str, list[str]]]:
        if dimension == ChecklistDimension.CONTRADICTIONS:
            return self._contradiction_gaps(items)

        rule = CHECKLIST[dimension]
        for item in items:
            if not _concrete(item):
                continue
            if _answers_dimension(item, dimension):
                return []
            # Answers settle their own question; only deliverables answers count as document evidence.
            if item.resolves is not None and item.section != ChecklistDimension.DELIVERABLES.value:
                continue
            if rule.satisfies(item):
                return []
        return [("", self._related_refs(dimension, items))]

    def _related_refs(self, dimension: ChecklistDimension, items: tuple[EvidenceItem, ...]) -> list[str]:
        related = CHECKLIST[dimension].related
        refs = [item.id for item in items if item.resolves is None and item.category in related]
        return refs[:_MAX_RELATED_REFS] or [f"checklist:{dimension.value}"]

    def _contract_questions(self, items: tuple[EvidenceItem, ...]) -> list[tuple[str, str, Question]]:
        """One question per contract token with no provider, or with no consumer and not exposed."""
        dimension = ChecklistDimension.DEPENDENCY_CONTRACTS
        providers: dict[str, list[str]] = {}
        consumers: dict[str, list[str]] = {}
        exposed: set[str] = set()
        for item in work_items(items):
            usage = contract_usage(item.text)
            exposed.update(usage.exposes)
            for token in usage.provided:
                providers.setdefault(token, []).append(item.id)
            for token in usage.consumes:
                consumers.setdefault(token, []).append(item.id)

        questions = [
            (token, _MISSING_PROVIDER, self._question(dimension, token, refs[:_MAX_RELATED_REFS]))
            for token, refs in consumers.items()
            if token not in providers
        ]
        questions.extend(
            (
                token,
                _MISSING_CONSUMER,
                self._question(
                    dimension,
                    f"{token} (unconsumed)",
                    refs[:_MAX_RELATED_REFS],
                    rule=_UNCONSUMED_CONTRACT,
                    topic=token,
                ),
            )
            for token, refs in providers.items()
            if token not in consumers and token not in exposed
        )
        return questions

    @staticmethod
    def _contradiction_gaps(items: tuple[EvidenceItem, ...]) -> list[tuple[str, list[str]]]:
        gaps: list[tuple[str, list[str]]] = []
        non_goals = {
            normalize_text(item.text): item.id
            for item in items
            if item.category == EvidenceCategory.NON_GOAL and item.resolves is None
        }
        for item in items:
            if item.resolves is not None:
                continue
            if item.contradiction_note:
                gaps.append((item.anchor, [item.id]))
                continue
            if item.category in {EvidenceCategory.GOAL, EvidenceCategory.REQUIREMENT}:
                clash = non_goals.get(normalize_text(item.text))
                if clash is not None:
                    gaps.append((item.anchor, [item.id, clash]))
        return gaps

    # ------------------------------------------------------------------
    # Question construction
    # ------------------------------------------------------------------

    def _question(
        self,
        dimension: ChecklistDimension,
        subject: str,
        refs: list[str],
        *,
        rule: DimensionRule | None = None,
        topic: str | None = None,
    ) -> Question:
        rule = rule or CHECKLIST[dimension]
        # Contract gaps are identified by their subject alone; their
        # consumer list may grow as answers arrive.
        identity_refs = [] if dimension == ChecklistDimension.DEPENDENCY_CONTRACTS else refs
        question_id = f"Q-{content_digest({'dimension': dimension.value, 'subject': subject, 'refs': identity_refs})}"
        gap = f"{dimension.value} not evidenced" if not subject else f"{dimension.value}: {subject}"
        answer: str | None = None
        resolved_at: str | None = None
        answers = self.store.answers_for(question_id)
        if answers:
            latest = answers[-1]
            answer = "not required" if latest.determination == Determination.NOT_REQUIRED else latest.text
            resolved_at = latest.recorded_at
        return Question(
            id=question_id,
            dimension=dimension,
            text=rule.question.format(subject=topic or subject) if subject else rule.question,
            evidence_refs=refs,
            gap=gap,
            impact_note=rule.impact,
            answer=answer,
            resolved_at=resolved_at,
        )


def _concrete(item: EvidenceItem) -> bool:
    if item.determination == Determination.NOT_REQUIRED:
        return False
    return not is_placeholder(item.text)


def _answers_dimension(item: EvidenceItem, dimension: ChecklistDimension) -> bool:
    return item.determination == Determination.ANSWERED and item.section == dimension.value


__all__ = ["CHECKLIST", "ContractDecisions", "DimensionRule", "GapTracker"]
