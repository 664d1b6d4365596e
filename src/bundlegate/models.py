from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Any, Container

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .canonical import to_canonical_json


class _Record(BaseModel):
    """Base for every persisted record: snake_case in Python, camelCase on disk."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _FrozenRecord(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------


class EvidenceCategory(str, Enum):
    GOAL = "Goal"
    CURRENT_STATE = "CurrentState"
    TARGET_STATE = "TargetState"
    REQUIREMENT = "Requirement"
    NON_GOAL = "NonGoal"
    CONSTRAINT = "Constraint"
    RISK = "Risk"
    GLOSSARY_TERM = "GlossaryTerm"


class ConstraintStrength(str, Enum):
    HARD = "hard"
    SOFT = "soft"


class Determination(str, Enum):
    ANSWERED = "answered"
    NOT_REQUIRED = "not-required"


class ExtractedRecord(_FrozenRecord):
    """EvidenceItem-shaped record produced by a text collaborator (no id yet)."""

    category: EvidenceCategory
    text: str
    anchor: str
    strength: ConstraintStrength | None = None


class EvidenceItem(_FrozenRecord):
    id: str
    category: EvidenceCategory
    text: str
    anchor: str = Field(min_length=1)
    source_ref: str
    strength: ConstraintStrength | None = None
    contradiction_note: str | None = None
    resolves: str | None = None
    determination: Determination | None = None
    recorded_at: str | None = None

    @model_validator(mode="after")
    def _check_shape(self) -> "EvidenceItem":
        if not self.anchor.strip():
            raise ValueError("evidence anchor must be non-empty")
        if self.category == EvidenceCategory.CONSTRAINT and self.strength is None:
            raise ValueError("Constraint evidence requires a hard|soft strength")
        if self.category != EvidenceCategory.CONSTRAINT and self.strength is not None:
            raise ValueError(f"strength is only valid for Constraint evidence, got {self.category.value}")
        if (self.resolves is None) != (self.determination is None):
            raise ValueError("resolves and determination must be set together")
        return self

    @property
    def section(self) -> str:
        """Section component of ``source#section/pN`` anchors."""
        _, _, locator = self.anchor.partition("#")
        return locator.split("/", 1)[0] if locator else ""


# ---------------------------------------------------------------------------
# Gaps
# ---------------------------------------------------------------------------


class ChecklistDimension(str, Enum):
    DELIVERABLES = "deliverables"
    SUCCESS_CRITERIA = "success-criteria"
    CONSTRAINTS = "constraints"
    INTERFACES = "interfaces"
    OPERATIONAL_EXPECTATIONS = "operational-expectations"
    VALIDATION_EXPECTATIONS = "validation-expectations"
    DEPENDENCY_CONTRACTS = "dependency-contracts"
    CONTRADICTIONS = "contradictions"
    PURPOSE_DEMO_FEASIBILITY = "purpose-demo-feasibility"


CHECKLIST_ORDER: tuple[ChecklistDimension, ...] = tuple(ChecklistDimension)


class Question(_Record):
    id: str
    dimension: ChecklistDimension
    text: str
    evidence_refs: list[str] = Field(min_length=1)
    gap: str
    impact_note: str
    answer: str | None = None
    resolved_at: str | None = None

    @property
    def answered(self) -> bool:
        return self.answer is not None


class BlockerStatus(str, Enum):
    OPEN = "Open"
    RESOLVED = "Resolved"


class Blocker(_Record):
    id: str
    description: str
    related_question_ids: list[str] = Field(min_length=1)
    status: BlockerStatus = BlockerStatus.OPEN


class GapReport(_Record):
    questions: list[Question] = Field(default_factory=list)
    blockers: list[Blocker] = Field(default_factory=list)

    @property
    def open_blockers(self) -> list[Blocker]:
        return [blocker for blocker in self.blockers if blocker.status == BlockerStatus.OPEN]

    @property
    def unanswered(self) -> list[Question]:
        return [question for question in self.questions if not question.answered]

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(to_canonical_json(self.model_dump(mode="json")).encode("utf-8")).hexdigest()


class InterviewRound(_FrozenRecord):
    round_number: int
    questions: list[Question]
    prompts: dict[str, str]


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class ContractSpec(_FrozenRecord):
    id: str
    description: str
    terminal: bool = False
    evidence_refs: list[str] = Field(default_factory=list)


class PlanDeliverable(_FrozenRecord):
    deliverable_id: str
    name: str
    description: str
    declared_lines: int | None = Field(default=None, ge=1)
    observable_effect: str | None = None
    introduces: list[str] = Field(default_factory=list)
    consumes: list[str] = Field(default_factory=list)
    open_questions: list[str] = Field(default_factory=list)
    evidence_refs: list[str] = Field(default_factory=list)


class PlanSurface(_FrozenRecord):
    surface_id: str
    name: str
    summary: str
    priority: int
    deliverables: list[PlanDeliverable] = Field(min_length=1)
    evidence_refs: list[str] = Field(default_factory=list)


class Plan(_FrozenRecord):
    title: str
    surfaces: list[PlanSurface]
    contracts: list[ContractSpec] = Field(default_factory=list)

    def iter_deliverables(self) -> list[PlanDeliverable]:
        return [deliverable for surface in self.surfaces for deliverable in surface.deliverables]

    def contract_lookup(self) -> dict[str, ContractSpec]:
        return {contract.id: contract for contract in self.contracts}

    def unevidenced(self, store: Container[str]) -> list[str]:
        """Plan items with no evidence reference resolvable in ``store``."""

        def missing(refs: list[str]) -> bool:
            return not refs or any(ref not in store for ref in refs)

        labels: list[str] = [] if self.surfaces else ["plan (no deliverables)"]
        for surface in self.surfaces:
            if missing(surface.evidence_refs):
                labels.append(f"surface {surface.surface_id}")
            labels.extend(
                f"deliverable {deliverable.deliverable_id}"
                for deliverable in surface.deliverables
                if missing(deliverable.evidence_refs)
            )
        labels.extend(f"contract {contract.id}" for contract in self.contracts if missing(contract.evidence_refs))
        return labels

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(to_canonical_json(self.model_dump(mode="json")).encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


class PurposeDemo(_FrozenRecord):
    trigger: str
    expected_behavior: str
    observable_proof: str
    validation_intent: str

    def is_complete(self) -> bool:
        return all(value.strip() for value in (self.trigger, self.expected_behavior, self.observable_proof, self.validation_intent))


class BundleDeliverable(_FrozenRecord):
    name: str
    description: str
    estimate: int
    evidence_refs: list[str] = Field(default_factory=list)


class ContractID(_Record):
    id: str
    description: str
    introduced_by: str | None = None
    consumed_by: list[str] = Field(default_factory=list)
    terminal: bool = False


class Bundle(_FrozenRecord):
    slug: str
    title: str
    summary: str
    lo_budget_lines_estimate: int
    prerequisites: list[str] = Field(default_factory=list)
    contracts_introduced: list[str] = Field(default_factory=list)
    purpose_demo: PurposeDemo | None = None
    open_questions: list[str] = Field(default_factory=list)
    deliverables: list[BundleDeliverable] = Field(default_factory=list)
    evidence_refs: list[str] = Field(default_factory=list)


class CandidateSeries(_FrozenRecord):
    """Decomposer output awaiting validation."""

    title: str
    bundles: list[Bundle]
    contracts: dict[str, ContractID]
    infeasible_units: dict[str, str] = Field(default_factory=dict)
    attempt: int = 1

    @property
    def slugs(self) -> list[str]:
        return [bundle.slug for bundle in self.bundles]


class SeriesManifest(_FrozenRecord):
    title: str
    date: str
    bundle_slugs: list[str]
    contract_catalog: dict[str, str]
    open_notes: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ViolationKind(str, Enum):
    BUDGET_EXCEEDED = "BudgetExceeded"
    CROSS_BUNDLE_REFERENCE = "CrossBundleReference"
    MISSING_PURPOSE_DEMO = "MissingPurposeDemo"
    DANGLING_CONTRACT = "DanglingContract"
    OPEN_QUESTION_PRESENT = "OpenQuestionPresent"
    DUPLICATE_SLUG = "DuplicateSlug"
    DECOMPOSITION_INFEASIBLE = "DecompositionInfeasible"


class Violation(_FrozenRecord):
    kind: ViolationKind
    subject: str
    target: str | None = None
    message: str = ""

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.kind.value, self.subject, self.target or "")


class ValidationReport(_Record):
    violations: list[Violation] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.violations

    def of_kind(self, kind: ViolationKind) -> list[Violation]:
        return [violation for violation in self.violations if violation.kind == kind]


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class GatePhase(str, Enum):
    INVESTIGATING = "Investigating"
    AWAITING_ANSWERS = "AwaitingAnswers"
    PLANNING = "Planning"
    DECOMPOSING = "Decomposing"
    VALIDATING = "Validating"
    FINALIZED = "Finalized"
    HALTED = "Halted"


GATE_TRANSITIONS: dict[GatePhase, frozenset[GatePhase]] = {
    GatePhase.INVESTIGATING: frozenset({GatePhase.AWAITING_ANSWERS, GatePhase.HALTED}),
    GatePhase.AWAITING_ANSWERS: frozenset({GatePhase.AWAITING_ANSWERS, GatePhase.PLANNING, GatePhase.HALTED}),
    GatePhase.PLANNING: frozenset({GatePhase.DECOMPOSING, GatePhase.HALTED}),
    GatePhase.DECOMPOSING: frozenset({GatePhase.VALIDATING, GatePhase.HALTED}),
    GatePhase.VALIDATING: frozenset({GatePhase.FINALIZED, GatePhase.DECOMPOSING, GatePhase.HALTED}),
    GatePhase.FINALIZED: frozenset({GatePhase.HALTED}),
    GatePhase.HALTED: frozenset(),
}


class HaltReason(str, Enum):
    BLOCKERS_OPEN = "blockers-open"
    NO_PROGRESS = "no-progress"
    EVIDENCE_CONFLICT = "evidence-conflict"
    PLAN_UNEVIDENCED = "plan-unevidenced"
    DECOMPOSITION_INFEASIBLE = "decomposition-infeasible"
    VALIDATION_UNRESOLVABLE = "validation-unresolvable"
    WRITE_FAILED = "write-failed"
    CANCELLED = "cancelled"


class GateTransition(_FrozenRecord):
    source: GatePhase
    target: GatePhase
    at: datetime
    note: str = ""


class HaltRecord(_FrozenRecord):
    reason: HaltReason
    phase: GatePhase
    details: dict[str, Any] = Field(default_factory=dict)
