from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence, TypedDict

from langgraph.checkpoint.memory import InMemorySaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import Command, interrupt

from .collaborator import HeuristicCollaborator, TextCollaborator
from .decomposer import Decomposer, LineEstimator
from .errors import (
    ArtifactWriteRefused,
    BlockerUnresolved,
    DecompositionInfeasible,
    EvidenceConflict,
    NoProgress,
    PlanUnevidenced,
    ValidationViolation,
)
from .evidence import EvidenceStore
from .gaps import GapTracker
from .gate import Gate
from .interview import build_round, resolve
from .models import (
    CandidateSeries,
    EvidenceCategory,
    GapReport,
    GatePhase,
    HaltRecord,
    InterviewRound,
    Plan,
    ValidationReport,
    ViolationKind,
)
from .planning import PlanBuilder
from .rendering import render_context_digest, render_series, render_unresolved
from .settings import RuntimeSettings
from .validator import Validator
from .writer import ArtifactWriter

logger = logging.getLogger(__name__)

# A provider returns None once it can supply no further answers.
AnswerProvider = Callable[[InterviewRound], Mapping[str, str] | None]


@dataclass(frozen=True)
class SourceDocument:
    name: str
    text: str


class PipelineState(TypedDict, total=False):
    halted: bool
    report: dict[str, Any] | None
    plan: dict[str, Any] | None
    candidate: dict[str, Any] | None
    validation: dict[str, Any] | None
    output: str | None


@dataclass
class PipelineResult:
    phase: GatePhase
    halt: HaltRecord | None = None
    output: Path | None = None
    files: dict[str, str] = field(default_factory=dict)
    context_digest: str = ""
    unresolved: str = ""
    pending_round: dict[str, Any] | None = None

    @property
    def finalized(self) -> bool:
        return self.phase == GatePhase.FINALIZED

    @property
    def awaiting_answers(self) -> bool:
        return self.pending_round is not None


class BundlePipeline:
    """LangGraph run of the whole gate: investigate, interview, plan, decompose, validate, finalize.

    The interview is the only suspension point. With ``enable_interrupts`` the
    graph pauses on a LangGraph ``interrupt`` carrying the serialized question
    batch, and :meth:`resume` continues it with ``Command(resume=answers)``.
    Without interrupts, ``answer_provider`` is asked for each round. With
    neither, or once the provider returns None, open blockers halt the run.
    """

    def __init__(
        self,
        primary: SourceDocument,
        contexts: Sequence[SourceDocument] = (),
        *,
        output_root: str | Path | None = None,
        title: str | None = None,
        settings: RuntimeSettings | None = None,
        collaborator: TextCollaborator | None = None,
        estimator: LineEstimator | None = None,
        answer_provider: AnswerProvider | None = None,
        enable_interrupts: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.primary = primary
        self.contexts = list(contexts)
        self.output_root = Path(output_root) if output_root is not None else self.settings.output_path(Path.cwd())
        self.title = title
        self.collaborator = collaborator if collaborator is not None else HeuristicCollaborator()
        self.answer_provider = answer_provider
        self.enable_interrupts = enable_interrupts
        self.clock = clock if clock is not None else (lambda: datetime.now(UTC))

        self.store = EvidenceStore()
        self.tracker = GapTracker(self.store)
        self.gate = Gate(
            max_validation_retries=self.settings.max_validation_retries,
            max_idle_rounds=self.settings.max_idle_rounds,
            clock=self.clock,
        )
        self.planner = PlanBuilder()
        self.decomposer = Decomposer(self.settings, estimator=estimator)
        self.validator = Validator(line_budget=self.settings.line_budget)
        self.writer = ArtifactWriter(self.output_root, self.gate)

        self.report: GapReport | None = None
        self.plan: Plan | None = None
        self.candidate: CandidateSeries | None = None
        self.files: dict[str, str] = {}

        self._config = {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"thread_id": f"bundlegate-{uuid.uuid4().hex[:8]}"},
        }
        self.graph = self._build_graph().compile(checkpointer=InMemorySaver())

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(PipelineState)
        graph.add_node("investigate", self._investigate_node)
        graph.add_node("blocker_gate", self._blocker_gate_node)
        graph.add_node("interview", self._interview_node)
        graph.add_node("plan", self._plan_node)
        graph.add_node("decompose", self._decompose_node)
        graph.add_node("validate", self._validate_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "investigate")
        graph.add_conditional_edges(
            "investigate", self._continue_or_end("blocker_gate"), {"blocker_gate": "blocker_gate", "end": END}
        )
        graph.add_conditional_edges(
            "blocker_gate",
            self._blocker_route,
            {
                "plan": "plan",
                "interview": "interview",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "interview", self._continue_or_end("blocker_gate"), {"blocker_gate": "blocker_gate", "end": END}
        )
        graph.add_conditional_edges("plan", self._continue_or_end("decompose"), {"decompose": "decompose", "end": END})
        graph.add_conditional_edges("decompose", self._continue_or_end("validate"), {"validate": "validate", "end": END})
        graph.add_conditional_edges(
            "validate",
            self._validate_route,
            {
                "finalize": "finalize",
                "decompose": "decompose",
                "end": END,
            },
        )
        graph.add_edge("finalize", END)
        return graph

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _investigate_node(self, _state: PipelineState) -> dict[str, Any]:
        try:
            records = self.collaborator.extract(self.primary.text, {"source": self.primary.name})
            self.store.record_extracted(records, source_ref=self.primary.name)
            for document in self.contexts:
                records = self.collaborator.extract(
                    document.text,
                    {"source": document.name, "default_category": EvidenceCategory.CURRENT_STATE.value},
                )
                self.store.record_extracted(records, source_ref=document.name)
        except EvidenceConflict as exc:
            self.gate.halt_on(exc)
            return {"halted": True}

        self.report = self.tracker.compute_gaps()
        self.gate.await_answers(self.report)
        logger.info(
            "Investigated %d document(s): %d evidence item(s), %d question(s)",
            1 + len(self.contexts),
            len(self.store),
            len(self.report.questions),
        )
        return {"halted": False, "report": self.report.model_dump(mode="json")}

    def _blocker_gate_node(self, _state: PipelineState) -> dict[str, Any]:
        self.report = self.tracker.compute_gaps()
        try:
            self.gate.admit_planning(self.report)
        except BlockerUnresolved as exc:
            if self.enable_interrupts or self.answer_provider is not None:
                return {"halted": False, "report": self.report.model_dump(mode="json")}
            self.gate.halt_on(exc)
            return {"halted": True, "report": self.report.model_dump(mode="json")}
        return {"halted": False, "report": self.report.model_dump(mode="json")}

    def _interview_node(self, _state: PipelineState) -> dict[str, Any]:
        report = self.tracker.compute_gaps()
        batch = build_round(
            report.questions,
            self.settings,
            round_number=self.gate.rounds + 1,
            phrase=self.collaborator.phrase_question,
        )
        answers: Mapping[str, str] = {}
        if batch is not None:
            if self.enable_interrupts:
                answers = interrupt(batch.model_dump(mode="json", by_alias=True)) or {}
            elif self.answer_provider is not None:
                provided = self.answer_provider(batch)
                if provided is None:
                    return self._halt_blockers_open(report)
                answers = provided
        accepted = resolve(self.store, batch.questions if batch is not None else [], answers, clock=self.clock)

        self.report = self.tracker.compute_gaps()
        try:
            self.gate.record_round(accepted, self.report)
        except NoProgress:
            return {"halted": True, "report": self.report.model_dump(mode="json")}
        return {"halted": False, "report": self.report.model_dump(mode="json")}

    def _plan_node(self, _state: PipelineState) -> dict[str, Any]:
        self.plan = self.planner.build(self.store, title=self.title)
        try:
            self.gate.begin_decomposing(self.plan.unevidenced(self.store))
        except PlanUnevidenced as exc:
            self.gate.halt_on(exc)
            return {"halted": True, "plan": self.plan.model_dump(mode="json")}
        return {"halted": False, "plan": self.plan.model_dump(mode="json")}

    def _decompose_node(self, _state: PipelineState) -> dict[str, Any]:
        if self.plan is None:
            raise RuntimeError("decompose reached without a plan")
        self.candidate = self.decomposer.decompose(
            self.plan,
            feedback=self.gate.feedback,
            attempt=self.gate.validation_retries + 1,
        )
        if self.candidate.infeasible_units:
            violations = self.validator.validate(self.candidate).of_kind(ViolationKind.DECOMPOSITION_INFEASIBLE)
            error = DecompositionInfeasible(
                f"{len(self.candidate.infeasible_units)} unit(s) cannot meet the line budget",
                details={"violations": [violation.model_dump(mode="json") for violation in violations]},
            )
            self.gate.halt_on(error)
            return {"halted": True, "candidate": self.candidate.model_dump(mode="json")}
        self.gate.begin_validating(self.candidate)
        return {"halted": False, "candidate": self.candidate.model_dump(mode="json")}

    def _validate_node(self, _state: PipelineState) -> dict[str, Any]:
        if self.candidate is None:
            raise RuntimeError("validate reached without a candidate series")
        report = self.validator.validate(self.candidate)
        if report.ok:
            return {"halted": False, "validation": report.model_dump(mode="json")}
        try:
            self.gate.reject(report)
        except ValidationViolation:
            return {"halted": True, "validation": report.model_dump(mode="json")}
        return {"halted": False, "validation": report.model_dump(mode="json")}

    def _finalize_node(self, state: PipelineState) -> dict[str, Any]:
        if self.candidate is None:
            raise RuntimeError("finalize reached without a candidate series")
        report = ValidationReport.model_validate(state.get("validation") or {})
        self.files = render_series(self.candidate, self.store, now=self.clock(), report=self.report)
        try:
            output = self.gate.finalize(report, lambda: self.writer.write(self.files))
        except (OSError, ValueError, ArtifactWriteRefused) as exc:
            logger.error("Publishing to %s failed: %s", self.output_root, exc)
            return {"halted": True, "output": None}
        return {"halted": False, "output": str(output)}

    def _halt_blockers_open(self, report: GapReport) -> dict[str, Any]:
        open_blockers = report.open_blockers
        error = BlockerUnresolved(
            [blocker.id for blocker in open_blockers],
            [qid for blocker in open_blockers for qid in blocker.related_question_ids],
        )
        logger.warning("Answer source exhausted with %d open blocker(s)", len(open_blockers))
        self.gate.halt_on(error)
        self.report = report
        return {"halted": True, "report": report.model_dump(mode="json")}

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @staticmethod
    def _continue_or_end(next_node: str) -> Callable[[PipelineState], str]:
        def route(state: PipelineState) -> str:
            return "end" if state.get("halted") else next_node

        return route

    def _blocker_route(self, state: PipelineState) -> str:
        if state.get("halted"):
            return "end"
        if self.gate.phase == GatePhase.PLANNING:
            return "plan"
        return "interview"

    def _validate_route(self, state: PipelineState) -> str:
        if state.get("halted"):
            return "end"
        if self.gate.phase == GatePhase.DECOMPOSING:
            return "decompose"
        return "finalize"

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self) -> PipelineResult:
        initial_state: PipelineState = {
            "halted": False,
            "report": None,
            "plan": None,
            "candidate": None,
            "validation": None,
            "output": None,
        }
        return self._invoke(initial_state)

    def resume(self, answers: Mapping[str, str]) -> PipelineResult:
        """Continue a run paused on an interview round."""
        return self._invoke(Command(resume=dict(answers)))

    def cancel(self) -> PipelineResult:
        self.gate.cancel()
        return self._result({})

    def _invoke(self, payload: Any) -> PipelineResult:  # noqa: ANN401 - graph input or Command.
        final_state = self.graph.invoke(payload, config=self._config)
        return self._result(final_state)

    def _pending_round(self) -> dict[str, Any] | None:
        snapshot = self.graph.get_state(self._config)
        for task in snapshot.tasks:
            for pending in task.interrupts:
                return dict(pending.value)
        return None

    def _result(self, final_state: Mapping[str, Any]) -> PipelineResult:
        pending = None if self.gate.halted else self._pending_round()
        output = final_state.get("output")
        halt = self.gate.halt
        return PipelineResult(
            phase=self.gate.phase,
            halt=halt,
            output=Path(output) if output else None,
            files=dict(self.files) if self.gate.phase == GatePhase.FINALIZED else {},
            context_digest=render_context_digest(self.store, report=self.report, halt=halt),
            unresolved=render_unresolved(halt, self.report) if halt is not None else "",
            pending_round=pending,
        )
