from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Callable, Iterator

from .errors import (
    BlockerUnresolved,
    BundlegateError,
    IllegalTransition,
    NoProgress,
    PlanUnevidenced,
    ValidationViolation,
)
from .models import (
    GATE_TRANSITIONS,
    CandidateSeries,
    GapReport,
    GatePhase,
    GateTransition,
    HaltReason,
    HaltRecord,
    ValidationReport,
    Violation,
)

logger = logging.getLogger(__name__)


class Gate:
    """Phase state machine deciding when planning, decomposition and writing may occur.

    Every transition goes through :meth:`_transition`, which consults
    ``GATE_TRANSITIONS``; the only backward edge is Validating -> Decomposing,
    bounded by ``max_validation_retries``. Writes are permitted only while the
    Finalized entry action runs.
    """

    def __init__(
        self,
        *,
        max_validation_retries: int = 3,
        max_idle_rounds: int = 2,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.max_validation_retries = max_validation_retries
        self.max_idle_rounds = max_idle_rounds
        self._clock = clock if clock is not None else (lambda: datetime.now(UTC))
        self._phase = GatePhase.INVESTIGATING
        self._lock = threading.RLock()
        self._writes_permitted = False
        self.history: list[GateTransition] = []
        self.halt: HaltRecord | None = None
        self.validation_retries = 0
        self.idle_rounds = 0
        self.rounds = 0
        self.feedback: list[Violation] = []

    @property
    def phase(self) -> GatePhase:
        return self._phase

    @property
    def halted(self) -> bool:
        return self._phase == GatePhase.HALTED

    @property
    def writes_permitted(self) -> bool:
        return self._writes_permitted

    def _transition(self, target: GatePhase, note: str = "") -> None:
        with self._lock:
            source = self._phase
            if target not in GATE_TRANSITIONS[source]:
                raise IllegalTransition(source, target, note)
            self._phase = target
            self.history.append(GateTransition(source=source, target=target, at=self._clock(), note=note))
        logger.info("Gate %s -> %s%s", source.value, target.value, f" ({note})" if note else "")

    # ------------------------------------------------------------------
    # Forward edges
    # ------------------------------------------------------------------

    def await_answers(self, report: GapReport | None) -> None:
        """Investigating -> AwaitingAnswers, once evidence and gaps have been computed."""
        if self._phase != GatePhase.INVESTIGATING:
            raise IllegalTransition(self._phase, GatePhase.AWAITING_ANSWERS)
        if report is None:
            raise IllegalTransition(self._phase, GatePhase.AWAITING_ANSWERS, "gap tracker has not run")
        self._transition(GatePhase.AWAITING_ANSWERS, f"{len(report.open_blockers)} open blocker(s)")

    def record_round(self, accepted_answers: int, report: GapReport) -> None:
        """AwaitingAnswers -> AwaitingAnswers after an answer round and a gap re-run.

        Raises:
            NoProgress: After ``max_idle_rounds`` consecutive rounds without a
                new answer; the gate is Halted("no-progress") first.
        """
        self.rounds += 1
        if accepted_answers > 0:
            self.idle_rounds = 0
        else:
            self.idle_rounds += 1
        self._transition(
            GatePhase.AWAITING_ANSWERS,
            f"round {self.rounds}: {accepted_answers} answer(s), {len(report.open_blockers)} open blocker(s)",
        )
        if self.idle_rounds >= self.max_idle_rounds:
            error = NoProgress(
                f"{self.idle_rounds} consecutive interview round(s) produced no new answers",
                details={
                    "idle_rounds": self.idle_rounds,
                    "open_blockers": [blocker.id for blocker in report.open_blockers],
                },
            )
            self.halt_on(error)
            raise error

    def admit_planning(self, report: GapReport) -> None:
        """The Blocker Gate: AwaitingAnswers -> Planning only with every blocker Resolved.

        Raises:
            BlockerUnresolved: If any blocker is Open. The gate stays in
                AwaitingAnswers so more answers can still arrive.
        """
        if self._phase != GatePhase.AWAITING_ANSWERS:
            raise IllegalTransition(self._phase, GatePhase.PLANNING)
        open_blockers = report.open_blockers
        if open_blockers:
            question_ids = [qid for blocker in open_blockers for qid in blocker.related_question_ids]
            raise BlockerUnresolved([blocker.id for blocker in open_blockers], question_ids)
        self._transition(GatePhase.PLANNING, f"{len(report.blockers)} blocker(s) resolved")

    def begin_decomposing(self, unevidenced: list[str]) -> None:
        """Planning -> Decomposing, once every plan item traces to evidence.

        Raises:
            PlanUnevidenced: If any plan item lacks resolvable evidence.
        """
        if self._phase != GatePhase.PLANNING:
            raise IllegalTransition(self._phase, GatePhase.DECOMPOSING)
        if unevidenced:
            raise PlanUnevidenced(
                f"{len(unevidenced)} plan item(s) lack evidence: {', '.join(unevidenced)}",
                details={"items": list(unevidenced)},
            )
        self._transition(GatePhase.DECOMPOSING, "plan evidenced")

    def begin_validating(self, candidate: CandidateSeries) -> None:
        self._transition(GatePhase.VALIDATING, f"attempt {candidate.attempt}: {len(candidate.bundles)} bundle(s)")

    def reject(self, report: ValidationReport) -> None:
        """Validating -> Decomposing with the violation list as feedback.

        Raises:
            ValidationViolation: When the retry bound is exhausted; the gate is
                Halted("validation-unresolvable") first.
        """
        if self._phase != GatePhase.VALIDATING:
            raise IllegalTransition(self._phase, GatePhase.DECOMPOSING)
        if self.validation_retries >= self.max_validation_retries:
            error = ValidationViolation(
                f"validation still failing after {self.validation_retries} retry(ies)",
                details={"violations": [violation.model_dump(mode="json") for violation in report.violations]},
            )
            self.halt_on(error)
            raise error
        self.validation_retries += 1
        self.feedback.extend(report.violations)
        self._transition(
            GatePhase.DECOMPOSING,
            f"retry {self.validation_retries}/{self.max_validation_retries}: {len(report.violations)} violation(s)",
        )

    def finalize(self, report: ValidationReport, on_entry: Callable[[], Any]) -> Any:
        """Validating -> Finalized, running the single write as the entry action.

        A failing entry action halts the run with "write-failed" and re-raises.
        """
        if self._phase != GatePhase.VALIDATING:
            raise IllegalTransition(self._phase, GatePhase.FINALIZED)
        if not report.ok:
            raise IllegalTransition(self._phase, GatePhase.FINALIZED, f"{len(report.violations)} violation(s)")
        self._transition(GatePhase.FINALIZED)
        try:
            with self._write_window():
                return on_entry()
        except Exception as exc:
            self._halt(HaltReason.WRITE_FAILED, {"error": str(exc)})
            raise

    # ------------------------------------------------------------------
    # Halting
    # ------------------------------------------------------------------

    def halt_on(self, error: BundlegateError) -> HaltRecord:
        if error.halt_reason is None:
            raise ValueError(f"{type(error).__name__} does not map to a halt reason")
        return self._halt(error.halt_reason, {"message": str(error), **error.details})

    def cancel(self) -> HaltRecord:
        return self._halt(HaltReason.CANCELLED, {})

    def _halt(self, reason: HaltReason, details: dict[str, Any]) -> HaltRecord:
        with self._lock:
            if self.halt is not None:
                return self.halt
            phase = self._phase
            self._transition(GatePhase.HALTED, reason.value)
            self.halt = HaltRecord(reason=reason, phase=phase, details=details)
        logger.warning("Run halted in %s: %s", phase.value, reason.value)
        return self.halt

    @contextmanager
    def _write_window(self) -> Iterator[None]:
        self._writes_permitted = True
        try:
            yield
        finally:
            self._writes_permitted = False
