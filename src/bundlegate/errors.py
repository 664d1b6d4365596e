from __future__ import annotations

from typing import Any

from .models import GatePhase, HaltReason


class BundlegateError(RuntimeError):
    """Base error. ``halt_reason`` names the Halted state the error maps to."""

    halt_reason: HaltReason | None = None

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class EvidenceConflict(BundlegateError):
    halt_reason = HaltReason.EVIDENCE_CONFLICT


class DuplicateAnchorConflict(EvidenceConflict):
    """Two items claim one anchor with contradictory categories and no contradiction note."""

    def __init__(self, anchor: str, existing_id: str, existing_category: str, incoming_category: str) -> None:
        super().__init__(
            f"Anchor {anchor!r} already holds {existing_category} evidence {existing_id}; "
            f"refusing {incoming_category} without a contradiction note",
            details={
                "anchor": anchor,
                "existing_id": existing_id,
                "existing_category": existing_category,
                "incoming_category": incoming_category,
            },
        )
        self.anchor = anchor


class BlockerUnresolved(BundlegateError):
    halt_reason = HaltReason.BLOCKERS_OPEN

    def __init__(self, blocker_ids: list[str], question_ids: list[str]) -> None:
        super().__init__(
            f"{len(blocker_ids)} blocker(s) still open: {', '.join(blocker_ids)}",
            details={"blocker_ids": blocker_ids, "question_ids": question_ids},
        )
        self.blocker_ids = blocker_ids


class NoProgress(BundlegateError):
    halt_reason = HaltReason.NO_PROGRESS


class PlanUnevidenced(BundlegateError):
    halt_reason = HaltReason.PLAN_UNEVIDENCED


class DecompositionInfeasible(BundlegateError):
    halt_reason = HaltReason.DECOMPOSITION_INFEASIBLE


class ValidationViolation(BundlegateError):
    halt_reason = HaltReason.VALIDATION_UNRESOLVABLE


class IllegalTransition(BundlegateError):
    def __init__(self, source: GatePhase, target: GatePhase, note: str = "") -> None:
        message = f"Illegal gate transition: {source.value} -> {target.value}"
        if note:
            message = f"{message} ({note})"
        super().__init__(message, details={"source": source.value, "target": target.value})


class ArtifactWriteRefused(BundlegateError):
    """Raised when a write is attempted outside the Finalized entry action."""
