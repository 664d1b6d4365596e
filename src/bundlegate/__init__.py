from importlib.metadata import version

from .collaborator import HeuristicCollaborator, LLMCollaborator, TextCollaborator
from .decomposer import DeclaredLineEstimator, Decomposer, LineEstimator
from .errors import (
    ArtifactWriteRefused,
    BlockerUnresolved,
    BundlegateError,
    DecompositionInfeasible,
    DuplicateAnchorConflict,
    EvidenceConflict,
    IllegalTransition,
    NoProgress,
    PlanUnevidenced,
    ValidationViolation,
)
from .evidence import EvidenceStore
from .gaps import GapTracker
from .gate import Gate
from .interview import build_round, resolve
from .models import (
    Blocker,
    BlockerStatus,
    Bundle,
    CandidateSeries,
    ChecklistDimension,
    ConstraintStrength,
    ContractID,
    EvidenceCategory,
    EvidenceItem,
    GapReport,
    GatePhase,
    HaltReason,
    Plan,
    PurposeDemo,
    Question,
    SeriesManifest,
    ValidationReport,
    Violation,
    ViolationKind,
)
from .pipeline import BundlePipeline, PipelineResult, SourceDocument
from .planning import PlanBuilder
from .settings import RuntimeSettings
from .validator import Validator
from .writer import ArtifactWriter


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "ArtifactWriteRefused",
    "ArtifactWriter",
    "Blocker",
    "BlockerStatus",
    "BlockerUnresolved",
    "Bundle",
    "BundlePipeline",
    "BundlegateError",
    "CandidateSeries",
    "ChecklistDimension",
    "ConstraintStrength",
    "ContractID",
    "DeclaredLineEstimator",
    "DecompositionInfeasible",
    "Decomposer",
    "DuplicateAnchorConflict",
    "EvidenceCategory",
    "EvidenceConflict",
    "EvidenceItem",
    "EvidenceStore",
    "GapReport",
    "GapTracker",
    "Gate",
    "GatePhase",
    "HaltReason",
    "HeuristicCollaborator",
    "IllegalTransition",
    "LLMCollaborator",
    "LineEstimator",
    "NoProgress",
    "PipelineResult",
    "Plan",
    "PlanBuilder",
    "PlanUnevidenced",
    "PurposeDemo",
    "Question",
    "RuntimeSettings",
    "SeriesManifest",
    "SourceDocument",
    "TextCollaborator",
    "ValidationReport",
    "ValidationViolation",
    "Validator",
    "Violation",
    "ViolationKind",
    "build_round",
    "get_version",
    "resolve",
]
