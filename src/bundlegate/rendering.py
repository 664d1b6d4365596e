from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable

from pydantic import BaseModel

from .evidence import EvidenceStore
from .models import (
    Bundle,
    CandidateSeries,
    ChecklistDimension,
    ContractID,
    Determination,
    EvidenceCategory,
    GapReport,
    HaltRecord,
    SeriesManifest,
)

SERIES_DIR = "BUNDLE_SERIES"
BUNDLES_DIR = "BUNDLES"
BUNDLE_MANIFEST = "MANIFEST.json"

_DECISION_SECTIONS = frozenset(
    {ChecklistDimension.DEPENDENCY_CONTRACTS.value, ChecklistDimension.CONTRADICTIONS.value}
)

_CATEGORY_HEADINGS: dict[EvidenceCategory, str] = {
    EvidenceCategory.GOAL: "Goals",
    EvidenceCategory.CURRENT_STATE: "Current State",
    EvidenceCategory.TARGET_STATE: "Target State",
    EvidenceCategory.REQUIREMENT: "Requirements",
    EvidenceCategory.NON_GOAL: "Non-Goals",
    EvidenceCategory.CONSTRAINT: "Constraints",
    EvidenceCategory.RISK: "Risks",
    EvidenceCategory.GLOSSARY_TERM: "Glossary",
}


def to_json_text(model: BaseModel) -> str:
    return json.dumps(model.model_dump(mode="json", by_alias=True), indent=2, ensure_ascii=False) + "\n"


def _bullets(values: Iterable[str], empty: str = "None.") -> list[str]:
    lines = [f"- {value}" for value in values]
    return lines or [f"- {empty}"]


def _contract_line(contract_id: str, catalog: dict[str, ContractID]) -> str:
    contract = catalog.get(contract_id)
    return f"`{contract_id}`: {contract.description}" if contract is not None else f"`{contract_id}`"


# ---------------------------------------------------------------------------
# Bundle documents
# ---------------------------------------------------------------------------


def render_prompt(bundle: Bundle, catalog: dict[str, ContractID]) -> str:
    lines: list[str] = [f"# {bundle.title}", "", bundle.summary, ""]
    lines.extend(["## Task", ""])
    lines.append(
        f"Implement the deliverables below in a single reviewable change of at most "
        f"{bundle.lo_budget_lines_estimate} estimated lines."
    )
    lines.append("")
    lines.extend(["## Deliverables", ""])
    for deliverable in bundle.deliverables:
        lines.append(f"- **{deliverable.name}**: {deliverable.description}")
    lines.append("")
    lines.extend(["## Available Capabilities", ""])
    lines.extend(_bullets((_contract_line(token, catalog) for token in bundle.prerequisites), "No prerequisites."))
    lines.append("")
    lines.extend(["## Capabilities To Provide", ""])
    lines.extend(_bullets((_contract_line(token, catalog) for token in bundle.contracts_introduced), "None."))
    return "\n".join(lines).strip() + "\n"


def render_plans(bundle: Bundle) -> str:
    lines: list[str] = [f"# Plan: {bundle.title}", ""]
    for number, deliverable in enumerate(bundle.deliverables, start=1):
        lines.extend([f"## Step {number}: {deliverable.name}", "", deliverable.description, ""])
        lines.append(f"Estimate: {deliverable.estimate} lines")
        lines.append(f"Evidence: {', '.join(deliverable.evidence_refs) or 'none'}")
        lines.append("")
    lines.append(f"Total estimate: {bundle.lo_budget_lines_estimate} lines")
    return "\n".join(lines).strip() + "\n"


def render_implement(bundle: Bundle) -> str:
    lines: list[str] = [f"# Implement: {bundle.title}", ""]
    demo = bundle.purpose_demo
    lines.extend(["## Purpose Demo", ""])
    if demo is None:
        lines.append("- None.")
    else:
        lines.append(f"- Trigger: {demo.trigger}")
        lines.append(f"- Expected behavior: {demo.expected_behavior}")
        lines.append(f"- Observable proof: {demo.observable_proof}")
        lines.append(f"- Validation intent: {demo.validation_intent}")
    lines.append("")
    lines.extend(["## Open Questions", ""])
    lines.extend(_bullets(bundle.open_questions))
    return "\n".join(lines).strip() + "\n"


def render_documentation(bundle: Bundle, catalog: dict[str, ContractID]) -> str:
    lines: list[str] = [f"# Documentation: {bundle.title}", ""]
    lines.extend(["## Interfaces Introduced", ""])
    lines.extend(_bullets((_contract_line(token, catalog) for token in bundle.contracts_introduced)))
    lines.append("")
    lines.extend(["## Traceability", ""])
    lines.extend(_bullets(bundle.evidence_refs))
    return "\n".join(lines).strip() + "\n"


def render_bundle(bundle: Bundle, catalog: dict[str, ContractID]) -> dict[str, str]:
    """Every file of one bundle directory, keyed by path relative to it."""
    return {
        ".agent/Prompt.md": render_prompt(bundle, catalog),
        ".agent/Plans.md": render_plans(bundle),
        ".agent/Implement.md": render_implement(bundle),
        ".agent/Documentation.md": render_documentation(bundle, catalog),
        BUNDLE_MANIFEST: to_json_text(bundle),
    }


# ---------------------------------------------------------------------------
# Series documents
# ---------------------------------------------------------------------------


def build_manifest(candidate: CandidateSeries, store: EvidenceStore, *, now: datetime) -> SeriesManifest:
    notes = [f"Risk: {item.text} ({item.anchor})" for item in store.query_by_category(EvidenceCategory.RISK)]
    notes.extend(
        f"{item.text} ({item.resolves})"
        for item in store.interview_items()
        if item.determination == Determination.NOT_REQUIRED
    )
    notes.extend(
        f"Decision: {item.text} ({item.resolves})"
        for item in store.interview_items()
        if item.determination == Determination.ANSWERED and item.section in _DECISION_SECTIONS
    )
    return SeriesManifest(
        title=candidate.title,
        date=now.date().isoformat(),
        bundle_slugs=candidate.slugs,
        contract_catalog={contract_id: contract.description for contract_id, contract in candidate.contracts.items()},
        open_notes=notes,
    )


def render_overview(manifest: SeriesManifest, candidate: CandidateSeries) -> str:
    lines: list[str] = [f"# {manifest.title}", "", f"Generated: {manifest.date}", ""]
    lines.extend(["## Bundles", ""])
    for number, bundle in enumerate(candidate.bundles, start=1):
        lines.append(f"{number}. `{bundle.slug}`: {bundle.title} ({bundle.lo_budget_lines_estimate} lines)")
    lines.append("")
    lines.extend(["## Contracts", ""])
    for contract in candidate.contracts.values():
        introducer = contract.introduced_by or "external"
        consumers = ", ".join(contract.consumed_by) or "none"
        lines.append(f"- `{contract.id}`: {contract.description} (introduced by {introducer}; consumed by {consumers})")
    if not candidate.contracts:
        lines.append("- None.")
    lines.append("")
    lines.extend(["## Open Notes", ""])
    lines.extend(_bullets(manifest.open_notes))
    return "\n".join(lines).strip() + "\n"


def render_context_digest(
    store: EvidenceStore,
    *,
    report: GapReport | None = None,
    halt: HaltRecord | None = None,
) -> str:
    lines: list[str] = ["# Context Digest", ""]
    if halt is not None:
        lines.extend([f"Halted in {halt.phase.value}: {halt.reason.value}", ""])
    for category, heading in _CATEGORY_HEADINGS.items():
        items = list(store.query_by_category(category))
        if not items:
            continue
        lines.extend([f"## {heading}", ""])
        for item in items:
            suffix = f" [{item.strength.value}]" if item.strength is not None else ""
            lines.append(f"- {item.id}{suffix}: {item.text} ({item.anchor})")
            if item.contradiction_note:
                lines.append(f"  - Contradiction: {item.contradiction_note}")
        lines.append("")
    if report is not None:
        unresolved = report.unanswered
        if unresolved:
            lines.extend(["## Unresolved Questions", ""])
            for question in unresolved:
                lines.append(f"- {question.id} [{question.dimension.value}]: {question.text}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def render_unresolved(halt: HaltRecord, report: GapReport | None = None) -> str:
    lines: list[str] = [f"Halted ({halt.reason.value}) in {halt.phase.value}."]
    message = halt.details.get("message")
    if message:
        lines.append(str(message))
    if report is not None:
        for blocker in report.open_blockers:
            lines.append(f"- {blocker.id}: {blocker.description}")
    for violation in _violations(halt.details):
        target = f" -> {violation['target']}" if violation.get("target") else ""
        lines.append(f"- {violation['kind']} {violation['subject']}{target}: {violation['message']}")
    return "\n".join(lines) + "\n"


def _violations(details: dict[str, Any]) -> list[dict[str, Any]]:
    violations = details.get("violations")
    return list(violations) if isinstance(violations, list) else []


def render_series(
    candidate: CandidateSeries,
    store: EvidenceStore,
    *,
    now: datetime,
    report: GapReport | None = None,
) -> dict[str, str]:
    """The complete output tree, keyed by POSIX path relative to the output root."""
    manifest = build_manifest(candidate, store, now=now)
    files: dict[str, str] = {
        f"{SERIES_DIR}/Overview.md": render_overview(manifest, candidate),
        f"{SERIES_DIR}/ContextDigest.md": render_context_digest(store, report=report),
        f"{SERIES_DIR}/SeriesManifest.json": to_json_text(manifest),
    }
    for bundle in candidate.bundles:
        for relative, content in render_bundle(bundle, candidate.contracts).items():
            files[f"{BUNDLES_DIR}/{bundle.slug}/{relative}"] = content
    return files
