from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from bundlegate import (
    BundlePipeline,
    ChecklistDimension,
    EvidenceCategory,
    GatePhase,
    HaltReason,
    HeuristicCollaborator,
    RuntimeSettings,
    SourceDocument,
)
from bundlegate.models import ExtractedRecord, InterviewRound
from bundlegate.validator import slug_pattern

ANSWERS_BY_DIMENSION = {
    ChecklistDimension.CONSTRAINTS.value: "Must run on Python 3.11.",
    ChecklistDimension.OPERATIONAL_EXPECTATIONS.value: "Logs go to stdout.",
    ChecklistDimension.VALIDATION_EXPECTATIONS.value: "A pytest suite covers every deliverable.",
}


IMPORT_SERVICE_DOC = """# Import Service

## Goals
- Give analysts a daily import of partner data; success is measured by 95% of files loaded on time.

## Requirements
### Importer
- The import command loads partner CSV files into the warehouse. ~200 lines

## Constraints
- The service must run on Python 3.11 and logs go to stdout.
- Every deliverable is verified by automated tests.
"""


def _pipeline(text: str, output: Path, clock: Callable[[], datetime], **kwargs: Any) -> BundlePipeline:  # noqa: ANN401
    return BundlePipeline(
        SourceDocument(name="report-service.md", text=text),
        output_root=output,
        settings=RuntimeSettings(),
        clock=clock,
        **kwargs,
    )


def _answer_all(batch: InterviewRound) -> dict[str, str]:
    return {question.id: ANSWERS_BY_DIMENSION.get(question.dimension.value, "not required") for question in batch.questions}


def test_complete_document_finalizes_and_publishes(
    complete_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    output = tmp_path / "out"
    result = _pipeline(complete_doc, output, fixed_clock).run()

    assert result.finalized
    assert result.halt is None
    assert result.output == output
    assert len(result.files) == 3 + 2 * 5
    for relative, content in result.files.items():
        assert (output / relative).read_text(encoding="utf-8") == content

    manifest = json.loads(result.files["BUNDLE_SERIES/SeriesManifest.json"])
    assert manifest == {
        "title": "Give support staff a daily usage report",
        "date": "2026-01-15",
        "bundleSlugs": ["auth", "report-api"],
        "contractCatalog": {"RPT-API": "HTTP interface for daily usage reports.", "CTX-AUTH": "Capability CTX-AUTH"},
        "openNotes": [],
    }

    bundle = json.loads(result.files["BUNDLES/report-api/MANIFEST.json"])
    assert bundle["loBudgetLinesEstimate"] == 350
    assert bundle["prerequisites"] == ["CTX-AUTH"]
    assert bundle["contractsIntroduced"] == ["RPT-API"]
    assert bundle["openQuestions"] == []
    assert all(bundle["purposeDemo"][key] for key in ("trigger", "expectedBehavior", "observableProof", "validationIntent"))


def test_bundle_documents_never_name_another_bundle(
    complete_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    result = _pipeline(complete_doc, tmp_path / "out", fixed_clock).run()
    slugs = ["auth", "report-api"]
    for relative, content in result.files.items():
        if not relative.startswith("BUNDLES/"):
            continue
        owner = relative.split("/")[1]
        for other in slugs:
            if other != owner:
                assert not slug_pattern(other).search(content), f"{relative} mentions {other}"


def test_identical_inputs_publish_byte_identical_trees(
    complete_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    first = _pipeline(complete_doc, tmp_path / "first", fixed_clock).run()
    second = _pipeline(complete_doc, tmp_path / "second", fixed_clock).run()

    assert first.files == second.files
    for relative in first.files:
        assert (tmp_path / "first" / relative).read_bytes() == (tmp_path / "second" / relative).read_bytes()


def test_open_blockers_without_answers_halt_and_write_nothing(
    three_gap_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    output = tmp_path / "out"
    result = _pipeline(three_gap_doc, output, fixed_clock).run()

    assert result.phase == GatePhase.HALTED
    assert result.halt is not None
    assert result.halt.reason == HaltReason.BLOCKERS_OPEN
    assert len(result.halt.details["blocker_ids"]) == 3
    assert result.files == {}
    assert not output.exists()
    assert "## Unresolved Questions" in result.context_digest
    assert result.unresolved.count("\n- B-") == 3


def test_answer_provider_unblocks_the_run(three_gap_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]) -> None:
    rounds: list[InterviewRound] = []

    def provider(batch: InterviewRound) -> Mapping[str, str]:
        rounds.append(batch)
        return _answer_all(batch)

    pipeline = _pipeline(three_gap_doc, tmp_path / "out", fixed_clock, answer_provider=provider)
    result = pipeline.run()

    assert result.finalized
    assert len(rounds) == 1
    assert [question.dimension for question in rounds[0].questions] == [
        ChecklistDimension.CONSTRAINTS,
        ChecklistDimension.OPERATIONAL_EXPECTATIONS,
        ChecklistDimension.VALIDATION_EXPECTATIONS,
    ]
    digest = result.files["BUNDLE_SERIES/ContextDigest.md"]
    assert "Must run on Python 3.11." in digest
    assert "interview#constraints/" in digest


def test_rounds_without_new_answers_halt_with_no_progress(
    three_gap_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    output = tmp_path / "out"
    result = _pipeline(three_gap_doc, output, fixed_clock, answer_provider=lambda batch: {}).run()

    assert result.halt is not None
    assert result.halt.reason == HaltReason.NO_PROGRESS
    assert result.halt.phase == GatePhase.AWAITING_ANSWERS
    assert not output.exists()


def test_interrupted_interview_resumes_with_answers(
    three_gap_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    output = tmp_path / "out"
    pipeline = _pipeline(three_gap_doc, output, fixed_clock, enable_interrupts=True)

    paused = pipeline.run()

    assert paused.awaiting_answers
    assert paused.phase == GatePhase.AWAITING_ANSWERS
    assert not output.exists()
    pending = paused.pending_round
    assert pending is not None
    assert pending["roundNumber"] == 1
    assert len(pending["questions"]) == 3
    assert set(pending["prompts"]) == {question["id"] for question in pending["questions"]}

    answers = {question["id"]: ANSWERS_BY_DIMENSION[question["dimension"]] for question in pending["questions"]}
    result = pipeline.resume(answers)

    assert result.finalized
    assert not result.awaiting_answers
    assert (output / "BUNDLE_SERIES" / "Overview.md").is_file()


def test_cancel_while_awaiting_answers(three_gap_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]) -> None:
    output = tmp_path / "out"
    pipeline = _pipeline(three_gap_doc, output, fixed_clock, enable_interrupts=True)
    pipeline.run()

    result = pipeline.cancel()

    assert result.halt is not None
    assert result.halt.reason == HaltReason.CANCELLED
    assert result.pending_round is None
    assert not output.exists()


def test_waived_purpose_demo_exhausts_validation_retries(tmp_path: Path, fixed_clock: Callable[[], datetime]) -> None:
    output = tmp_path / "out"
    pipeline = _pipeline(IMPORT_SERVICE_DOC, output, fixed_clock, answer_provider=_answer_all)

    result = pipeline.run()

    assert result.halt is not None
    assert result.halt.reason == HaltReason.VALIDATION_UNRESOLVABLE
    assert result.halt.phase == GatePhase.VALIDATING
    retries = [
        step
        for step in pipeline.gate.history
        if (step.source, step.target) == (GatePhase.VALIDATING, GatePhase.DECOMPOSING)
    ]
    assert len(retries) == 3
    assert "MissingPurposeDemo" in result.unresolved
    assert not output.exists()


def test_waived_dependency_drops_the_prerequisite(
    complete_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    text = complete_doc.replace(" and provides CTX-AUTH", "")
    asked: list[InterviewRound] = []

    def provider(batch: InterviewRound) -> Mapping[str, str]:
        asked.append(batch)
        return _answer_all(batch)

    result = _pipeline(text, tmp_path / "out", fixed_clock, answer_provider=provider).run()

    assert result.finalized
    assert [question.dimension for question in asked[0].questions] == [ChecklistDimension.DEPENDENCY_CONTRACTS]
    bundle = json.loads(result.files["BUNDLES/report-api/MANIFEST.json"])
    assert bundle["prerequisites"] == []
    manifest = json.loads(result.files["BUNDLE_SERIES/SeriesManifest.json"])
    assert list(manifest["contractCatalog"]) == ["RPT-API"]
    assert manifest["openNotes"] == [f"Not required: dependency-contracts: CTX-AUTH ({asked[0].questions[0].id})"]


def test_externally_supplied_dependency_is_recorded_as_a_decision(
    complete_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    text = complete_doc.replace(" and provides CTX-AUTH", "")
    answer = "The platform SSO gateway supplies CTX-AUTH."
    asked: list[str] = []

    def provider(batch: InterviewRound) -> Mapping[str, str]:
        asked.extend(question.id for question in batch.questions)
        return {question.id: answer for question in batch.questions}

    result = _pipeline(text, tmp_path / "out", fixed_clock, answer_provider=provider).run()

    assert result.finalized
    assert len(asked) == 1
    assert json.loads(result.files["BUNDLES/report-api/MANIFEST.json"])["prerequisites"] == []
    manifest = json.loads(result.files["BUNDLE_SERIES/SeriesManifest.json"])
    assert manifest["openNotes"] == [f"Decision: {answer} ({asked[0]})"]


def test_unconsumed_contract_is_asked_before_planning(
    complete_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    text = complete_doc.replace(" and requires CTX-AUTH", "")

    halted = _pipeline(text, tmp_path / "halted", fixed_clock).run()

    assert halted.halt is not None
    assert halted.halt.reason == HaltReason.BLOCKERS_OPEN
    assert "CTX-AUTH" in halted.context_digest

    asked: list[InterviewRound] = []

    def provider(batch: InterviewRound) -> Mapping[str, str]:
        asked.append(batch)
        return {question.id: "Partner services call it to authenticate their requests." for question in batch.questions}

    result = _pipeline(text, tmp_path / "out", fixed_clock, answer_provider=provider).run()

    assert result.finalized
    assert len(asked) == 1
    (question,) = asked[0].questions
    assert question.dimension == ChecklistDimension.DEPENDENCY_CONTRACTS
    assert "CTX-AUTH" in question.text and "consumes" in question.text
    auth = json.loads(result.files["BUNDLES/auth/MANIFEST.json"])
    assert auth["contractsIntroduced"] == ["CTX-AUTH"]
    manifest = json.loads(result.files["BUNDLE_SERIES/SeriesManifest.json"])
    assert set(manifest["contractCatalog"]) == {"RPT-API", "CTX-AUTH"}


def test_purpose_demo_answer_describes_existing_work(tmp_path: Path, fixed_clock: Callable[[], datetime]) -> None:
    asked: list[InterviewRound] = []

    def provider(batch: InterviewRound) -> Mapping[str, str]:
        asked.append(batch)
        return {question.id: "Running the import command prints the loaded row count." for question in batch.questions}

    pipeline = _pipeline(IMPORT_SERVICE_DOC, tmp_path / "out", fixed_clock, answer_provider=provider)
    result = pipeline.run()

    assert result.finalized
    assert [question.dimension for question in asked[0].questions] == [ChecklistDimension.PURPOSE_DEMO_FEASIBILITY]
    assert pipeline.plan is not None
    assert [surface.name for surface in pipeline.plan.surfaces] == ["Importer"]
    assert len(pipeline.plan.iter_deliverables()) == 1
    manifest = json.loads(result.files["BUNDLE_SERIES/SeriesManifest.json"])
    assert manifest["bundleSlugs"] == ["importer"]
    bundle = json.loads(result.files["BUNDLES/importer/MANIFEST.json"])
    assert bundle["loBudgetLinesEstimate"] == 200
    assert "prints the loaded row count" in bundle["purposeDemo"]["expectedBehavior"]


def test_exhausted_answer_source_halts_with_blockers_open(
    three_gap_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    remaining = {ChecklistDimension.CONSTRAINTS.value: "Must run on Python 3.11."}

    def provider(batch: InterviewRound) -> Mapping[str, str] | None:
        found = {
            question.id: remaining.pop(question.dimension.value)
            for question in batch.questions
            if question.dimension.value in remaining
        }
        return found or None

    pipeline = _pipeline(three_gap_doc, tmp_path / "out", fixed_clock, answer_provider=provider)
    result = pipeline.run()

    assert result.halt is not None
    assert result.halt.reason == HaltReason.BLOCKERS_OPEN
    assert result.halt.phase == GatePhase.AWAITING_ANSWERS
    assert len(result.halt.details["blocker_ids"]) == 2
    assert pipeline.gate.rounds == 1
    assert not (tmp_path / "out").exists()


def test_oversized_deliverable_halts_as_infeasible(
    complete_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    text = complete_doc.replace("~200 lines", "~900 lines")
    output = tmp_path / "out"
    result = _pipeline(text, output, fixed_clock).run()

    assert result.halt is not None
    assert result.halt.reason == HaltReason.DECOMPOSITION_INFEASIBLE
    assert result.halt.phase == GatePhase.DECOMPOSING
    assert "DecompositionInfeasible S-01/S-01.1" in result.unresolved
    assert not output.exists()


class _ConflictingCollaborator(HeuristicCollaborator):
    def extract(self, text: str, hints: Mapping[str, Any]) -> list[ExtractedRecord]:
        return [
            ExtractedRecord(category=EvidenceCategory.GOAL, text="Ship exports", anchor="brief.md#scope/p1"),
            ExtractedRecord(category=EvidenceCategory.NON_GOAL, text="Ship exports", anchor="brief.md#scope/p1"),
        ]


def test_conflicting_evidence_halts_during_investigation(tmp_path: Path, fixed_clock: Callable[[], datetime]) -> None:
    result = _pipeline("# Brief", tmp_path / "out", fixed_clock, collaborator=_ConflictingCollaborator()).run()

    assert result.halt is not None
    assert result.halt.reason == HaltReason.EVIDENCE_CONFLICT
    assert result.halt.phase == GatePhase.INVESTIGATING
    assert result.halt.details["anchor"] == "brief.md#scope/p1"


def test_context_documents_are_recorded_as_current_state(
    complete_doc: str, tmp_path: Path, fixed_clock: Callable[[], datetime]
) -> None:
    pipeline = BundlePipeline(
        SourceDocument(name="report-service.md", text=complete_doc),
        [SourceDocument(name="notes.md", text="# Notes\n\nThe legacy exporter runs nightly from cron.\n")],
        output_root=tmp_path / "out",
        settings=RuntimeSettings(),
        clock=fixed_clock,
    )
    result = pipeline.run()

    assert result.finalized
    context = [item for item in pipeline.store if item.source_ref == "notes.md"]
    assert [(item.category, item.anchor) for item in context] == [(EvidenceCategory.CURRENT_STATE, "notes.md#notes/p1")]
    assert "notes.md#notes/p1" in result.files["BUNDLE_SERIES/ContextDigest.md"]
