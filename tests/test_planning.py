from __future__ import annotations

from bundlegate import ChecklistDimension, EvidenceCategory, EvidenceStore, GapTracker, HeuristicCollaborator, PlanBuilder
from bundlegate.interview import resolve
from bundlegate.models import Determination
from bundlegate.planning import DEFAULT_SERIES_TITLE, glossary_descriptions, series_title


def _store_from(text: str) -> EvidenceStore:
    store = EvidenceStore()
    store.record_extracted(HeuristicCollaborator().extract(text, {"source": "report-service.md"}), source_ref="report-service.md")
    return store


def test_plan_groups_deliverables_by_section(complete_doc: str) -> None:
    plan = PlanBuilder().build(_store_from(complete_doc))

    assert [(surface.surface_id, surface.name) for surface in plan.surfaces] == [("S-01", "Report api"), ("S-02", "Auth")]
    report, export = plan.surfaces[0].deliverables
    assert report.deliverable_id == "S-01.1"
    assert report.declared_lines == 200
    assert report.introduces == ["RPT-API"]
    assert report.consumes == ["CTX-AUTH"]
    assert report.observable_effect is not None and report.observable_effect.startswith("The report endpoint returns")
    assert export.declared_lines == 150
    assert export.introduces == [] and export.consumes == []
    assert plan.surfaces[1].deliverables[0].introduces == ["CTX-AUTH"]


def test_plan_contracts_carry_glossary_and_terminal_flags(complete_doc: str) -> None:
    store = _store_from(complete_doc)
    plan = PlanBuilder().build(store)
    contracts = plan.contract_lookup()

    assert list(contracts) == ["RPT-API", "CTX-AUTH"]
    assert contracts["RPT-API"].description == "HTTP interface for daily usage reports."
    assert contracts["RPT-API"].terminal
    assert not contracts["CTX-AUTH"].terminal
    assert contracts["CTX-AUTH"].description == "Capability CTX-AUTH"
    assert plan.unevidenced(store) == []


def test_plan_is_deterministic(complete_doc: str) -> None:
    first = PlanBuilder().build(_store_from(complete_doc))
    second = PlanBuilder().build(_store_from(complete_doc))
    assert first.fingerprint == second.fingerprint


def test_series_title_prefers_explicit_then_first_goal(complete_doc: str) -> None:
    store = _store_from(complete_doc)
    assert series_title(store, "  Usage Reports ") == "Usage Reports"
    assert series_title(store).startswith("Give support staff a daily usage report")
    assert series_title(EvidenceStore()) == DEFAULT_SERIES_TITLE


def test_glossary_entries_map_tokens_to_descriptions(complete_doc: str) -> None:
    store = _store_from(complete_doc)
    assert glossary_descriptions(store) == {"RPT-API": ("HTTP interface for daily usage reports.", "E-0008")}


def test_not_required_answers_never_become_deliverables() -> None:
    store = EvidenceStore()
    store.record(
        category=EvidenceCategory.REQUIREMENT,
        text="Report page displays totals.",
        anchor="doc.md#requirements/p1",
        source_ref="doc.md",
    )
    store.record(
        category=EvidenceCategory.REQUIREMENT,
        text="Not required: deliverables not evidenced",
        anchor="interview#deliverables/Q-00000001",
        source_ref="interview",
        resolves="Q-00000001",
        determination=Determination.NOT_REQUIRED,
    )
    plan = PlanBuilder().build(store)
    assert [deliverable.description for deliverable in plan.iter_deliverables()] == ["Report page displays totals."]


def test_target_state_is_used_when_no_requirement_exists() -> None:
    store = EvidenceStore()
    store.record(
        category=EvidenceCategory.TARGET_STATE,
        text="Dashboard shows daily totals.",
        anchor="doc.md#target-state/p1",
        source_ref="doc.md",
    )
    plan = PlanBuilder().build(store)
    assert [surface.name for surface in plan.surfaces] == ["Target state"]


def test_unevidenced_reports_dangling_references() -> None:
    plan = PlanBuilder().build(EvidenceStore())
    assert plan.unevidenced(EvidenceStore()) == ["plan (no deliverables)"]

    store = EvidenceStore()
    store.record(category=EvidenceCategory.REQUIREMENT, text="Report page displays totals.", anchor="doc.md#req/p1", source_ref="doc.md")
    built = PlanBuilder().build(store)
    assert built.unevidenced(EvidenceStore()) == ["surface S-01", "deliverable S-01.1"]


def _answer_contract_question(store: EvidenceStore, answer: str) -> None:
    report = GapTracker(store).compute_gaps()
    question = next(q for q in report.questions if q.dimension == ChecklistDimension.DEPENDENCY_CONTRACTS)
    resolve(store, report.questions, {question.id: answer})


def test_purpose_demo_answer_supplies_the_observable_effect() -> None:
    store = EvidenceStore()
    store.record(
        category=EvidenceCategory.REQUIREMENT,
        text="The import command loads partner CSV files into the warehouse.",
        anchor="doc.md#importer/p1",
        source_ref="doc.md",
    )
    report = GapTracker(store).compute_gaps()
    demo = next(q for q in report.questions if q.dimension == ChecklistDimension.PURPOSE_DEMO_FEASIBILITY)
    resolve(store, report.questions, {demo.id: "Running the import command prints the loaded row count."})

    plan = PlanBuilder().build(store)
    deliverables = list(plan.iter_deliverables())
    assert len(deliverables) == 1
    assert deliverables[0].observable_effect == "Running the import command prints the loaded row count"
    assert deliverables[0].evidence_refs == ["E-0001", store.answers_for(demo.id)[-1].id]


def test_exposed_contract_decision_makes_the_contract_terminal() -> None:
    store = EvidenceStore()
    store.record(
        category=EvidenceCategory.REQUIREMENT,
        text="Token guard rejects unsigned requests and provides CTX-AUTH.",
        anchor="doc.md#auth/p1",
        source_ref="doc.md",
    )
    _answer_contract_question(store, "Partner services call it.")

    plan = PlanBuilder().build(store)
    contract = plan.contract_lookup()["CTX-AUTH"]
    assert contract.terminal
    assert contract.evidence_refs == ["E-0001", "E-0002"]
    assert plan.unevidenced(store) == []


def test_external_and_waived_contracts_drop_out_of_deliverables() -> None:
    store = EvidenceStore()
    store.record(
        category=EvidenceCategory.REQUIREMENT,
        text="Report page displays totals and requires CTX-AUTH.",
        anchor="doc.md#report/p1",
        source_ref="doc.md",
    )
    store.record(
        category=EvidenceCategory.REQUIREMENT,
        text="Audit feed records exports and provides CTX-AUDIT.",
        anchor="doc.md#audit/p1",
        source_ref="doc.md",
    )
    report = GapTracker(store).compute_gaps()
    questions = [q for q in report.questions if q.dimension == ChecklistDimension.DEPENDENCY_CONTRACTS]
    answers = {
        question.id: "The SSO gateway supplies it." if "CTX-AUTH" in question.text else "not required"
        for question in questions
    }
    resolve(store, report.questions, answers)

    plan = PlanBuilder().build(store)
    report_page, audit_feed = plan.iter_deliverables()
    assert report_page.consumes == []
    assert audit_feed.introduces == []
    assert plan.contracts == []
