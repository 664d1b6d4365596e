from __future__ import annotations

from bundlegate import Decomposer, Plan, RuntimeSettings, Validator, ViolationKind
from bundlegate.models import ContractSpec, PlanDeliverable, PlanSurface


def _deliverable(deliverable_id: str, description: str, lines: int, **kwargs: object) -> PlanDeliverable:
    return PlanDeliverable(
        deliverable_id=deliverable_id,
        name=description.rstrip("."),
        description=description,
        declared_lines=lines,
        observable_effect=kwargs.pop("observable_effect", description.rstrip(".")),
        evidence_refs=[f"E-{deliverable_id}"],
        **kwargs,
    )


def _surface(surface_id: str, name: str, priority: int, deliverables: list[PlanDeliverable]) -> PlanSurface:
    return PlanSurface(
        surface_id=surface_id,
        name=name,
        summary=f"{name} work",
        priority=priority,
        deliverables=deliverables,
        evidence_refs=[ref for deliverable in deliverables for ref in deliverable.evidence_refs],
    )


def _large_unit_plan() -> Plan:
    deliverables = [
        _deliverable(f"S-01.{index}", f"Importer step {index} writes staged rows.", 350) for index in range(1, 5)
    ]
    return Plan(title="Import", surfaces=[_surface("S-01", "Importer", 1, deliverables)])


def test_large_unit_is_split_at_deliverable_boundaries() -> None:
    candidate = Decomposer(RuntimeSettings()).decompose(_large_unit_plan())

    assert len(candidate.bundles) >= 3
    assert all(bundle.lo_budget_lines_estimate <= 500 for bundle in candidate.bundles)
    assert candidate.slugs == ["importer-part-1", "importer-part-2", "importer-part-3", "importer-part-4"]
    assert candidate.bundles[0].title == "Importer (part 1 of 4)"
    assert Validator().validate(candidate).ok


def test_every_bundle_gets_a_complete_purpose_demo_and_no_open_questions() -> None:
    candidate = Decomposer().decompose(_large_unit_plan())
    for bundle in candidate.bundles:
        assert bundle.purpose_demo is not None and bundle.purpose_demo.is_complete()
        assert bundle.open_questions == []
    demo = candidate.bundles[0].purpose_demo
    assert demo is not None
    assert demo.expected_behavior == "Importer step 1 writes staged rows"
    assert demo.validation_intent == "An automated check asserts that importer step 1 writes staged rows"


def test_decomposition_is_deterministic() -> None:
    first = Decomposer().decompose(_large_unit_plan())
    second = Decomposer().decompose(_large_unit_plan())
    assert first.model_dump() == second.model_dump()


def test_oversized_deliverable_is_reported_infeasible() -> None:
    plan = Plan(
        title="Import",
        surfaces=[_surface("S-01", "Importer", 1, [_deliverable("S-01.1", "Importer writes every table.", 600)])],
    )
    candidate = Decomposer().decompose(plan)

    assert list(candidate.infeasible_units) == ["S-01/S-01.1"]
    report = Validator().validate(candidate)
    assert [violation.kind for violation in report.of_kind(ViolationKind.DECOMPOSITION_INFEASIBLE)] == [
        ViolationKind.DECOMPOSITION_INFEASIBLE
    ]


def test_infrastructure_merges_into_its_consumer() -> None:
    schema = _deliverable("S-01.1", "Create the storage schema.", 100, observable_effect=None, introduces=["DB-SCHEMA"])
    page = _deliverable("S-02.1", "Report page displays totals.", 200, consumes=["DB-SCHEMA"])
    plan = Plan(
        title="Reports",
        surfaces=[_surface("S-01", "Schema", 1, [schema]), _surface("S-02", "Reports", 2, [page])],
        contracts=[ContractSpec(id="DB-SCHEMA", description="Tables for report data", evidence_refs=["E-S-01.1"])],
    )
    candidate = Decomposer().decompose(plan)

    assert candidate.slugs == ["reports"]
    bundle = candidate.bundles[0]
    assert [deliverable.name for deliverable in bundle.deliverables] == ["Create the storage schema", "Report page displays totals"]
    assert bundle.contracts_introduced == ["DB-SCHEMA"]
    assert bundle.prerequisites == []
    assert candidate.contracts["DB-SCHEMA"].introduced_by == "reports"
    assert candidate.contracts["DB-SCHEMA"].consumed_by == ["reports"]
    assert Validator().validate(candidate).ok


def test_bundles_are_ordered_so_introducers_come_first() -> None:
    page = _deliverable("S-01.1", "Report page displays totals.", 200, consumes=["CTX-AUTH"], introduces=["RPT-UI"])
    auth = _deliverable("S-02.1", "Token guard rejects bad tokens.", 120, introduces=["CTX-AUTH"])
    plan = Plan(
        title="Reports",
        surfaces=[_surface("S-01", "Reports", 1, [page]), _surface("S-02", "Auth", 2, [auth])],
        contracts=[
            ContractSpec(id="RPT-UI", description="Report page", terminal=True, evidence_refs=["E-S-01.1"]),
            ContractSpec(id="CTX-AUTH", description="Authenticated request context", evidence_refs=["E-S-02.1"]),
        ],
    )
    candidate = Decomposer().decompose(plan)

    assert candidate.slugs == ["auth", "reports"]
    assert candidate.bundles[1].prerequisites == ["CTX-AUTH"]
    assert candidate.contracts["CTX-AUTH"].introduced_by == "auth"
    assert candidate.contracts["CTX-AUTH"].consumed_by == ["reports"]
    assert Validator().validate(candidate).ok


def test_cross_reference_feedback_qualifies_the_referenced_slug() -> None:
    exporter = _deliverable("S-01.1", "Exporter writes a CSV file of daily totals.", 150)
    scheduler = _deliverable("S-02.1", "Scheduler runs the exporter nightly and records results.", 100)
    plan = Plan(
        title="Exports",
        surfaces=[_surface("S-01", "Exporter", 1, [exporter]), _surface("S-02", "Scheduler", 2, [scheduler])],
    )
    decomposer = Decomposer()
    first = decomposer.decompose(plan)
    report = Validator().validate(first)

    crossings = report.of_kind(ViolationKind.CROSS_BUNDLE_REFERENCE)
    assert [(violation.subject, violation.target) for violation in crossings] == [("scheduler", "exporter")]

    second = decomposer.decompose(plan, feedback=report.violations, attempt=2)
    assert second.attempt == 2
    assert second.slugs[0].startswith("exporter-") and len(second.slugs[0]) == len("exporter-") + 6
    assert second.slugs[1] == "scheduler"
    assert Validator().validate(second).ok
