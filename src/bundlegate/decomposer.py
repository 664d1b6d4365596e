from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from typing import Iterable, Protocol

from .canonical import content_digest
from .models import (
    Bundle,
    BundleDeliverable,
    CandidateSeries,
    ContractID,
    Plan,
    PlanDeliverable,
    PurposeDemo,
    Violation,
    ViolationKind,
)
from .settings import RuntimeSettings
from .utils import dedupe_slug, slugify_name

logger = logging.getLogger(__name__)


class LineEstimator(Protocol):
    """Deterministic estimate, in lines of change, for one deliverable."""

    def __call__(self, deliverable: PlanDeliverable) -> int:
        ...


@dataclass(frozen=True)
class DeclaredLineEstimator:
    """Uses the deliverable's declared estimate, else a fixed per-deliverable weight."""

    weight: int = 120

    def __call__(self, deliverable: PlanDeliverable) -> int:
        return deliverable.declared_lines if deliverable.declared_lines is not None else self.weight


@dataclass
class _Piece:
    index: int
    deliverable: PlanDeliverable
    estimate: int


@dataclass
class _Unit:
    base_slug: str
    title: str
    summary: str
    priority: int
    pieces: list[_Piece] = field(default_factory=list)
    slug: str = ""

    @property
    def estimate(self) -> int:
        return sum(piece.estimate for piece in self.pieces)

    @property
    def observable(self) -> bool:
        return any(piece.deliverable.observable_effect for piece in self.pieces)

    def introduces(self) -> list[str]:
        return _ordered(token for piece in self.pieces for token in piece.deliverable.introduces)

    def uses(self) -> list[str]:
        return _ordered(token for piece in self.pieces for token in piece.deliverable.consumes)

    def consumes(self) -> list[str]:
        provided = set(self.introduces())
        return [token for token in self.uses() if token not in provided]

    def evidence_refs(self) -> list[str]:
        return _ordered(ref for piece in self.pieces for ref in piece.deliverable.evidence_refs)

    def absorb(self, other: "_Unit") -> None:
        self.pieces = sorted(self.pieces + other.pieces, key=lambda piece: piece.index)
        self.priority = min(self.priority, other.priority)


class Decomposer:
    """Splits a plan into budget-sized, self-contained bundles.

    The output is a pure function of the plan, the settings, the estimator and
    the validation feedback, so identical inputs give byte-identical series.
    """

    def __init__(self, settings: RuntimeSettings | None = None, *, estimator: LineEstimator | None = None) -> None:
        self.settings = settings if settings is not None else RuntimeSettings()
        self.budget = self.settings.line_budget
        self.estimator: LineEstimator = (
            estimator if estimator is not None else DeclaredLineEstimator(self.settings.deliverable_weight)
        )

    def decompose(self, plan: Plan, *, feedback: Iterable[Violation] = (), attempt: int = 1) -> CandidateSeries:
        units, infeasible = self._partition(plan)
        units = self._merge_infrastructure(units)
        self._assign_slugs(units, _slugs_to_qualify(feedback))
        introducer = self._introducers(units)
        ordered = self._order(units, introducer)

        contracts = self._contract_catalog(plan, ordered, introducer)
        bundles = [self._bundle(unit, introducer) for unit in ordered]
        logger.info(
            "Decomposition attempt %d: %d bundle(s), %d contract(s), %d infeasible unit(s)",
            attempt,
            len(bundles),
            len(contracts),
            len(infeasible),
        )
        return CandidateSeries(
            title=plan.title,
            bundles=bundles,
            contracts=contracts,
            infeasible_units=infeasible,
            attempt=attempt,
        )

    # ------------------------------------------------------------------
    # Partitioning
    # ------------------------------------------------------------------

    def _partition(self, plan: Plan) -> tuple[list[_Unit], dict[str, str]]:
        units: list[_Unit] = []
        infeasible: dict[str, str] = {}
        index = 0
        for surface in sorted(plan.surfaces, key=lambda surface: surface.priority):
            base = slugify_name(surface.name) or slugify_name(surface.surface_id)
            pieces: list[_Piece] = []
            for deliverable in surface.deliverables:
                estimate = self.estimator(deliverable)
                if estimate < 1:
                    raise ValueError(f"line estimator returned {estimate} for {deliverable.deliverable_id}")
                if estimate > self.budget:
                    infeasible[f"{surface.surface_id}/{deliverable.deliverable_id}"] = (
                        f"deliverable '{deliverable.name}' is estimated at {estimate} lines, "
                        f"over the {self.budget}-line budget, and has no smaller boundary"
                    )
                pieces.append(_Piece(index=index, deliverable=deliverable, estimate=estimate))
                index += 1

            parts = self._split(pieces)
            for number, part in enumerate(parts, start=1):
                split = len(parts) > 1
                units.append(
                    _Unit(
                        base_slug=f"{base}-part-{number}" if split else base,
                        title=f"{surface.name} (part {number} of {len(parts)})" if split else surface.name,
                        summary=surface.summary,
                        priority=surface.priority,
                        pieces=part,
                    )
                )
        return units, infeasible

    def _split(self, pieces: list[_Piece]) -> list[list[_Piece]]:
        """Greedy, order-preserving packing at deliverable boundaries."""
        parts: list[list[_Piece]] = []
        current: list[_Piece] = []
        total = 0
        for piece in pieces:
            if current and total + piece.estimate > self.budget:
                parts.append(current)
                current, total = [], 0
            current.append(piece)
            total += piece.estimate
        if current:
            parts.append(current)
        return parts

    def _merge_infrastructure(self, units: list[_Unit]) -> list[_Unit]:
        """Fold units with no observable deliverable into a consumer of what they provide."""
        units = list(units)
        while len(units) > 1:
            infra = next((unit for unit in units if not unit.observable), None)
            if infra is None:
                break
            others = [unit for unit in units if unit is not infra]
            provided = set(infra.introduces())
            consumers = [unit for unit in others if provided & set(unit.consumes())]
            pool = consumers or others
            fitting = [unit for unit in pool if unit.estimate + infra.estimate <= self.budget]
            target = min(fitting or pool, key=lambda unit: (unit.estimate, units.index(unit)))
            logger.debug("Merging infrastructure unit %s into %s", infra.base_slug, target.base_slug)
            target.absorb(infra)
            units.remove(infra)
        return units

    # ------------------------------------------------------------------
    # Naming and ordering
    # ------------------------------------------------------------------

    @staticmethod
    def _assign_slugs(units: list[_Unit], qualify: set[str]) -> None:
        used: set[str] = set()
        for unit in units:
            slug = unit.base_slug
            if slug in qualify:
                slug = f"{slug}-{content_digest({'slug': slug, 'refs': unit.evidence_refs()}, length=6)}"
            unit.slug = dedupe_slug(slug, used, max_length=64)

    @staticmethod
    def _introducers(units: list[_Unit]) -> dict[str, _Unit]:
        introducer: dict[str, _Unit] = {}
        for unit in sorted(units, key=lambda unit: (unit.priority, unit.slug)):
            for token in unit.introduces():
                introducer.setdefault(token, unit)
        return introducer

    @staticmethod
    def _order(units: list[_Unit], introducer: dict[str, _Unit]) -> list[_Unit]:
        """Kahn's algorithm over introduce -> consume edges, ties by (priority, slug).

        Units left in a cycle are appended by the same key; their consumption
        before introduction is reported by the validator.
        """
        by_slug = {unit.slug: unit for unit in units}
        indegree = {unit.slug: 0 for unit in units}
        dependents: dict[str, set[str]] = {unit.slug: set() for unit in units}
        for unit in units:
            for token in _prerequisites(unit, introducer):
                source = introducer.get(token)
                if source is None or source.slug == unit.slug or unit.slug in dependents[source.slug]:
                    continue
                dependents[source.slug].add(unit.slug)
                indegree[unit.slug] += 1

        heap = [(unit.priority, unit.slug) for unit in units if indegree[unit.slug] == 0]
        heapq.heapify(heap)
        ordered: list[_Unit] = []
        while heap:
            _, slug = heapq.heappop(heap)
            ordered.append(by_slug[slug])
            for dependent in sorted(dependents[slug]):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(heap, (by_slug[dependent].priority, dependent))

        if len(ordered) < len(units):
            placed = {unit.slug for unit in ordered}
            remaining = sorted((unit for unit in units if unit.slug not in placed), key=lambda unit: (unit.priority, unit.slug))
            logger.warning("Contract cycle among %s", ", ".join(unit.slug for unit in remaining))
            ordered.extend(remaining)
        return ordered

    # ------------------------------------------------------------------
    # Bundle assembly
    # ------------------------------------------------------------------

    @staticmethod
    def _contract_catalog(plan: Plan, ordered: list[_Unit], introducer: dict[str, _Unit]) -> dict[str, ContractID]:
        specs = plan.contract_lookup()
        catalog: dict[str, ContractID] = {}
        for spec in plan.contracts:
            source = introducer.get(spec.id)
            catalog[spec.id] = ContractID(
                id=spec.id,
                description=spec.description,
                introduced_by=source.slug if source is not None else None,
                terminal=spec.terminal,
            )
        for unit in ordered:
            # Internal use by the introducing bundle counts as consumption.
            for token in _ordered(unit.uses() + _prerequisites(unit, introducer)):
                if token not in catalog:
                    description = specs[token].description if token in specs else f"Capability {token}"
                    catalog[token] = ContractID(id=token, description=description)
                catalog[token].consumed_by.append(unit.slug)
        return catalog

    def _bundle(self, unit: _Unit, introducer: dict[str, _Unit]) -> Bundle:
        return Bundle(
            slug=unit.slug,
            title=unit.title,
            summary=unit.summary,
            lo_budget_lines_estimate=unit.estimate,
            prerequisites=_prerequisites(unit, introducer),
            contracts_introduced=[token for token in unit.introduces() if introducer.get(token) is unit],
            purpose_demo=_purpose_demo(unit),
            open_questions=_ordered(question for piece in unit.pieces for question in piece.deliverable.open_questions),
            deliverables=[
                BundleDeliverable(
                    name=piece.deliverable.name,
                    description=piece.deliverable.description,
                    estimate=piece.estimate,
                    evidence_refs=list(piece.deliverable.evidence_refs),
                )
                for piece in unit.pieces
            ],
            evidence_refs=unit.evidence_refs(),
        )


def _prerequisites(unit: _Unit, introducer: dict[str, _Unit]) -> list[str]:
    """Consumed contracts plus those this unit re-introduces after an earlier introducer."""
    shadowed = [token for token in unit.introduces() if introducer.get(token) is not unit]
    return _ordered(unit.consumes() + shadowed)


def _purpose_demo(unit: _Unit) -> PurposeDemo | None:
    observable = [piece for piece in unit.pieces if piece.deliverable.observable_effect]
    if not observable:
        return None
    piece = min(observable, key=lambda piece: (piece.estimate, piece.index))
    effect = piece.deliverable.observable_effect or ""
    return PurposeDemo(
        trigger=f"Exercise the change delivered by: {piece.deliverable.name}",
        expected_behavior=effect,
        observable_proof=f"Captured output or resulting state showing that {_lower_first(effect)}",
        validation_intent=f"An automated check asserts that {_lower_first(effect)}",
    )


def _slugs_to_qualify(feedback: Iterable[Violation]) -> set[str]:
    slugs: set[str] = set()
    for violation in feedback:
        if violation.kind == ViolationKind.CROSS_BUNDLE_REFERENCE and violation.target:
            slugs.add(violation.target)
        elif violation.kind == ViolationKind.DUPLICATE_SLUG:
            slugs.add(violation.subject)
    return slugs


def _lower_first(text: str) -> str:
    if len(text) > 1 and text[1].islower():
        return text[0].lower() + text[1:]
    return text


def _ordered(values: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(values))
