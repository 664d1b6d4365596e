from __future__ import annotations

import logging
import re

from .evidence import EvidenceStore, work_items
from .gaps import ContractDecisions, GapTracker
from .models import (
    ChecklistDimension,
    ContractSpec,
    Determination,
    EvidenceCategory,
    EvidenceItem,
    Plan,
    PlanDeliverable,
    PlanSurface,
)
from .utils import (
    contract_usage,
    declared_line_estimate,
    has_open_marker,
    humanize_slug,
    is_placeholder,
    observable_clause,
    short_name,
)

logger = logging.getLogger(__name__)

DEFAULT_SERIES_TITLE = "Bundle Series"

_GLOSSARY_ENTRY_RE = re.compile(r"^\s*`?(?P<token>[A-Z][A-Z0-9]*(?:-[A-Z][A-Z0-9]*)+)`?\s*(?::|-|=|–|—)\s*(?P<description>.+)$")


def series_title(store: EvidenceStore, title: str | None = None) -> str:
    if title and title.strip():
        return title.strip()
    for goal in store.query_by_category(EvidenceCategory.GOAL):
        if goal.resolves is None and not is_placeholder(goal.text):
            return short_name(goal.text)
    return DEFAULT_SERIES_TITLE


def glossary_descriptions(store: EvidenceStore) -> dict[str, tuple[str, str]]:
    """Map contract token -> (description, evidence id) from ``TOKEN: description`` glossary items."""
    entries: dict[str, tuple[str, str]] = {}
    for item in store.query_by_category(EvidenceCategory.GLOSSARY_TERM):
        match = _GLOSSARY_ENTRY_RE.match(item.text)
        if match and match.group("token") not in entries:
            entries[match.group("token")] = (match.group("description").strip(), item.id)
    return entries


class PlanBuilder:
    """Derives change surfaces and deliverables from resolved evidence.

    Each work item (see :func:`work_items`) is one deliverable; deliverables
    are grouped into surfaces by anchor section, ordered by first appearance.
    A purpose-demo answer supplies the observable effect of deliverables that
    state none, and contract answers adjust which tokens a deliverable
    introduces or consumes.
    """

    def build(self, store: EvidenceStore, *, title: str | None = None) -> Plan:
        decisions = GapTracker(store).contract_decisions()
        demo = self._demo_answer(store)
        sections: dict[str, list[EvidenceItem]] = {}
        for item in work_items(store.snapshot()):
            sections.setdefault(item.section or "general", []).append(item)

        surfaces: list[PlanSurface] = []
        for index, (section, items) in enumerate(sections.items(), start=1):
            surface_id = f"S-{index:02d}"
            deliverables = [
                self._deliverable(f"{surface_id}.{position}", item, decisions, demo)
                for position, item in enumerate(items, start=1)
            ]
            surfaces.append(
                PlanSurface(
                    surface_id=surface_id,
                    name=humanize_slug(section),
                    summary=short_name(items[0].text, max_words=16),
                    priority=index,
                    deliverables=deliverables,
                    evidence_refs=[item.id for item in items],
                )
            )

        plan = Plan(
            title=series_title(store, title),
            surfaces=surfaces,
            contracts=self._contracts(store, surfaces, decisions),
        )
        logger.info(
            "Planned %d surface(s), %d deliverable(s), %d contract(s)",
            len(plan.surfaces),
            len(plan.iter_deliverables()),
            len(plan.contracts),
        )
        return plan

    @staticmethod
    def _demo_answer(store: EvidenceStore) -> EvidenceItem | None:
        answers = [
            item
            for item in store.interview_items()
            if item.section == ChecklistDimension.PURPOSE_DEMO_FEASIBILITY.value
            and item.determination == Determination.ANSWERED
            and not is_placeholder(item.text)
        ]
        return answers[-1] if answers else None

    @staticmethod
    def _deliverable(
        deliverable_id: str,
        item: EvidenceItem,
        decisions: ContractDecisions,
        demo: EvidenceItem | None,
    ) -> PlanDeliverable:
        usage = contract_usage(item.text)
        observable = observable_clause(item.text)
        evidence_refs = [item.id]
        if observable is None and demo is not None:
            observable = observable_clause(demo.text) or demo.text.strip().rstrip(".;")
            evidence_refs.append(demo.id)
        return PlanDeliverable(
            deliverable_id=deliverable_id,
            name=short_name(item.text),
            description=item.text,
            declared_lines=declared_line_estimate(item.text),
            observable_effect=observable,
            introduces=[token for token in usage.provided if token not in decisions.waived],
            consumes=[
                token
                for token in usage.consumes
                if token not in decisions.waived and token not in decisions.external
            ],
            open_questions=[item.text] if has_open_marker(item.text) else [],
            evidence_refs=evidence_refs,
        )

    @staticmethod
    def _contracts(
        store: EvidenceStore, surfaces: list[PlanSurface], decisions: ContractDecisions
    ) -> list[ContractSpec]:
        glossary = glossary_descriptions(store)
        exposed: set[str] = set()
        refs: dict[str, list[str]] = {}
        for surface in surfaces:
            for deliverable in surface.deliverables:
                exposed.update(contract_usage(deliverable.description).exposes)
                for token in deliverable.introduces + deliverable.consumes:
                    token_refs = refs.setdefault(token, [])
                    for ref in deliverable.evidence_refs[:1]:
                        if ref not in token_refs:
                            token_refs.append(ref)

        contracts: list[ContractSpec] = []
        for token, token_refs in refs.items():
            description, glossary_ref = glossary.get(token, (f"Capability {token}", None))
            decision_ref = decisions.exposed.get(token)
            contract_refs = ([glossary_ref] if glossary_ref else []) + token_refs
            if decision_ref is not None:
                contract_refs.append(decision_ref)
            contracts.append(
                ContractSpec(
                    id=token,
                    description=description,
                    terminal=token in exposed or decision_ref is not None,
                    evidence_refs=contract_refs,
                )
            )
        return contracts
