from __future__ import annotations

import logging
import re
from collections import Counter

from .models import Bundle, CandidateSeries, ValidationReport, Violation, ViolationKind
from .rendering import render_bundle
from .settings import HARD_LINE_BUDGET

logger = logging.getLogger(__name__)


def slug_pattern(slug: str) -> re.Pattern[str]:
    """Match ``slug`` as a whole token, not as part of a longer slug or word."""
    return re.compile(rf"(?<![a-z0-9-]){re.escape(slug)}(?![a-z0-9-])")


class Validator:
    """Checks a candidate series and reports every violation in one pass."""

    def __init__(self, *, line_budget: int = HARD_LINE_BUDGET) -> None:
        self.line_budget = min(line_budget, HARD_LINE_BUDGET)

    def validate(self, candidate: CandidateSeries) -> ValidationReport:
        violations: list[Violation] = []
        violations.extend(self._infeasible(candidate))
        violations.extend(self._duplicate_slugs(candidate))
        for bundle in candidate.bundles:
            violations.extend(self._bundle_checks(bundle))
        violations.extend(self._cross_references(candidate))
        violations.extend(self._dangling_contracts(candidate))

        unique: dict[tuple[str, str, str], Violation] = {}
        for violation in violations:
            unique.setdefault(violation.key, violation)
        report = ValidationReport(violations=sorted(unique.values(), key=lambda violation: violation.key))
        if report.ok:
            logger.info("Validation passed for %d bundle(s)", len(candidate.bundles))
        else:
            logger.info(
                "Validation found %d violation(s): %s",
                len(report.violations),
                ", ".join(f"{violation.kind.value}({violation.subject})" for violation in report.violations),
            )
        return report

    @staticmethod
    def _infeasible(candidate: CandidateSeries) -> list[Violation]:
        return [
            Violation(kind=ViolationKind.DECOMPOSITION_INFEASIBLE, subject=unit, message=message)
            for unit, message in candidate.infeasible_units.items()
        ]

    @staticmethod
    def _duplicate_slugs(candidate: CandidateSeries) -> list[Violation]:
        counts = Counter(candidate.slugs)
        return [
            Violation(kind=ViolationKind.DUPLICATE_SLUG, subject=slug, message=f"slug used by {count} bundles")
            for slug, count in counts.items()
            if count > 1
        ]

    def _bundle_checks(self, bundle: Bundle) -> list[Violation]:
        violations: list[Violation] = []
        if bundle.lo_budget_lines_estimate > self.line_budget:
            violations.append(
                Violation(
                    kind=ViolationKind.BUDGET_EXCEEDED,
                    subject=bundle.slug,
                    message=f"estimated {bundle.lo_budget_lines_estimate} lines, budget is {self.line_budget}",
                )
            )
        if bundle.purpose_demo is None or not bundle.purpose_demo.is_complete():
            violations.append(
                Violation(
                    kind=ViolationKind.MISSING_PURPOSE_DEMO,
                    subject=bundle.slug,
                    message="no deliverable with an observable effect",
                )
            )
        if bundle.open_questions:
            violations.append(
                Violation(
                    kind=ViolationKind.OPEN_QUESTION_PRESENT,
                    subject=bundle.slug,
                    message=f"{len(bundle.open_questions)} open question(s): {bundle.open_questions[0]}",
                )
            )
        return violations

    @staticmethod
    def _cross_references(candidate: CandidateSeries) -> list[Violation]:
        """Scan the exact rendered text of each bundle for any other bundle's slug."""
        patterns = {slug: slug_pattern(slug) for slug in dict.fromkeys(candidate.slugs)}
        violations: list[Violation] = []
        for bundle in candidate.bundles:
            documents = render_bundle(bundle, candidate.contracts)
            for target, pattern in patterns.items():
                if target == bundle.slug:
                    continue
                hits = [name for name, text in documents.items() if pattern.search(text)]
                if hits:
                    violations.append(
                        Violation(
                            kind=ViolationKind.CROSS_BUNDLE_REFERENCE,
                            subject=bundle.slug,
                            target=target,
                            message=f"mentions {target} in {', '.join(hits)}",
                        )
                    )
        return violations

    @staticmethod
    def _dangling_contracts(candidate: CandidateSeries) -> list[Violation]:
        position = {bundle.slug: index for index, bundle in enumerate(candidate.bundles)}
        introducers: dict[str, list[str]] = {}
        for bundle in candidate.bundles:
            for contract_id in bundle.contracts_introduced:
                introducers.setdefault(contract_id, []).append(bundle.slug)

        problems: dict[str, str] = {}
        for bundle in candidate.bundles:
            for contract_id in bundle.prerequisites:
                sources = introducers.get(contract_id, [])
                if contract_id not in candidate.contracts:
                    problems.setdefault(contract_id, "consumed but missing from the contract catalog")
                elif not sources:
                    problems.setdefault(contract_id, f"consumed by {bundle.slug} but never introduced")
                elif position[sources[0]] > position[bundle.slug]:
                    problems.setdefault(contract_id, f"consumed by {bundle.slug} before it is introduced")

        for contract_id, sources in introducers.items():
            if len(sources) > 1:
                problems.setdefault(contract_id, f"introduced by {len(sources)} bundles")

        for contract in candidate.contracts.values():
            if contract.id in problems:
                continue
            if contract.introduced_by is None and contract.consumed_by:
                problems[contract.id] = "consumed but never introduced"
            elif contract.introduced_by is not None and not contract.consumed_by and not contract.terminal:
                problems[contract.id] = f"introduced by {contract.introduced_by} but never consumed"

        return [
            Violation(kind=ViolationKind.DANGLING_CONTRACT, subject=contract_id, message=message)
            for contract_id, message in problems.items()
        ]
