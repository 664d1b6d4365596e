from __future__ import annotations

import logging
import threading
from typing import Iterable, Iterator

from .errors import DuplicateAnchorConflict
from .models import ChecklistDimension, ConstraintStrength, Determination, EvidenceCategory, EvidenceItem, ExtractedRecord
from .utils import is_placeholder

logger = logging.getLogger(__name__)


class CategoryView:
    """Lazy, restartable view over one category of an append-only store.

    Each iteration walks the items present at the time iteration starts, so
    the sequence is finite even if the store grows afterwards.
    """

    __slots__ = ("_store", "_category")

    def __init__(self, store: "EvidenceStore", category: EvidenceCategory) -> None:
        self._store = store
        self._category = category

    def __iter__(self) -> Iterator[EvidenceItem]:
        for item in self._store.snapshot():
            if item.category == self._category:
                yield item


class EvidenceStore:
    """Append-only log of anchored evidence.

    No update or delete exists; a correction is recorded as a new item
    carrying a ``contradiction_note``. Appends are serialized through
    a single writer lock.
    """

    def __init__(self) -> None:
        self._items: list[EvidenceItem] = []
        self._by_id: dict[str, EvidenceItem] = {}
        self._by_anchor: dict[str, list[EvidenceItem]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[EvidenceItem]:
        return iter(self.snapshot())

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._by_id

    def _next_id(self) -> str:
        return f"E-{len(self._items) + 1:04d}"

    def record(
        self,
        *,
        category: EvidenceCategory,
        text: str,
        anchor: str,
        source_ref: str,
        strength: ConstraintStrength | None = None,
        contradiction_note: str | None = None,
        resolves: str | None = None,
        determination: Determination | None = None,
        recorded_at: str | None = None,
    ) -> str:
        """Append one item and return its id.

        Recording an identical (anchor, category, text) triple again returns
        the existing id.

        Raises:
            DuplicateAnchorConflict: If the anchor already holds an item of a
                different category and no contradiction note is supplied.
            pydantic.ValidationError: If the item shape is invalid (empty anchor,
                missing constraint strength).
        """
        with self._lock:
            for existing in self._by_anchor.get(anchor, []):
                if existing.category == category and existing.text == text:
                    return existing.id
                if existing.category != category and not (contradiction_note or "").strip():
                    raise DuplicateAnchorConflict(anchor, existing.id, existing.category.value, category.value)

            item = EvidenceItem(
                id=self._next_id(),
                category=category,
                text=text,
                anchor=anchor,
                source_ref=source_ref,
                strength=strength,
                contradiction_note=contradiction_note,
                resolves=resolves,
                determination=determination,
                recorded_at=recorded_at,
            )
            self._items.append(item)
            self._by_id[item.id] = item
            self._by_anchor.setdefault(anchor, []).append(item)
        logger.debug("Recorded %s %s at %s", item.id, category.value, anchor)
        return item.id

    def record_extracted(self, records: Iterable[ExtractedRecord], *, source_ref: str) -> list[str]:
        return [
            self.record(
                category=record.category,
                text=record.text,
                anchor=record.anchor,
                source_ref=source_ref,
                strength=record.strength,
            )
            for record in records
        ]

    def get(self, item_id: str) -> EvidenceItem:
        try:
            return self._by_id[item_id]
        except KeyError as exc:
            raise KeyError(f"unknown evidence item: {item_id}") from exc

    def snapshot(self) -> tuple[EvidenceItem, ...]:
        with self._lock:
            return tuple(self._items)

    def query_by_category(self, category: EvidenceCategory) -> CategoryView:
        return CategoryView(self, category)

    def contradictions(self) -> list[EvidenceItem]:
        return [item for item in self.snapshot() if item.contradiction_note]

    def answers_for(self, question_id: str) -> list[EvidenceItem]:
        return [item for item in self.snapshot() if item.resolves == question_id]

    def interview_items(self) -> list[EvidenceItem]:
        return [item for item in self.snapshot() if item.resolves is not None]


def work_items(items: Iterable[EvidenceItem]) -> list[EvidenceItem]:
    """Evidence that plans work: Requirement items, or TargetState items when no Requirement exists.

    Waivers and placeholders never plan work. Interview answers only do when
    they answer the deliverables question.
    """

    def plans_work(item: EvidenceItem) -> bool:
        if item.determination == Determination.NOT_REQUIRED or is_placeholder(item.text):
            return False
        return item.resolves is None or item.section == ChecklistDimension.DELIVERABLES.value

    usable = [item for item in items if plans_work(item)]
    requirements = [item for item in usable if item.category == EvidenceCategory.REQUIREMENT]
    if requirements:
        return requirements
    return [item for item in usable if item.category == EvidenceCategory.TARGET_STATE]
