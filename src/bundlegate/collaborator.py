from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field, ValidationError

from .models import ConstraintStrength, EvidenceCategory, ExtractedRecord, Question
from .settings import RuntimeSettings
from .utils import dedupe_slug, slugify_name

logger = logging.getLogger(__name__)

_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+?)\s*#*\s*$")
_BULLET_RE = re.compile(r"^(\s*)(?:[-*+]|\d+[.)])\s+(.*)$")
_HARD_RE = re.compile(r"\b(must|shall|never|only)\b", re.IGNORECASE)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Checked in order; the first matching pattern names the heading's category.
_HEADING_CATEGORIES: tuple[tuple[re.Pattern[str], EvidenceCategory], ...] = (
    (re.compile(r"\bnon[- ]?goals?\b|\bout of scope\b|\bnot in scope\b", re.I), EvidenceCategory.NON_GOAL),
    (re.compile(r"\bglossary\b|\bterms\b|\bdefinitions?\b", re.I), EvidenceCategory.GLOSSARY_TERM),
    (re.compile(r"\bcurrent state\b|\bas[- ]is\b|\bbackground\b|\bexisting\b|\btoday\b", re.I), EvidenceCategory.CURRENT_STATE),
    (re.compile(r"\btarget state\b|\bto[- ]be\b|\bdesired state\b|\bfuture state\b|\bvision\b", re.I), EvidenceCategory.TARGET_STATE),
    (re.compile(r"\bconstraints?\b|\blimitations?\b|\bpolic(y|ies)\b|\bassumptions?\b", re.I), EvidenceCategory.CONSTRAINT),
    (re.compile(r"\brisks?\b|\bconcerns?\b", re.I), EvidenceCategory.RISK),
    (re.compile(r"\brequirements?\b|\bscope\b|\bfeatures?\b|\bdeliverables?\b|\bwork items?\b", re.I), EvidenceCategory.REQUIREMENT),
    (re.compile(r"\bgoals?\b|\bobjectives?\b|\bpurpose\b|\bsuccess\b", re.I), EvidenceCategory.GOAL),
)


class TextCollaborator(Protocol):
    """Text understanding used by the pipeline. Both calls are side-effect free."""

    def extract(self, text: str, hints: Mapping[str, Any]) -> list[ExtractedRecord]:
        ...

    def phrase_question(self, question: Question) -> str:
        ...


def heading_category(heading: str) -> EvidenceCategory | None:
    for pattern, category in _HEADING_CATEGORIES:
        if pattern.search(heading):
            return category
    return None


def constraint_strength(text: str) -> ConstraintStrength:
    return ConstraintStrength.HARD if _HARD_RE.search(text) else ConstraintStrength.SOFT


def _record(category: EvidenceCategory, text: str, anchor: str) -> ExtractedRecord:
    strength = constraint_strength(text) if category == EvidenceCategory.CONSTRAINT else None
    return ExtractedRecord(category=category, text=text, anchor=anchor, strength=strength)


@dataclass
class _Section:
    level: int
    slug: str
    category: EvidenceCategory | None
    paragraphs: int = 0


class HeuristicCollaborator:
    """Deterministic Markdown reader.

    Headings select the category; nested headings inherit it and name the
    anchor section. Every bullet and paragraph under a categorised heading
    becomes one record anchored at ``<source>#<section>/p<N>``.

    Recognised hints: ``source`` (anchor prefix, default ``input``) and
    ``default_category`` (category for text under uncategorised headings;
    such text is skipped when absent).
    """

    def extract(self, text: str, hints: Mapping[str, Any]) -> list[ExtractedRecord]:
        source = str(hints.get("source") or "input")
        default = hints.get("default_category")
        default_category = EvidenceCategory(default) if default is not None else None

        records: list[ExtractedRecord] = []
        used_sections: set[str] = set()
        stack: list[_Section] = []
        root = _Section(level=0, slug=dedupe_slug("preamble", used_sections), category=default_category)
        buffer: list[str] = []

        def current() -> _Section:
            return stack[-1] if stack else root

        def flush() -> None:
            joined = " ".join(part.strip() for part in buffer if part.strip())
            buffer.clear()
            section = current()
            category = section.category or default_category
            if not joined or category is None:
                return
            section.paragraphs += 1
            records.append(_record(category, joined, f"{source}#{section.slug}/p{section.paragraphs}"))

        for line in text.splitlines():
            heading = _HEADING_RE.match(line)
            if heading:
                flush()
                level = len(heading.group(1))
                title = heading.group(2)
                while stack and stack[-1].level >= level:
                    stack.pop()
                inherited = stack[-1].category if stack else None
                category = inherited or heading_category(title)
                slug = dedupe_slug(slugify_name(title) or "section", used_sections)
                stack.append(_Section(level=level, slug=slug, category=category))
                continue

            if not line.strip():
                flush()
                continue

            bullet = _BULLET_RE.match(line)
            if bullet:
                flush()
                buffer.append(bullet.group(2))
                continue
            buffer.append(line)
        flush()

        logger.debug("Extracted %d record(s) from %s", len(records), source)
        return records

    def phrase_question(self, question: Question) -> str:
        return f"{question.text}\n  ({question.impact_note} Evidence: {', '.join(question.evidence_refs)})"


# ---------------------------------------------------------------------------
# LLM-backed collaborator
# ---------------------------------------------------------------------------


class SupportsInvoke(Protocol):
    """Any LangChain-compatible runnable."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


class DraftRecord(BaseModel):
    category: EvidenceCategory
    text: str = Field(min_length=1)
    section: str = Field(min_length=1, description="Heading or topic the statement belongs to")


class ExtractionResult(BaseModel):
    records: list[DraftRecord] = Field(default_factory=list)


class PhrasedQuestion(BaseModel):
    text: str = Field(min_length=1)


def ensure_openai_api_key(repo_root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, loading ``<repo_root>/.env`` (cwd by default) first.

    Raises:
        RuntimeError: If the key is still unavailable.
    """
    env_path = (repo_root if repo_root is not None else Path.cwd()) / ".env"
    if env_path.is_file():
        load_dotenv(env_path)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required when BUNDLEGATE_USE_LLM is enabled")
    return key


def normalize_structured_output(raw_output: Any, schema: type[ModelT]) -> ModelT:  # noqa: ANN401
    """Coerce a structured-output response (model, dict or include_raw envelope) into ``schema``.

    Raises:
        RuntimeError: If the payload cannot be parsed or validated.
    """
    payload = raw_output
    if isinstance(payload, dict) and "parsed" in payload and "parsing_error" in payload:
        if payload["parsing_error"] is not None:
            raise RuntimeError(f"{schema.__name__} parsing failed: {payload['parsing_error']!r}")
        payload = payload["parsed"]
        if payload is None:
            raise RuntimeError(f"{schema.__name__} output returned no parsed payload")
    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise RuntimeError(f"{schema.__name__} output has unsupported type {type(payload).__name__}")
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise RuntimeError(f"{schema.__name__} output failed validation: {exc}") from exc


def structured_runnable(model_name: str, schema: type[BaseModel], *, repo_root: Path | None = None) -> SupportsInvoke:
    ensure_openai_api_key(repo_root)
    model = ChatOpenAI(model=model_name, temperature=0.0, timeout=120, max_retries=3)
    return model.with_structured_output(schema, method="function_calling")


_EXTRACTION_PROMPT = """Classify every statement in the document below as one of:
Goal, CurrentState, TargetState, Requirement, NonGoal, Constraint, Risk, GlossaryTerm.
Quote each statement verbatim as `text` and give the heading it appears under as `section`.
Do not invent statements and do not merge separate bullets.

Source: {source}
---
{text}
"""

_PHRASING_PROMPT = """Rewrite this planning question so a stakeholder can answer it in one or two sentences.
Keep every identifier in upper case (e.g. CTX-AUTH) exactly as written.

Question: {text}
Why it matters: {impact}
"""


class LLMCollaborator:
    """TextCollaborator backed by ``ChatOpenAI.with_structured_output``.

    Anchors are assigned locally from the returned sections, so every record
    carries a non-empty, stable locator regardless of model output.
    """

    def __init__(self, *, extraction: SupportsInvoke, phrasing: SupportsInvoke) -> None:
        self._extraction = extraction
        self._phrasing = phrasing

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "LLMCollaborator":
        return cls(
            extraction=structured_runnable(settings.model_extraction, ExtractionResult, repo_root=repo_root),
            phrasing=structured_runnable(settings.model_phrasing, PhrasedQuestion, repo_root=repo_root),
        )

    def extract(self, text: str, hints: Mapping[str, Any]) -> list[ExtractedRecord]:
        source = str(hints.get("source") or "input")
        raw = self._extraction.invoke(_EXTRACTION_PROMPT.format(source=source, text=text))
        result = normalize_structured_output(raw, ExtractionResult)

        used: set[str] = set()
        slugs: dict[str, str] = {}
        counters: dict[str, int] = {}
        records: list[ExtractedRecord] = []
        for draft in result.records:
            key = draft.section.strip().lower()
            if key not in slugs:
                slugs[key] = dedupe_slug(slugify_name(draft.section) or "section", used)
            slug = slugs[key]
            counters[slug] = counters.get(slug, 0) + 1
            records.append(_record(draft.category, draft.text.strip(), f"{source}#{slug}/p{counters[slug]}"))
        logger.info("LLM extracted %d record(s) from %s", len(records), source)
        return records

    def phrase_question(self, question: Question) -> str:
        raw = self._phrasing.invoke(_PHRASING_PROMPT.format(text=question.text, impact=question.impact_note))
        phrased = normalize_structured_output(raw, PhrasedQuestion)
        return phrased.text.strip()


def build_collaborator(settings: RuntimeSettings, *, repo_root: Path | None = None) -> TextCollaborator:
    if settings.use_llm:
        return LLMCollaborator.from_settings(settings, repo_root=repo_root)
    return HeuristicCollaborator()
