from __future__ import annotations

import re
from dataclasses import dataclass, field


TESTABLE_VERB_RE = re.compile(
    r"\b(returns|displays|raises|writes|emits|rejects|validates|produces|creates|records|updates|prints|shows|responds|reports|exports|sends)\b",
    re.IGNORECASE,
)
PLACEHOLDER_VALUES = frozenset({"tbd", "todo", "tba", "n/a", "na", "none", "unknown", "?", "-", "..."})
OPEN_MARKER_RE = re.compile(r"\b(TBD|TODO|TBA)\b|\?\?|\?\s*$")
LINE_ESTIMATE_RE = re.compile(r"(?:~|≈)?\s*\b(\d{1,5})\s*(?:lines|loc)\b", re.IGNORECASE)

# Contract tokens are upper-case capability names such as CTX-AUTH or API-V2.
CONTRACT_TOKEN_RE = re.compile(r"\b[A-Z][A-Z0-9]*(?:-[A-Z][A-Z0-9]*)+\b")
_CONTRACT_VERB_RE = re.compile(r"\b(provides|introduces|exposes|requires|consumes|uses|depends on)\b", re.IGNORECASE)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!;])\s+")


def slugify_name(name: str, *, max_length: int = 40) -> str:
    slug = re.sub(r"[^a-zA-Z0-9]+", "-", name.lower()).strip("-")
    slug = re.sub(r"-{2,}", "-", slug)
    return slug[:max_length].rstrip("-")


def dedupe_slug(base_slug: str, used: set[str], *, max_length: int = 48) -> str:
    if base_slug not in used:
        used.add(base_slug)
        return base_slug

    suffix_ord = ord("a")
    while True:
        suffix = f"-{chr(suffix_ord)}"
        candidate = f"{base_slug[: max_length - len(suffix)]}{suffix}".rstrip("-")
        if candidate not in used:
            used.add(candidate)
            return candidate
        suffix_ord += 1
        if suffix_ord > ord("z"):
            raise ValueError(f"unable to disambiguate slug for base '{base_slug}'")


def humanize_slug(slug: str) -> str:
    words = [word for word in slug.split("-") if word]
    return " ".join(words).capitalize() if words else slug


def normalize_text(text: str) -> str:
    return " ".join(re.sub(r"[^a-z0-9 ]+", " ", text.lower()).split())


def is_placeholder(text: str) -> bool:
    value = text.strip().strip(".:").strip().lower()
    return not value or value in PLACEHOLDER_VALUES


def has_open_marker(text: str) -> bool:
    return bool(OPEN_MARKER_RE.search(text.strip()))


def observable_clause(text: str) -> str | None:
    """Return the first sentence carrying a testable verb, if any."""
    for sentence in _SENTENCE_SPLIT_RE.split(text.strip()):
        if TESTABLE_VERB_RE.search(sentence):
            return sentence.strip().rstrip(".;")
    return None


def declared_line_estimate(text: str) -> int | None:
    match = LINE_ESTIMATE_RE.search(text)
    if match is None:
        return None
    value = int(match.group(1))
    return value if value > 0 else None


def short_name(text: str, *, max_words: int = 8) -> str:
    first = _SENTENCE_SPLIT_RE.split(text.strip())[0].rstrip(".;:")
    words = first.split()
    if len(words) <= max_words:
        return first
    return " ".join(words[:max_words]) + "…"


@dataclass
class ContractUsage:
    introduces: list[str] = field(default_factory=list)
    exposes: list[str] = field(default_factory=list)
    consumes: list[str] = field(default_factory=list)

    @property
    def provided(self) -> list[str]:
        return _ordered_unique(self.introduces + self.exposes)


def contract_usage(text: str) -> ContractUsage:
    """Parse ``provides/exposes/requires <TOKEN>`` phrases into contract usage.

    Each verb governs the tokens that follow it up to the next verb or the end
    of the clause. ``exposes`` marks a capability published outside the series.
    """
    usage = ContractUsage()
    parts = _CONTRACT_VERB_RE.split(text)
    for verb, segment in zip(parts[1::2], parts[2::2]):
        clause = re.split(r"[.;\n]", segment, maxsplit=1)[0]
        tokens = CONTRACT_TOKEN_RE.findall(clause)
        verb = verb.lower()
        if verb in {"provides", "introduces"}:
            usage.introduces.extend(tokens)
        elif verb == "exposes":
            usage.exposes.extend(tokens)
        else:
            usage.consumes.extend(tokens)
    usage.introduces = _ordered_unique(usage.introduces)
    usage.exposes = _ordered_unique(usage.exposes)
    usage.consumes = [token for token in _ordered_unique(usage.consumes) if token not in usage.provided]
    return usage


def _ordered_unique(values: list[str]) -> list[str]:
    ordered: list[str] = []
    seen: set[str] = set()
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered
