from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

HARD_LINE_BUDGET = 500


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    line_budget: int = HARD_LINE_BUDGET
    deliverable_weight: int = 120
    max_validation_retries: int = 3
    max_idle_rounds: int = 2
    round_min: int = 8
    round_max: int = 15
    output_root: str = "bundle_output"
    model_extraction: str = "gpt-4o"
    model_phrasing: str = "gpt-4o-mini"
    use_llm: bool = False
    recursion_limit: int = 1_000

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            line_budget=_get_env_int("BUNDLEGATE_LINE_BUDGET", default=HARD_LINE_BUDGET, minimum=50),
            deliverable_weight=_get_env_int("BUNDLEGATE_DELIVERABLE_WEIGHT", default=120, minimum=1),
            max_validation_retries=_get_env_int("BUNDLEGATE_MAX_VALIDATION_RETRIES", default=3, minimum=0, maximum=50),
            max_idle_rounds=_get_env_int("BUNDLEGATE_MAX_IDLE_ROUNDS", default=2, minimum=1, maximum=50),
            round_min=_get_env_int("BUNDLEGATE_ROUND_MIN", default=8, minimum=1),
            round_max=_get_env_int("BUNDLEGATE_ROUND_MAX", default=15, minimum=1),
            output_root=os.getenv("BUNDLEGATE_OUTPUT_ROOT", "bundle_output"),
            model_extraction=os.getenv("BUNDLEGATE_MODEL_EXTRACTION", "gpt-4o"),
            model_phrasing=os.getenv("BUNDLEGATE_MODEL_PHRASING", "gpt-4o-mini"),
            use_llm=_get_env_bool("BUNDLEGATE_USE_LLM", default=False),
            recursion_limit=_get_env_int("BUNDLEGATE_RECURSION_LIMIT", default=1_000, minimum=100),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        if self.line_budget > HARD_LINE_BUDGET:
            raise ValueError(f"BUNDLEGATE_LINE_BUDGET must be <= {HARD_LINE_BUDGET}, got: {self.line_budget}")
        if self.line_budget < 1:
            raise ValueError(f"BUNDLEGATE_LINE_BUDGET must be >= 1, got: {self.line_budget}")
        if self.deliverable_weight < 1:
            raise ValueError(f"BUNDLEGATE_DELIVERABLE_WEIGHT must be >= 1, got: {self.deliverable_weight}")
        if self.max_validation_retries < 0:
            raise ValueError(f"BUNDLEGATE_MAX_VALIDATION_RETRIES must be >= 0, got: {self.max_validation_retries}")
        if self.max_idle_rounds < 1:
            raise ValueError(f"BUNDLEGATE_MAX_IDLE_ROUNDS must be >= 1, got: {self.max_idle_rounds}")

        # -- Interview round bounds (rounds of 8-15 questions) --
        if not 8 <= self.round_min <= 15 or not 8 <= self.round_max <= 15:
            raise ValueError(
                f"interview rounds must hold 8-15 questions, got: {self.round_min}-{self.round_max}"
            )
        if self.round_min > self.round_max:
            raise ValueError(
                f"BUNDLEGATE_ROUND_MIN ({self.round_min}) must be <= BUNDLEGATE_ROUND_MAX ({self.round_max})"
            )

        output_root = self.output_root.strip()
        if not output_root:
            raise ValueError("BUNDLEGATE_OUTPUT_ROOT must be non-empty")
        model_extraction = self.model_extraction.strip()
        if not model_extraction:
            raise ValueError("BUNDLEGATE_MODEL_EXTRACTION must be non-empty")
        model_phrasing = self.model_phrasing.strip()
        if not model_phrasing:
            raise ValueError("BUNDLEGATE_MODEL_PHRASING must be non-empty")

        return replace(
            self,
            output_root=output_root,
            model_extraction=model_extraction,
            model_phrasing=model_phrasing,
        )

    def output_path(self, repo_root: Path) -> Path:
        path = Path(self.output_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")
