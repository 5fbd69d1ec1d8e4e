from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    recipe_root: str = ""
    process_template_path: str = ""
    advance_to_pending_next_stage: bool = True
    reconcile_on_transition: bool = True
    recursion_limit: int = 100
    default_max_retries: int = 3

    @classmethod
    def from_env(cls, *, env_root: Path | None = None) -> "RuntimeSettings":
        """Build settings from ``DIALECTIC_*`` variables.

        A ``.env`` file in *env_root* (or the cwd) is loaded first; variables
        already present in the environment take precedence over it.
        """
        env_path = (env_root if env_root is not None else Path.cwd()) / ".env"
        if env_path.is_file():
            load_dotenv(env_path)
        return cls(
            state_store_root=os.getenv("DIALECTIC_STATE_STORE_ROOT", "state_store"),
            recipe_root=os.getenv("DIALECTIC_RECIPE_ROOT", ""),
            process_template_path=os.getenv("DIALECTIC_PROCESS_TEMPLATE_PATH", ""),
            advance_to_pending_next_stage=_get_env_bool("DIALECTIC_ADVANCE_TO_PENDING_NEXT_STAGE", default=True),
            reconcile_on_transition=_get_env_bool("DIALECTIC_RECONCILE_ON_TRANSITION", default=True),
            recursion_limit=_get_env_int("DIALECTIC_RECURSION_LIMIT", default=100, minimum=10),
            default_max_retries=_get_env_int("DIALECTIC_DEFAULT_MAX_RETRIES", default=3, minimum=0, maximum=100),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        state_store_root = self.state_store_root.strip()
        if not state_store_root:
            raise ValueError("DIALECTIC_STATE_STORE_ROOT must be non-empty")
        if self.recursion_limit > 100_000:
            raise ValueError(f"DIALECTIC_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")
        if self.default_max_retries < 0:
            raise ValueError(f"DIALECTIC_DEFAULT_MAX_RETRIES must be >= 0, got: {self.default_max_retries}")

        recipe_root = self.recipe_root.strip()
        if recipe_root and not Path(recipe_root).is_dir():
            raise ValueError(f"DIALECTIC_RECIPE_ROOT is not a directory: {recipe_root}")
        process_template_path = self.process_template_path.strip()
        if process_template_path and not Path(process_template_path).is_file():
            raise ValueError(f"DIALECTIC_PROCESS_TEMPLATE_PATH does not exist: {process_template_path}")

        return RuntimeSettings(
            state_store_root=state_store_root,
            recipe_root=recipe_root,
            process_template_path=process_template_path,
            advance_to_pending_next_stage=self.advance_to_pending_next_stage,
            reconcile_on_transition=self.reconcile_on_transition,
            recursion_limit=self.recursion_limit,
            default_max_retries=self.default_max_retries,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    @property
    def recipe_root_path(self) -> Path | None:
        return Path(self.recipe_root) if self.recipe_root else None

    @property
    def process_template_file(self) -> Path | None:
        return Path(self.process_template_path) if self.process_template_path else None


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

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
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
