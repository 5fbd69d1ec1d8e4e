"""Recipe resolution for stage step definitions.

Two physical sources expose the same step contract:

* ``TemplateRecipeProvider`` reads shared, versioned stage templates.
* ``ClonedRecipeProvider`` reads a per-session copy of those templates,
  created when a session needs to diverge from the shared version.

``RecipeResolver`` chooses the variant for a session, so callers such as
the progress aggregator never branch on where steps came from.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from .models import (
    DEFAULT_PROCESS_TEMPLATE,
    DialecticSession,
    ProcessTemplate,
    RecipeStep,
    StageRecipe,
)
from .state_store import _atomic_write_text, _safe_read_json, sanitize_record_id

logger = logging.getLogger(__name__)


class StageNotFoundError(LookupError):
    """Raised when no recipe exists for a stage."""


def get_recipe_template_dir() -> Path:
    """Return the package-relative directory of the bundled stage templates."""
    return Path(__file__).resolve().parent / "recipe_templates"


def load_stage_recipe(path: Path) -> StageRecipe:
    text = _safe_read_json(path, "stage recipe")
    try:
        return StageRecipe.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"stage recipe at {path} failed validation: {exc}") from exc


def load_process_template(path: Path | None) -> ProcessTemplate:
    """Load a process template from *path*, or the dialectic default when ``None``."""
    if path is None:
        return DEFAULT_PROCESS_TEMPLATE
    text = _safe_read_json(path, "process template")
    try:
        return ProcessTemplate.model_validate_json(text)
    except ValidationError as exc:
        raise ValueError(f"process template at {path} failed validation: {exc}") from exc


@runtime_checkable
class RecipeStepProvider(Protocol):
    """Source of the required steps for a stage."""

    source: str

    def recipe_for(self, stage_slug: str) -> StageRecipe: ...

    def steps_for(self, stage_slug: str) -> list[RecipeStep]: ...


class TemplateRecipeProvider:
    """Shared stage templates stored as ``<root>/<stage_slug>.json``."""

    source = "template"

    def __init__(self, root: Path | None = None) -> None:
        self.root = Path(root) if root is not None else get_recipe_template_dir()
        self._cache: dict[str, StageRecipe] = {}

    def recipe_for(self, stage_slug: str) -> StageRecipe:
        cached = self._cache.get(stage_slug)
        if cached is not None:
            return cached
        path = self.root / f"{sanitize_record_id(stage_slug)}.json"
        if not path.is_file():
            raise StageNotFoundError(f"no recipe template for stage {stage_slug!r} under {self.root}")
        recipe = load_stage_recipe(path)
        if recipe.stage_slug != stage_slug:
            raise ValueError(f"recipe at {path} declares stage {recipe.stage_slug!r}, expected {stage_slug!r}")
        self._cache[stage_slug] = recipe
        return recipe

    def steps_for(self, stage_slug: str) -> list[RecipeStep]:
        return list(self.recipe_for(stage_slug).steps)

    def stages(self) -> list[str]:
        return sorted(path.stem for path in self.root.glob("*.json"))


class ClonedRecipeProvider:
    """Session-specific recipe copies stored as ``<root>/<instance_id>/<stage_slug>.json``."""

    source = "cloned"

    def __init__(self, root: Path, instance_id: str) -> None:
        self.root = Path(root)
        self.instance_id = sanitize_record_id(instance_id)
        self.instance_dir = self.root / self.instance_id

    def recipe_for(self, stage_slug: str) -> StageRecipe:
        path = self.instance_dir / f"{sanitize_record_id(stage_slug)}.json"
        if not path.is_file():
            raise StageNotFoundError(
                f"recipe instance {self.instance_id} has no steps for stage {stage_slug!r}"
            )
        recipe = load_stage_recipe(path)
        if recipe.stage_slug != stage_slug:
            raise ValueError(f"recipe at {path} declares stage {recipe.stage_slug!r}, expected {stage_slug!r}")
        return recipe

    def steps_for(self, stage_slug: str) -> list[RecipeStep]:
        return list(self.recipe_for(stage_slug).steps)

    @classmethod
    def clone_from(
        cls,
        template: TemplateRecipeProvider,
        *,
        root: Path,
        instance_id: str,
        stages: list[str],
    ) -> ClonedRecipeProvider:
        """Copy the template recipes for *stages* into a new instance.

        Raises:
            ValueError: If the instance already exists.
        """
        provider = cls(root, instance_id)
        if provider.instance_dir.exists():
            raise ValueError(f"Recipe instance already exists: {instance_id}")
        for stage_slug in stages:
            recipe = template.recipe_for(stage_slug)
            cloned = recipe.model_copy(update={"recipe_id": f"{recipe.recipe_id}@{provider.instance_id}"})
            _atomic_write_text(
                provider.instance_dir / f"{sanitize_record_id(stage_slug)}.json",
                cloned.model_dump_json(indent=2),
            )
        logger.info("Cloned %d stage recipes into instance %s", len(stages), provider.instance_id)
        return provider


class RecipeResolver:
    """Resolve the step contract for a session's stages."""

    def __init__(
        self,
        template_provider: TemplateRecipeProvider | None = None,
        *,
        instance_root: Path | None = None,
    ) -> None:
        self.template_provider = template_provider if template_provider is not None else TemplateRecipeProvider()
        self.instance_root = instance_root

    def provider_for(self, session: DialecticSession) -> RecipeStepProvider:
        if session.recipe_instance_id is None:
            return self.template_provider
        if self.instance_root is None:
            raise ValueError(
                f"session {session.id} uses recipe instance {session.recipe_instance_id} "
                "but no instance root is configured"
            )
        return ClonedRecipeProvider(self.instance_root, session.recipe_instance_id)

    def steps_for(self, session: DialecticSession, stage_slug: str) -> list[RecipeStep]:
        return self.provider_for(session).steps_for(stage_slug)

    def step_lookup(self, session: DialecticSession, stage_slug: str) -> dict[str, RecipeStep]:
        return {step.step_key: step for step in self.steps_for(session, stage_slug)}

    @staticmethod
    def expected_jobs(step: RecipeStep, session: DialecticSession) -> int | None:
        return step.expected_jobs(len(session.selected_model_ids))
