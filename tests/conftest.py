from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from dialectic_jobs import JobOrchestrator, JobSpec, JobType, ProcessTemplate
from dialectic_jobs.settings import RuntimeSettings


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep DIALECTIC_* variables and stray .env files out of every test."""
    for name in (
        "DIALECTIC_STATE_STORE_ROOT",
        "DIALECTIC_RECIPE_ROOT",
        "DIALECTIC_PROCESS_TEMPLATE_PATH",
        "DIALECTIC_ADVANCE_TO_PENDING_NEXT_STAGE",
        "DIALECTIC_RECONCILE_ON_TRANSITION",
        "DIALECTIC_RECURSION_LIMIT",
        "DIALECTIC_DEFAULT_MAX_RETRIES",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def write_recipe(root: Path, stage_slug: str, steps: list[dict[str, Any]]) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    path = root / f"{stage_slug}.json"
    recipe = {"recipe_id": f"test-{stage_slug}", "stage_slug": stage_slug, "version": 1, "steps": steps}
    path.write_text(json.dumps(recipe), encoding="utf-8")
    return path


def make_orchestrator(tmp_path: Path, **overrides: Any) -> JobOrchestrator:
    recipe_root = overrides.pop("recipe_root", None)
    process_template = overrides.pop("process_template", None)
    settings = RuntimeSettings(state_store_root=str(tmp_path / "store"), **overrides)
    return JobOrchestrator(settings=settings, recipe_root=recipe_root, process_template=process_template)


def run_job(orchestrator: JobOrchestrator, job_id: str, results: dict[str, Any] | None = None) -> None:
    assert orchestrator.claim_job(job_id) is not None
    assert orchestrator.complete_job(job_id, results) is not None


def spec(
    stage_slug: str,
    job_type: JobType,
    step_key: str | None,
    *,
    prerequisite_job_id: str | None = None,
    iteration_number: int = 1,
    **payload: Any,
) -> JobSpec:
    return JobSpec(
        stage_slug=stage_slug,
        iteration_number=iteration_number,
        job_type=job_type,
        step_key=step_key,
        prerequisite_job_id=prerequisite_job_id,
        payload=payload,
    )


@pytest.fixture
def orchestrator(tmp_path: Path) -> JobOrchestrator:
    return make_orchestrator(tmp_path)


@pytest.fixture
def fanin_orchestrator(tmp_path: Path) -> JobOrchestrator:
    """Two-stage pipeline: a planner fanning out per model, then a review stage."""
    recipe_root = tmp_path / "recipes"
    write_recipe(
        recipe_root,
        "draft",
        [
            {"step_key": "draft_plan", "job_type": "PLAN", "cardinality": "single"},
            {"step_key": "draft_write", "job_type": "EXECUTE", "cardinality": "per_model"},
        ],
    )
    write_recipe(
        recipe_root,
        "review",
        [{"step_key": "review_write", "job_type": "EXECUTE", "cardinality": "per_model"}],
    )
    template = ProcessTemplate(id="draft-review", name="Draft and review", stages=["draft", "review"])
    return make_orchestrator(tmp_path, recipe_root=recipe_root, process_template=template)

