from __future__ import annotations

from pathlib import Path

import pytest

from conftest import make_orchestrator, run_job, spec, write_recipe
from dialectic_jobs import (
    JobOrchestrator,
    JobStatus,
    JobType,
    ProcessTemplate,
    SessionNotFoundError,
    StageNotFoundError,
    StepAnomaly,
    StepStatus,
    derive_stage_status,
)
from dialectic_jobs.progress import collapse_model_statuses


def test_progress_lists_only_stages_with_jobs(orchestrator: JobOrchestrator) -> None:
    session = orchestrator.create_session("PROJ-1", ["model-a"])
    assert orchestrator.get_stage_progress(session.id) == []

    orchestrator.submit_job(session.id, spec("thesis", JobType.PLAN, "thesis_build_stage_header"))
    orchestrator.submit_job(session.id, spec("antithesis", JobType.PLAN, "antithesis_plan_critiques"))

    entries = orchestrator.get_stage_progress(session.id, 1)
    assert [entry.stage_slug for entry in entries] == ["antithesis", "thesis"]

    thesis = entries[1]
    assert set(thesis.steps) == {
        "thesis_build_stage_header",
        "thesis_generate_business_case",
        "thesis_generate_feature_spec",
        "thesis_render_business_case",
        "thesis_render_feature_spec",
    }
    assert thesis.steps["thesis_build_stage_header"].status == StepStatus.IN_PROGRESS
    assert thesis.steps["thesis_build_stage_header"].pending_jobs == 1
    assert thesis.steps["thesis_generate_business_case"].status == StepStatus.NOT_STARTED
    assert thesis.steps["thesis_generate_business_case"].expected_jobs == 1


def test_unknown_session_is_not_found(orchestrator: JobOrchestrator) -> None:
    with pytest.raises(SessionNotFoundError):
        orchestrator.progress.get_stage_progress("SES-missing", 1)


def test_unknown_stage_entry_is_not_found(orchestrator: JobOrchestrator) -> None:
    session = orchestrator.create_session("PROJ-1", ["model-a"])
    with pytest.raises(StageNotFoundError):
        orchestrator.get_stage_entry(session.id, "no-such-stage")


def test_orphaned_jobs_surface_as_anomalies(orchestrator: JobOrchestrator) -> None:
    session = orchestrator.create_session("PROJ-1", ["model-a"])
    unbound = orchestrator.submit_job(session.id, spec("thesis", JobType.EXECUTE, None))
    drifted = orchestrator.submit_job(session.id, spec("thesis", JobType.EXECUTE, "thesis_retired_step"))

    entry = orchestrator.get_stage_entry(session.id, "thesis")
    assert entry.steps[f"__job:{unbound.id}"].anomaly == StepAnomaly.UNBOUND_STEP
    assert entry.steps[f"__job:{drifted.id}"].anomaly == StepAnomaly.UNKNOWN_STEP_KEY
    assert entry.steps[f"__job:{drifted.id}"].total_jobs == 1


def test_aggregation_is_idempotent(orchestrator: JobOrchestrator) -> None:
    session = orchestrator.create_session("PROJ-1", ["model-a", "model-b"])
    plan = orchestrator.submit_job(session.id, spec("thesis", JobType.PLAN, "thesis_build_stage_header"))
    orchestrator.plan_children(
        plan.id,
        [
            spec("thesis", JobType.EXECUTE, "thesis_generate_business_case", model_id="model-a"),
            spec("thesis", JobType.EXECUTE, "thesis_generate_business_case", model_id="model-b"),
        ],
    )
    first = orchestrator.get_stage_progress(session.id)
    second = orchestrator.get_stage_progress(session.id)
    assert first == second
    fingerprint = orchestrator.progress_fingerprint(session.id)
    assert fingerprint == orchestrator.progress_fingerprint(session.id)

    run_job(orchestrator, plan.id)
    assert orchestrator.progress_fingerprint(session.id) != fingerprint


def test_model_job_statuses_for_execute_steps(orchestrator: JobOrchestrator) -> None:
    session = orchestrator.create_session("PROJ-1", ["model-a", "model-b", "model-c"])
    step = "thesis_generate_business_case"
    done = orchestrator.submit_job(session.id, spec("thesis", JobType.EXECUTE, step, model_id="model-a"))
    running = orchestrator.submit_job(session.id, spec("thesis", JobType.EXECUTE, step, model_id="model-b"))
    orchestrator.submit_job(session.id, spec("thesis", JobType.EXECUTE, step, model_id="model-c"))
    run_job(orchestrator, done.id)
    orchestrator.claim_job(running.id)

    progress = orchestrator.get_stage_entry(session.id, "thesis").steps[step]
    assert progress.model_job_statuses == {
        "model-a": StepStatus.COMPLETED,
        "model-b": StepStatus.IN_PROGRESS,
        "model-c": StepStatus.NOT_STARTED,
    }
    assert (progress.completed_jobs, progress.in_progress_jobs, progress.pending_jobs) == (1, 1, 1)
    assert progress.expected_jobs == 3


def test_collapse_model_statuses() -> None:
    assert collapse_model_statuses([]) == StepStatus.NOT_STARTED
    assert collapse_model_statuses([JobStatus.COMPLETED, JobStatus.PENDING]) == StepStatus.IN_PROGRESS
    assert collapse_model_statuses([JobStatus.COMPLETED, JobStatus.FAILED]) == StepStatus.FAILED
    assert collapse_model_statuses([JobStatus.WAITING_FOR_PREREQUISITE]) == StepStatus.NOT_STARTED


def test_latest_render_wins_document_slot(orchestrator: JobOrchestrator) -> None:
    session = orchestrator.create_session("PROJ-1", ["model-a"])
    step = "thesis_render_business_case"
    first = orchestrator.submit_job(session.id, spec("thesis", JobType.RENDER, step, model_id="model-a"))
    run_job(orchestrator, first.id, {"resource_id": "RES-old"})
    rerun = orchestrator.submit_job(session.id, spec("thesis", JobType.RENDER, step, model_id="model-a"))

    documents = orchestrator.get_stage_entry(session.id, "thesis").documents
    assert len(documents) == 1
    assert documents[0].job_id == first.id
    assert documents[0].latest_rendered_resource_id == "RES-old"

    run_job(orchestrator, rerun.id, {"resource_id": "RES-new"})
    documents = orchestrator.get_stage_entry(session.id, "thesis").documents
    assert [(doc.document_key, doc.job_id, doc.latest_rendered_resource_id) for doc in documents] == [
        ("business_case", rerun.id, "RES-new")
    ]
    dumped = documents[0].model_dump(by_alias=True)
    assert dumped["documentKey"] == "business_case"
    assert dumped["latestRenderedResourceId"] == "RES-new"


def test_derive_stage_status_precedence(orchestrator: JobOrchestrator) -> None:
    session = orchestrator.create_session("PROJ-1", ["model-a"])
    assert derive_stage_status(orchestrator.get_stage_entry(session.id, "thesis")) == StepStatus.NOT_STARTED

    plan = orchestrator.submit_job(session.id, spec("thesis", JobType.PLAN, "thesis_build_stage_header"))
    assert orchestrator.stage_status(session.id, "thesis") == StepStatus.IN_PROGRESS

    orchestrator.fail_job(plan.id, {"code": "insufficient_funds", "message": "wallet empty"})
    assert orchestrator.stage_status(session.id, "thesis") == StepStatus.FAILED


def test_template_and_cloned_recipes_aggregate_alike(tmp_path: Path) -> None:
    recipe_root = tmp_path / "recipes"
    write_recipe(recipe_root, "draft", [{"step_key": "draft_write", "job_type": "EXECUTE", "cardinality": "per_model"}])
    template = ProcessTemplate(id="draft-only", name="Draft only", stages=["draft"])
    orchestrator = make_orchestrator(tmp_path, recipe_root=recipe_root, process_template=template)

    shared = orchestrator.create_session("PROJ-1", ["model-a"])
    cloned = orchestrator.create_session("PROJ-1", ["model-a"], clone_recipes=True)
    assert shared.recipe_instance_id is None
    assert cloned.recipe_instance_id is not None
    assert orchestrator.recipes.provider_for(shared).source == "template"
    assert orchestrator.recipes.provider_for(cloned).source == "cloned"

    # Template drift after cloning does not affect the cloned session.
    write_recipe(recipe_root, "draft", [{"step_key": "draft_rewrite", "job_type": "EXECUTE"}])
    orchestrator = make_orchestrator(tmp_path, recipe_root=recipe_root, process_template=template)

    for session in (shared, cloned):
        orchestrator.submit_job(session.id, spec("draft", JobType.EXECUTE, "draft_write", model_id="model-a"))

    shared_entry = orchestrator.get_stage_entry(shared.id, "draft")
    cloned_entry = orchestrator.get_stage_entry(cloned.id, "draft")
    assert "draft_write" in cloned_entry.steps
    assert cloned_entry.steps["draft_write"].anomaly is None
    assert "draft_rewrite" in shared_entry.steps
    assert any(step.anomaly == StepAnomaly.UNKNOWN_STEP_KEY for step in shared_entry.steps.values())


def test_next_blocker_prefers_render_then_execute_then_plan(orchestrator: JobOrchestrator) -> None:
    session = orchestrator.create_session("PROJ-1", ["model-a"])
    assert orchestrator.resolve_next_blocker(session.id, "thesis", "model-a", "business_case") is None

    plan = orchestrator.submit_job(
        session.id,
        spec("thesis", JobType.PLAN, "thesis_render_business_case", model_id="model-a"),
    )
    blocker = orchestrator.resolve_next_blocker(session.id, "thesis", "model-a", "business_case")
    assert blocker is not None and blocker.id == plan.id

    execute = orchestrator.submit_job(
        session.id,
        spec(
            "thesis",
            JobType.EXECUTE,
            "thesis_generate_business_case",
            model_id="model-a",
            output_type="business_case",
        ),
    )
    blocker = orchestrator.resolve_next_blocker(session.id, "thesis", "model-a", "business_case")
    assert blocker is not None and blocker.id == execute.id

    render = orchestrator.submit_job(
        session.id,
        spec(
            "thesis",
            JobType.RENDER,
            "thesis_render_business_case",
            model_id="model-a",
            document_key="business_case",
        ),
    )
    blocker = orchestrator.resolve_next_blocker(session.id, "thesis", "model-a", "business_case")
    assert blocker is not None and blocker.id == render.id

    # Other models and finished jobs never block.
    assert orchestrator.resolve_next_blocker(session.id, "thesis", "model-b", "business_case") is None
    run_job(orchestrator, render.id)
    blocker = orchestrator.resolve_next_blocker(session.id, "thesis", "model-a", "business_case")
    assert blocker is not None and blocker.id == execute.id


def test_documents_only_come_from_document_steps(tmp_path: Path) -> None:
    recipe_root = tmp_path / "recipes"
    write_recipe(
        recipe_root,
        "draft",
        [
            {"step_key": "draft_render_notes", "job_type": "RENDER"},
            {"step_key": "draft_render_report", "job_type": "RENDER", "output_document_key": "report"},
        ],
    )
    template = ProcessTemplate(id="draft-only", name="Draft only", stages=["draft"])
    orchestrator = make_orchestrator(tmp_path, recipe_root=recipe_root, process_template=template)
    session = orchestrator.create_session("PROJ-1", ["model-a"])

    notes = orchestrator.submit_job(session.id, spec("draft", JobType.RENDER, "draft_render_notes", model_id="model-a"))
    report = orchestrator.submit_job(session.id, spec("draft", JobType.RENDER, "draft_render_report", model_id="model-a"))
    run_job(orchestrator, notes.id, {"resource_id": "RES-notes"})
    run_job(orchestrator, report.id, {"resource_id": "RES-report"})

    documents = orchestrator.get_stage_entry(session.id, "draft").documents
    assert [(doc.document_key, doc.job_id) for doc in documents] == [("report", report.id)]
