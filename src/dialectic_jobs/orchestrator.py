from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .advancer import StageSessionAdvancer
from .canonical import progress_fingerprint
from .models import (
    DialecticSession,
    Job,
    JobSpec,
    JobStatus,
    ProcessTemplate,
    StageProgressEntry,
    StepStatus,
)
from .progress import ProgressAggregator, derive_stage_status
from .recipes import ClonedRecipeProvider, RecipeResolver, TemplateRecipeProvider, load_process_template
from .reconciler import OutboxReconciler, ReconcileReport
from .resolver import DependencyResolver
from .settings import RuntimeSettings
from .state_store import JobStateStore

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """Entry points for job executors and progress query surfaces.

    Executors claim pending jobs and report terminal results here. Each
    terminal transition is recorded together with an outbox event; when
    ``reconcile_on_transition`` is enabled the session outbox is drained
    right away, otherwise callers drive :meth:`drain_outbox` themselves.
    """

    def __init__(
        self,
        *,
        settings: RuntimeSettings | None = None,
        state_store_root: str | Path | None = None,
        recipe_root: str | Path | None = None,
        process_template: ProcessTemplate | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        root = Path(state_store_root) if state_store_root is not None else Path(self.settings.state_store_root)
        self.store = JobStateStore(root)
        self.process_template = (
            process_template
            if process_template is not None
            else load_process_template(self.settings.process_template_file)
        )
        templates_root = Path(recipe_root) if recipe_root is not None else self.settings.recipe_root_path
        self.templates = TemplateRecipeProvider(templates_root)
        self.recipe_instance_root = self.store.root / "recipe_instances"
        self.recipes = RecipeResolver(self.templates, instance_root=self.recipe_instance_root)
        self.progress = ProgressAggregator(self.store, self.recipes)
        self.resolver = DependencyResolver(self.store)
        self.advancer = StageSessionAdvancer(
            self.store,
            self.progress,
            self.process_template,
            advance_to_pending_next_stage=self.settings.advance_to_pending_next_stage,
        )
        self.reconciler = OutboxReconciler(
            self.store,
            self.resolver,
            self.advancer,
            recursion_limit=self.settings.recursion_limit,
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        project_id: str,
        selected_model_ids: list[str],
        *,
        clone_recipes: bool = False,
        iteration_number: int = 1,
    ) -> DialecticSession:
        """Create a session at ``pending_<first stage>`` of the process template.

        With *clone_recipes* the template recipes are copied into a
        session-owned instance, and progress for the session resolves steps
        from that copy from then on.
        """
        session = DialecticSession(
            project_id=project_id,
            process_template_id=self.process_template.id,
            current_stage_slug=self.process_template.starting_stage,
            iteration_number=iteration_number,
            selected_model_ids=list(selected_model_ids),
        )
        if clone_recipes:
            instance_id = f"RI-{session.id}"
            ClonedRecipeProvider.clone_from(
                self.templates,
                root=self.recipe_instance_root,
                instance_id=instance_id,
                stages=list(self.process_template.stages),
            )
            session.recipe_instance_id = instance_id
        return self.store.create_session(session)

    def get_session(self, session_id: str) -> DialecticSession:
        return self.store.read_session(session_id)

    def start_stage(self, session_id: str) -> DialecticSession | None:
        return self.advancer.begin_stage(session_id)

    def open_next_stage(self, session_id: str) -> DialecticSession | None:
        return self.advancer.open_next_stage(session_id)

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    def submit_job(self, session_id: str, spec: JobSpec) -> Job:
        """Create a job; it waits if it names a prerequisite, else it is pending.

        A prerequisite that already reached a terminal state is resolved
        immediately, so a late dependent never waits on an event that has
        already been consumed.
        """
        job = self.store.create_job(session_id, spec, default_max_retries=self.settings.default_max_retries)
        if job.prerequisite_job_id is None:
            return job
        prerequisite = self.store.get_job(job.prerequisite_job_id)
        if not prerequisite.is_terminal:
            return job
        logger.debug("Job %s submitted after prerequisite %s was %s", job.id, prerequisite.id, prerequisite.status.value)
        self.resolver.on_job_terminal(prerequisite.id, prerequisite.status)
        self._after_terminal(session_id)
        return self.store.get_job(job.id)

    def plan_children(self, parent_job_id: str, specs: list[JobSpec]) -> list[Job]:
        return self.store.create_children(
            parent_job_id,
            specs,
            default_max_retries=self.settings.default_max_retries,
        )

    # ------------------------------------------------------------------
    # Executor transitions
    # ------------------------------------------------------------------

    def claim_job(self, job_id: str) -> Job | None:
        """Move a pending job to processing. ``None`` if another executor claimed it first."""
        return self.store.transition_job(job_id, expected=JobStatus.PENDING, new_status=JobStatus.PROCESSING)

    def complete_job(self, job_id: str, results: dict[str, Any] | None = None) -> Job | None:
        """Record a processing job as completed. ``None`` if it was no longer processing."""
        job = self.store.transition_job(
            job_id,
            expected=JobStatus.PROCESSING,
            new_status=JobStatus.COMPLETED,
            results=results if results is not None else {},
        )
        if job is not None:
            logger.info("Job %s completed", job_id)
            self._after_terminal(job.session_id)
        return job

    def fail_job(self, job_id: str, error_details: dict[str, Any]) -> Job | None:
        """Fail a job from whatever non-terminal status it is in.

        ``None`` if the job already reached a terminal status.
        """
        session_id = self.store.session_id_for_job(job_id)
        with self.store.session_transaction(session_id):
            current = self.store.read_job_unlocked(session_id, job_id)
            if current.is_terminal:
                logger.debug("Job %s is already %s; ignoring failure report", job_id, current.status.value)
                return None
            job = self.store.transition_job_unlocked(
                session_id,
                job_id,
                expected=current.status,
                new_status=JobStatus.FAILED,
                error_details=dict(error_details),
            )
        if job is not None:
            logger.info("Job %s failed: %s", job_id, error_details.get("code", "unspecified"))
            self._after_terminal(session_id)
        return job

    def _after_terminal(self, session_id: str) -> None:
        if self.settings.reconcile_on_transition:
            self.reconciler.drain(session_id)

    def drain_outbox(self, session_id: str) -> list[ReconcileReport]:
        return self.reconciler.drain(session_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Job:
        return self.store.get_job(job_id)

    def list_jobs(self, session_id: str, *, stage_slug: str | None = None, iteration_number: int | None = None) -> list[Job]:
        return self.store.list_jobs(session_id, stage_slug=stage_slug, iteration_number=iteration_number)

    def get_stage_progress(self, session_id: str, iteration_number: int | None = None) -> list[StageProgressEntry]:
        if iteration_number is None:
            iteration_number = self.store.read_session(session_id).iteration_number
        return self.progress.get_stage_progress(session_id, iteration_number)

    def get_stage_entry(self, session_id: str, stage_slug: str, iteration_number: int | None = None) -> StageProgressEntry:
        if iteration_number is None:
            iteration_number = self.store.read_session(session_id).iteration_number
        return self.progress.get_stage_entry(session_id, stage_slug, iteration_number)

    def stage_status(self, session_id: str, stage_slug: str, iteration_number: int | None = None) -> StepStatus:
        return derive_stage_status(self.get_stage_entry(session_id, stage_slug, iteration_number))

    def progress_fingerprint(self, session_id: str, iteration_number: int | None = None) -> str:
        return progress_fingerprint(self.get_stage_progress(session_id, iteration_number))

    def resolve_next_blocker(
        self,
        session_id: str,
        stage_slug: str,
        model_id: str,
        document_key: str,
        iteration_number: int | None = None,
    ) -> Job | None:
        if iteration_number is None:
            iteration_number = self.store.read_session(session_id).iteration_number
        return self.progress.resolve_next_blocker(session_id, stage_slug, iteration_number, model_id, document_key)
