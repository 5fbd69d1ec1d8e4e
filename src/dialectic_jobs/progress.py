"""Stage progress aggregation.

Progress is always derived from job records; nothing here is persisted.
Each call reads one session under its shared lock, so concurrent writers
never show up half-applied inside a single result.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import UTC, datetime

from .models import (
    SYNTHETIC_STEP_PREFIX,
    DialecticSession,
    Job,
    JobStatus,
    JobType,
    RecipeStep,
    StageDocument,
    StageProgressEntry,
    StepAnomaly,
    StepProgress,
    StepStatus,
)
from .recipes import RecipeResolver, StageNotFoundError
from .state_store import JobStateStore

logger = logging.getLogger(__name__)

# Earliest possible timestamp, used when ranking jobs that never completed.
_NEVER = datetime.min.replace(tzinfo=UTC)


def synthetic_step_key(job_id: str) -> str:
    return f"{SYNTHETIC_STEP_PREFIX}{job_id}"


def collapse_job_statuses(statuses: list[JobStatus]) -> StepStatus:
    """Collapse the statuses of one step's jobs into a step status."""
    if not statuses:
        return StepStatus.NOT_STARTED
    if any(status == JobStatus.FAILED for status in statuses):
        return StepStatus.FAILED
    if all(status == JobStatus.COMPLETED for status in statuses):
        return StepStatus.COMPLETED
    return StepStatus.IN_PROGRESS


def collapse_model_statuses(statuses: list[JobStatus]) -> StepStatus:
    """Per-model view: a model has started once any of its jobs is running or done."""
    if not statuses:
        return StepStatus.NOT_STARTED
    if any(status == JobStatus.FAILED for status in statuses):
        return StepStatus.FAILED
    if all(status == JobStatus.COMPLETED for status in statuses):
        return StepStatus.COMPLETED
    if any(status in {JobStatus.PROCESSING, JobStatus.COMPLETED} for status in statuses):
        return StepStatus.IN_PROGRESS
    return StepStatus.NOT_STARTED


def derive_stage_status(entry: StageProgressEntry) -> StepStatus:
    """Collapse an entry to one status: failed beats in_progress beats completed."""
    statuses = list(entry.step_statuses.values())
    if not statuses:
        return StepStatus.NOT_STARTED
    if StepStatus.FAILED in statuses:
        return StepStatus.FAILED
    if all(status == StepStatus.COMPLETED for status in statuses):
        return StepStatus.COMPLETED
    if all(status == StepStatus.NOT_STARTED for status in statuses):
        return StepStatus.NOT_STARTED
    return StepStatus.IN_PROGRESS


def all_steps_completed(entry: StageProgressEntry, required_step_keys: list[str] | None = None) -> bool:
    """True when every required step is satisfied.

    Without *required_step_keys* every non-synthetic step in the entry is
    required. A step is satisfied when all of its jobs completed and, for
    steps with a known cardinality, enough jobs exist.
    """
    if required_step_keys is None:
        required_step_keys = [key for key in entry.steps if not key.startswith(SYNTHETIC_STEP_PREFIX)]
    if not required_step_keys:
        return False
    for key in required_step_keys:
        step = entry.steps.get(key)
        if step is None or not step.satisfied:
            return False
    return True


def any_step_failed(entry: StageProgressEntry) -> bool:
    return any(step.status == StepStatus.FAILED for step in entry.steps.values())


class ProgressAggregator:
    def __init__(self, store: JobStateStore, recipes: RecipeResolver) -> None:
        self.store = store
        self.recipes = recipes

    def get_stage_progress(self, session_id: str, iteration_number: int) -> list[StageProgressEntry]:
        """One entry per stage that has at least one job in this iteration, sorted by stage slug.

        Raises:
            SessionNotFoundError: If the session does not exist.
        """
        with self.store.snapshot(session_id):
            session = self.store.read_session_unlocked(session_id)
            jobs = self.store.list_jobs_unlocked(session_id, iteration_number=iteration_number)

        by_stage: dict[str, list[Job]] = defaultdict(list)
        for job in jobs:
            by_stage[job.stage_slug].append(job)

        entries: list[StageProgressEntry] = []
        for stage_slug in sorted(by_stage):
            try:
                steps = self.recipes.steps_for(session, stage_slug)
            except StageNotFoundError:
                logger.warning(
                    "Session %s has jobs for stage %s but no recipe resolves for it",
                    session_id,
                    stage_slug,
                )
                steps = []
            entries.append(self.build_entry(session, stage_slug, iteration_number, steps, by_stage[stage_slug]))
        return entries

    def get_stage_entry(self, session_id: str, stage_slug: str, iteration_number: int) -> StageProgressEntry:
        """Progress of a single stage, including recipe steps that have no jobs yet.

        Raises:
            SessionNotFoundError: If the session does not exist.
            StageNotFoundError: If no recipe resolves for the stage.
        """
        with self.store.snapshot(session_id):
            session = self.store.read_session_unlocked(session_id)
            return self.stage_entry_unlocked(session, stage_slug, iteration_number)

    def stage_entry_unlocked(
        self,
        session: DialecticSession,
        stage_slug: str,
        iteration_number: int,
    ) -> StageProgressEntry:
        """Build a stage entry while the caller holds the session lock."""
        steps = self.recipes.steps_for(session, stage_slug)
        jobs = self.store.list_jobs_unlocked(session.id, stage_slug=stage_slug, iteration_number=iteration_number)
        return self.build_entry(session, stage_slug, iteration_number, steps, jobs)

    def build_entry(
        self,
        session: DialecticSession,
        stage_slug: str,
        iteration_number: int,
        recipe_steps: list[RecipeStep],
        jobs: list[Job],
    ) -> StageProgressEntry:
        lookup = {step.step_key: step for step in recipe_steps}
        groups: dict[str, list[Job]] = {step.step_key: [] for step in recipe_steps}
        anomalies: dict[str, StepAnomaly] = {}

        for job in jobs:
            if job.step_key is None:
                key = synthetic_step_key(job.id)
                anomalies[key] = StepAnomaly.UNBOUND_STEP
                groups[key] = [job]
            elif job.step_key not in lookup:
                key = synthetic_step_key(job.id)
                logger.warning(
                    "Job %s in %s/%s references step %s, which is not in the resolved recipe",
                    job.id,
                    session.id,
                    stage_slug,
                    job.step_key,
                )
                anomalies[key] = StepAnomaly.UNKNOWN_STEP_KEY
                groups[key] = [job]
            else:
                groups[job.step_key].append(job)

        steps: dict[str, StepProgress] = {}
        for key, group in groups.items():
            recipe_step = lookup.get(key)
            steps[key] = self._summarize_step(
                key,
                group,
                recipe_step,
                RecipeResolver.expected_jobs(recipe_step, session) if recipe_step is not None else None,
                anomalies.get(key),
            )

        return StageProgressEntry(
            stage_slug=stage_slug,
            iteration_number=iteration_number,
            steps=steps,
            documents=self._documents(recipe_steps, groups),
        )

    @staticmethod
    def _summarize_step(
        step_key: str,
        jobs: list[Job],
        recipe_step: RecipeStep | None,
        expected_jobs: int | None,
        anomaly: StepAnomaly | None,
    ) -> StepProgress:
        statuses = [job.status for job in jobs]
        job_type = recipe_step.job_type if recipe_step is not None else (jobs[0].job_type if jobs else None)

        model_job_statuses: dict[str, StepStatus] | None = None
        if job_type == JobType.EXECUTE:
            by_model: dict[str, list[JobStatus]] = defaultdict(list)
            for job in jobs:
                if job.model_id is not None:
                    by_model[job.model_id].append(job.status)
            model_job_statuses = {
                model_id: collapse_model_statuses(model_statuses)
                for model_id, model_statuses in sorted(by_model.items())
            }

        return StepProgress(
            step_key=step_key,
            job_type=job_type,
            status=collapse_job_statuses(statuses),
            total_jobs=len(jobs),
            completed_jobs=statuses.count(JobStatus.COMPLETED),
            failed_jobs=statuses.count(JobStatus.FAILED),
            in_progress_jobs=statuses.count(JobStatus.PROCESSING),
            pending_jobs=statuses.count(JobStatus.PENDING) + statuses.count(JobStatus.WAITING_FOR_PREREQUISITE),
            expected_jobs=expected_jobs,
            model_job_statuses=model_job_statuses,
            anomaly=anomaly,
        )

    @staticmethod
    def _documents(recipe_steps: list[RecipeStep], groups: dict[str, list[Job]]) -> list[StageDocument]:
        winners: dict[tuple[str, str], tuple[Job, RecipeStep]] = {}
        for step in recipe_steps:
            step_document_key = step.output_document_key
            if step_document_key is None:
                continue
            for job in groups.get(step.step_key, []):
                if job.job_type != JobType.RENDER:
                    continue
                document_key = job.document_key or step_document_key
                slot = (document_key, job.model_id or "")
                current = winners.get(slot)
                if current is None or _render_rank(job) > _render_rank(current[0]):
                    winners[slot] = (job, step)

        documents: list[StageDocument] = []
        for (document_key, _), (job, step) in sorted(winners.items()):
            resource_id = (job.results or {}).get("resource_id")
            documents.append(
                StageDocument(
                    document_key=document_key,
                    job_id=job.id,
                    step_key=step.step_key,
                    model_id=job.model_id,
                    status=job.status,
                    latest_rendered_resource_id=resource_id if isinstance(resource_id, str) else None,
                )
            )
        return documents

    # ------------------------------------------------------------------
    # Next blocker
    # ------------------------------------------------------------------

    def resolve_next_blocker(
        self,
        session_id: str,
        stage_slug: str,
        iteration_number: int,
        model_id: str,
        document_key: str,
    ) -> Job | None:
        """Return the unfinished job closest to producing *document_key* for *model_id*.

        RENDER jobs are preferred over EXECUTE jobs, and EXECUTE over PLAN.
        Returns ``None`` when nothing unfinished would produce the document.
        """
        if not document_key.strip() or not model_id.strip():
            return None
        with self.store.snapshot(session_id):
            session = self.store.read_session_unlocked(session_id)
            jobs = self.store.list_jobs_unlocked(
                session_id,
                stage_slug=stage_slug,
                iteration_number=iteration_number,
            )
        open_jobs = [job for job in jobs if not job.is_terminal and job.model_id == model_id]

        for job in open_jobs:
            if job.job_type == JobType.RENDER and job.document_key == document_key:
                logger.info("Next blocker for %s/%s is RENDER job %s", document_key, model_id, job.id)
                return job
        for job in open_jobs:
            if job.job_type == JobType.EXECUTE and job.payload.get("output_type") == document_key:
                logger.info("Next blocker for %s/%s is EXECUTE job %s", document_key, model_id, job.id)
                return job

        plans = [job for job in open_jobs if job.job_type == JobType.PLAN and job.step_key is not None]
        if plans:
            try:
                lookup = self.recipes.step_lookup(session, stage_slug)
            except StageNotFoundError:
                lookup = {}
            for job in plans:
                step = lookup.get(job.step_key or "")
                if step is not None and step.output_document_key == document_key:
                    logger.info("Next blocker for %s/%s is PLAN job %s", document_key, model_id, job.id)
                    return job

        logger.debug("No unfinished job produces %s for model %s", document_key, model_id)
        return None


def _render_rank(job: Job) -> tuple[int, datetime, datetime]:
    completed = job.status == JobStatus.COMPLETED and job.completed_at is not None
    completed_at = job.completed_at if completed and job.completed_at is not None else _NEVER
    return (1 if completed else 0, completed_at, job.created_at)
