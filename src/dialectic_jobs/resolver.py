from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field

from .models import UPSTREAM_FAILURE_CODE, Job, JobStatus, StageScope
from .state_store import JobStateStore

logger = logging.getLogger(__name__)


@dataclass
class ResolutionResult:
    job_id: str
    final_status: JobStatus
    unlocked_job_ids: list[str] = field(default_factory=list)
    failed_job_ids: list[str] = field(default_factory=list)
    scopes: set[StageScope] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.unlocked_job_ids or self.failed_job_ids)


def upstream_failure_details(upstream_job_id: str, root_job_id: str) -> dict[str, str]:
    return {
        "code": UPSTREAM_FAILURE_CODE,
        "message": "upstream prerequisite failed",
        "upstream_job_id": upstream_job_id,
        "root_failed_job_id": root_job_id,
    }


class DependencyResolver:
    """Unlock or fail the jobs waiting on a job that just reached a terminal state.

    Completion moves each waiting dependent to ``pending``. Failure moves
    each waiting dependent to ``failed`` and continues through that
    dependent's own waiters, so an entire prerequisite chain resolves in one
    locked pass. Every write is conditioned on the dependent still being in
    ``waiting_for_prerequisite``; dependents that already moved are skipped,
    which makes repeated calls for the same job harmless.
    """

    def __init__(self, store: JobStateStore) -> None:
        self.store = store

    def on_job_terminal(self, job_id: str, final_status: JobStatus) -> ResolutionResult:
        """Resolve the dependents of *job_id*.

        Raises:
            JobNotFoundError: If the job does not exist.
            ValueError: If the job is not terminal or its stored status differs
                from *final_status*.
        """
        if not final_status.is_terminal:
            raise ValueError(f"on_job_terminal requires a terminal status, got {final_status.value}")
        session_id = self.store.session_id_for_job(job_id)
        result = ResolutionResult(job_id=job_id, final_status=final_status)

        with self.store.session_transaction(session_id):
            job = self.store.read_job_unlocked(session_id, job_id)
            if job.status != final_status:
                raise ValueError(
                    f"job {job_id} is {job.status.value}; cannot resolve dependents as {final_status.value}"
                )
            result.scopes.add(job.scope)
            waiting = self.store.waiting_dependents_unlocked(session_id)

            if final_status == JobStatus.COMPLETED:
                self._unlock_dependents(session_id, job_id, waiting, result)
            else:
                self._fail_dependents(session_id, job_id, waiting, result)

        if result.changed:
            logger.info(
                "Resolved %s (%s): unlocked=%d failed=%d",
                job_id,
                final_status.value,
                len(result.unlocked_job_ids),
                len(result.failed_job_ids),
            )
        else:
            logger.debug("Resolved %s (%s): no waiting dependents", job_id, final_status.value)
        return result

    def _unlock_dependents(
        self,
        session_id: str,
        job_id: str,
        waiting: dict[str, list[Job]],
        result: ResolutionResult,
    ) -> None:
        for dependent in waiting.get(job_id, []):
            moved = self.store.transition_job_unlocked(
                session_id,
                dependent.id,
                expected=JobStatus.WAITING_FOR_PREREQUISITE,
                new_status=JobStatus.PENDING,
            )
            if moved is None:
                continue
            result.unlocked_job_ids.append(moved.id)
            result.scopes.add(moved.scope)

    def _fail_dependents(
        self,
        session_id: str,
        root_job_id: str,
        waiting: dict[str, list[Job]],
        result: ResolutionResult,
    ) -> None:
        queue: deque[str] = deque([root_job_id])
        while queue:
            upstream_id = queue.popleft()
            for dependent in waiting.get(upstream_id, []):
                moved = self.store.transition_job_unlocked(
                    session_id,
                    dependent.id,
                    expected=JobStatus.WAITING_FOR_PREREQUISITE,
                    new_status=JobStatus.FAILED,
                    error_details=upstream_failure_details(upstream_id, root_job_id),
                )
                if moved is None:
                    continue
                logger.info("Failed job %s: upstream prerequisite %s failed", moved.id, upstream_id)
                result.failed_job_ids.append(moved.id)
                result.scopes.add(moved.scope)
                queue.append(moved.id)
