from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from pydantic import ValidationError

from .models import (
    JOB_STATUS_TRANSITIONS,
    DialecticSession,
    Job,
    JobSpec,
    JobType,
    JobStatus,
    TerminalEvent,
    utc_now,
)

logger = logging.getLogger(__name__)


class JobNotFoundError(FileNotFoundError):
    """Raised when a job id does not resolve to a stored job."""


class SessionNotFoundError(FileNotFoundError):
    """Raised when a session id does not resolve to a stored session."""


class IllegalTransitionError(ValueError):
    """Raised when a requested status edge is not part of the job lifecycle."""


# ---------------------------------------------------------------------------
# File locking helpers
# ---------------------------------------------------------------------------

_LOCK_SUFFIX = ".lock"


@contextmanager
def _locked_file(path: Path, *, shared: bool = False) -> Iterator[None]:
    """Lock ``<path>.lock`` with ``flock`` while the context is open.

    The store passes ``sessions/<id>/session``, so each session is guarded
    by its own ``session.lock`` file and ``session.json`` stays free to be
    swapped by :func:`_atomic_write_text`. Snapshot reads lock it shared.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, model_name: str) -> str:
    """Read a JSON file and raise a clear error if it is unreadable.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{model_name} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{model_name} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{model_name} at {path} is empty")
    return text


def sanitize_record_id(record_id: str) -> str:
    """Validate an id for use as a filesystem path component.

    Ids are opaque, but they end up as file names, so anything that would
    escape the store directory is rejected rather than rewritten.

    Raises:
        ValueError: If the id is empty or contains unsafe characters.
    """
    value = record_id.strip()
    if not value:
        raise ValueError("record id must be non-empty")
    if not re.fullmatch(r"[A-Za-z0-9._-]{1,128}", value) or value in {".", ".."}:
        raise ValueError(f"record id contains unsafe characters: {record_id!r}")
    return value


# ---------------------------------------------------------------------------
# JobStateStore
# ---------------------------------------------------------------------------

class JobStateStore:
    """Filesystem job store with compare-and-swap status transitions.

    Layout::

        <root>/job_index/<job_id>.json              job id -> session id
        <root>/sessions/<session_id>/session.json
        <root>/sessions/<session_id>/jobs/<job_id>.json
        <root>/sessions/<session_id>/outbox/<event_id>.json
        <root>/sessions/<session_id>/outbox/processed/<event_id>.json

    Every mutation inside a session runs under that session's exclusive
    lock; snapshot reads take the same lock in shared mode. Contention is
    therefore local to one session and no store-wide lock exists.

    Methods suffixed ``_unlocked`` assume the caller already holds the
    session lock (see :meth:`session_transaction` and :meth:`snapshot`).
    ``fcntl`` locks are not re-entrant across separate handles, so locked
    methods must never be called from inside a held lock.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.sessions_dir = self.root / "sessions"
        self.job_index_dir = self.root / "job_index"
        self.ensure_structure()

    def ensure_structure(self) -> None:
        for directory in (self.root, self.sessions_dir, self.job_index_dir):
            directory.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Paths and locks
    # ------------------------------------------------------------------

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / sanitize_record_id(session_id)

    def _session_path(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "session.json"

    def _jobs_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "jobs"

    def _job_path(self, session_id: str, job_id: str) -> Path:
        return self._jobs_dir(session_id) / f"{sanitize_record_id(job_id)}.json"

    def _outbox_dir(self, session_id: str) -> Path:
        return self.session_dir(session_id) / "outbox"

    def _processed_dir(self, session_id: str) -> Path:
        return self._outbox_dir(session_id) / "processed"

    def _index_path(self, job_id: str) -> Path:
        return self.job_index_dir / f"{sanitize_record_id(job_id)}.json"

    @contextmanager
    def session_transaction(self, session_id: str) -> Iterator[None]:
        """Hold the session's exclusive lock (all writes within one session)."""
        if not self._session_path(session_id).is_file():
            raise SessionNotFoundError(f"session not found: {session_id}")
        with _locked_file(self.session_dir(session_id) / "session"):
            yield

    @contextmanager
    def snapshot(self, session_id: str) -> Iterator[None]:
        """Hold the session's shared lock so reads see one consistent state."""
        if not self._session_path(session_id).is_file():
            raise SessionNotFoundError(f"session not found: {session_id}")
        with _locked_file(self.session_dir(session_id) / "session", shared=True):
            yield

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: DialecticSession) -> DialecticSession:
        """Persist a new session.

        Raises:
            ValueError: If a session with this id already exists.
        """
        path = self._session_path(session.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with _locked_file(self.session_dir(session.id) / "session"):
            if path.exists():
                raise ValueError(f"Session already exists: {session.id}")
            _atomic_write_text(path, session.model_dump_json(indent=2))
        logger.info("Created session %s at status %s", session.id, session.status)
        return session

    def read_session(self, session_id: str) -> DialecticSession:
        with self.snapshot(session_id):
            return self.read_session_unlocked(session_id)

    def read_session_unlocked(self, session_id: str) -> DialecticSession:
        path = self._session_path(session_id)
        if not path.is_file():
            raise SessionNotFoundError(f"session not found: {session_id}")
        text = _safe_read_json(path, "session")
        try:
            return DialecticSession.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"session at {path} failed validation: {exc}") from exc

    def update_session_unlocked(
        self,
        session_id: str,
        *,
        expected_statuses: set[str],
        new_status: str,
        current_stage_slug: str | None = None,
    ) -> DialecticSession | None:
        """Conditionally move a session to *new_status*.

        Returns ``None`` without writing when the stored status is not one
        of *expected_statuses* (another writer got there first).
        """
        session = self.read_session_unlocked(session_id)
        if session.status not in expected_statuses:
            logger.debug(
                "Session %s status %s not in %s; skipping move to %s",
                session_id,
                session.status,
                sorted(expected_statuses),
                new_status,
            )
            return None
        session.status = new_status
        if current_stage_slug is not None:
            session.current_stage_slug = current_stage_slug
        session.updated_at = utc_now()
        _atomic_write_text(self._session_path(session_id), session.model_dump_json(indent=2))
        return session

    def list_sessions(self) -> list[str]:
        return sorted(
            d.name for d in self.sessions_dir.iterdir()
            if d.is_dir() and (d / "session.json").is_file()
        )

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    def create_job(
        self,
        session_id: str,
        spec: JobSpec,
        *,
        parent_job_id: str | None = None,
        default_max_retries: int = 3,
    ) -> Job:
        """Create a job, deriving its initial status from its prerequisite.

        The prerequisite must already exist in the same session, which keeps
        the prerequisite graph acyclic by construction.

        Raises:
            SessionNotFoundError: If the session does not exist.
            JobNotFoundError: If the prerequisite or parent does not exist.
            ValueError: If the prerequisite or parent belongs to another session.
        """
        with self.session_transaction(session_id):
            return self.create_job_unlocked(
                session_id,
                spec,
                parent_job_id=parent_job_id,
                default_max_retries=default_max_retries,
            )

    def create_children(
        self,
        parent_job_id: str,
        specs: list[JobSpec],
        *,
        default_max_retries: int = 3,
    ) -> list[Job]:
        """Insert the children of a PLAN job, each waiting on the parent.

        All children are written under one session lock so a concurrent
        terminal transition of the parent observes either none or all of them.

        Raises:
            JobNotFoundError: If the parent does not exist.
            ValueError: If the parent is terminal or not a PLAN job.
        """
        session_id = self.session_id_for_job(parent_job_id)
        created: list[Job] = []
        with self.session_transaction(session_id):
            parent = self.read_job_unlocked(session_id, parent_job_id)
            if parent.is_terminal:
                raise ValueError(
                    f"Cannot plan children for {parent_job_id}: parent is already {parent.status.value}"
                )
            if parent.job_type != JobType.PLAN:
                raise ValueError(f"Only PLAN jobs spawn children; {parent_job_id} is {parent.job_type.value}")
            for spec in specs:
                bound = spec.model_copy(update={"prerequisite_job_id": parent_job_id})
                created.append(
                    self.create_job_unlocked(
                        session_id,
                        bound,
                        parent_job_id=parent_job_id,
                        default_max_retries=default_max_retries,
                    )
                )
        logger.info("PLAN job %s spawned %d children", parent_job_id, len(created))
        return created

    def create_job_unlocked(
        self,
        session_id: str,
        spec: JobSpec,
        *,
        parent_job_id: str | None = None,
        default_max_retries: int = 3,
    ) -> Job:
        status = JobStatus.PENDING
        if spec.prerequisite_job_id is not None:
            self._require_same_session(session_id, spec.prerequisite_job_id, "prerequisite")
            status = JobStatus.WAITING_FOR_PREREQUISITE
        if parent_job_id is not None:
            self._require_same_session(session_id, parent_job_id, "parent")

        job = Job(
            session_id=session_id,
            stage_slug=spec.stage_slug,
            iteration_number=spec.iteration_number,
            step_key=spec.step_key,
            job_type=spec.job_type,
            status=status,
            parent_job_id=parent_job_id,
            prerequisite_job_id=spec.prerequisite_job_id,
            max_retries=spec.max_retries if spec.max_retries is not None else default_max_retries,
            payload=dict(spec.payload),
        )
        path = self._job_path(session_id, job.id)
        if path.exists():
            raise ValueError(f"Job already exists: {job.id}")
        _atomic_write_text(self._index_path(job.id), json.dumps({"session_id": session_id}))
        _atomic_write_text(path, job.model_dump_json(indent=2))
        logger.debug("Created job %s (%s, step=%s) at %s", job.id, job.job_type.value, job.step_key, status.value)
        return job

    def _require_same_session(self, session_id: str, job_id: str, role: str) -> None:
        owner = self.session_id_for_job(job_id)
        if owner != session_id:
            raise ValueError(f"{role} job {job_id} belongs to session {owner}, not {session_id}")
        if not self._job_path(session_id, job_id).is_file():
            raise JobNotFoundError(f"{role} job not found: {job_id}")

    # ------------------------------------------------------------------
    # Job reads
    # ------------------------------------------------------------------

    def session_id_for_job(self, job_id: str) -> str:
        path = self._index_path(job_id)
        if not path.is_file():
            raise JobNotFoundError(f"job not found: {job_id}")
        data: dict[str, Any] = json.loads(_safe_read_json(path, "job index entry"))
        return str(data["session_id"])

    def get_job(self, job_id: str) -> Job:
        session_id = self.session_id_for_job(job_id)
        with self.snapshot(session_id):
            return self.read_job_unlocked(session_id, job_id)

    def read_job_unlocked(self, session_id: str, job_id: str) -> Job:
        path = self._job_path(session_id, job_id)
        if not path.is_file():
            raise JobNotFoundError(f"job not found: {job_id}")
        text = _safe_read_json(path, f"job {job_id}")
        try:
            return Job.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"job {job_id} at {path} failed validation: {exc}") from exc

    def list_jobs_unlocked(
        self,
        session_id: str,
        *,
        stage_slug: str | None = None,
        iteration_number: int | None = None,
    ) -> list[Job]:
        jobs_dir = self._jobs_dir(session_id)
        if not jobs_dir.is_dir():
            return []
        jobs: list[Job] = []
        for path in jobs_dir.glob("*.json"):
            job = self.read_job_unlocked(session_id, path.stem)
            if stage_slug is not None and job.stage_slug != stage_slug:
                continue
            if iteration_number is not None and job.iteration_number != iteration_number:
                continue
            jobs.append(job)
        jobs.sort(key=lambda item: (item.created_at, item.id))
        return jobs

    def list_jobs(
        self,
        session_id: str,
        *,
        stage_slug: str | None = None,
        iteration_number: int | None = None,
    ) -> list[Job]:
        with self.snapshot(session_id):
            return self.list_jobs_unlocked(session_id, stage_slug=stage_slug, iteration_number=iteration_number)

    def waiting_dependents_unlocked(self, session_id: str) -> dict[str, list[Job]]:
        """Map each prerequisite id to the jobs still waiting on it, from one scan."""
        waiting: dict[str, list[Job]] = {}
        for job in self.list_jobs_unlocked(session_id):
            if job.prerequisite_job_id is not None and job.status == JobStatus.WAITING_FOR_PREREQUISITE:
                waiting.setdefault(job.prerequisite_job_id, []).append(job)
        return waiting

    # ------------------------------------------------------------------
    # Transitions (compare-and-swap)
    # ------------------------------------------------------------------

    def transition_job_unlocked(
        self,
        session_id: str,
        job_id: str,
        *,
        expected: JobStatus,
        new_status: JobStatus,
        results: dict[str, Any] | None = None,
        error_details: dict[str, Any] | None = None,
    ) -> Job | None:
        """Move a job from *expected* to *new_status* if it is still at *expected*.

        Terminal transitions stamp ``completed_at`` and append a
        :class:`TerminalEvent` to the session outbox in the same locked
        section.

        Returns:
            The updated job, or ``None`` when the job had already moved on.

        Raises:
            JobNotFoundError: If the job does not exist.
            IllegalTransitionError: If ``expected -> new_status`` is not a lifecycle edge.
        """
        if new_status not in JOB_STATUS_TRANSITIONS[expected]:
            raise IllegalTransitionError(
                f"Illegal job status transition for {job_id}: {expected.value} -> {new_status.value}"
            )
        job = self.read_job_unlocked(session_id, job_id)
        if job.status != expected:
            logger.debug(
                "Lost transition race for job %s: expected %s, found %s",
                job_id,
                expected.value,
                job.status.value,
            )
            return None

        now = utc_now()
        job.status = new_status
        job.updated_at = now
        if new_status == JobStatus.PROCESSING:
            job.started_at = now
            job.attempt_count += 1
        if new_status.is_terminal:
            job.completed_at = now
            if results is not None:
                job.results = results
            if error_details is not None:
                job.error_details = error_details
        _atomic_write_text(self._job_path(session_id, job_id), job.model_dump_json(indent=2))

        if new_status.is_terminal:
            event = TerminalEvent(
                job_id=job.id,
                session_id=job.session_id,
                stage_slug=job.stage_slug,
                iteration_number=job.iteration_number,
                final_status=new_status,
                occurred_at=now,
            )
            _atomic_write_text(self._outbox_dir(session_id) / f"{event.event_id}.json", event.model_dump_json(indent=2))
        return job

    def transition_job(
        self,
        job_id: str,
        *,
        expected: JobStatus,
        new_status: JobStatus,
        results: dict[str, Any] | None = None,
        error_details: dict[str, Any] | None = None,
    ) -> Job | None:
        session_id = self.session_id_for_job(job_id)
        with self.session_transaction(session_id):
            return self.transition_job_unlocked(
                session_id,
                job_id,
                expected=expected,
                new_status=new_status,
                results=results,
                error_details=error_details,
            )

    # ------------------------------------------------------------------
    # Outbox
    # ------------------------------------------------------------------

    def _event_paths(self, session_id: str, event_id: str) -> tuple[Path, Path]:
        name = f"{sanitize_record_id(event_id)}.json"
        return self._outbox_dir(session_id) / name, self._processed_dir(session_id) / name

    def read_event_unlocked(self, session_id: str, event_id: str) -> TerminalEvent:
        pending_path, processed_path = self._event_paths(session_id, event_id)
        path = pending_path if pending_path.is_file() else processed_path
        text = _safe_read_json(path, f"event {event_id}")
        try:
            return TerminalEvent.model_validate_json(text)
        except ValidationError as exc:
            raise ValueError(f"event {event_id} at {path} failed validation: {exc}") from exc

    def pending_events(self, session_id: str) -> list[TerminalEvent]:
        """Return unprocessed terminal events for a session, oldest first.

        Processed events live under ``outbox/processed/``, so this only
        reads events that still need reconciling.
        """
        outbox = self._outbox_dir(session_id)
        with self.snapshot(session_id):
            if not outbox.is_dir():
                return []
            events = [self.read_event_unlocked(session_id, path.stem) for path in outbox.glob("*.json")]
        pending = [event for event in events if event.processed_at is None]
        pending.sort(key=lambda item: (item.occurred_at, item.event_id))
        return pending

    def events_for_job(self, job_id: str) -> list[TerminalEvent]:
        session_id = self.session_id_for_job(job_id)
        events: dict[str, TerminalEvent] = {}
        with self.snapshot(session_id):
            for directory in (self._processed_dir(session_id), self._outbox_dir(session_id)):
                if not directory.is_dir():
                    continue
                for path in directory.glob("*.json"):
                    event = TerminalEvent.model_validate_json(_safe_read_json(path, f"event {path.stem}"))
                    if event.job_id == job_id:
                        events.setdefault(event.event_id, event)
        return sorted(events.values(), key=lambda item: (item.occurred_at, item.event_id))

    def mark_event_processed(self, session_id: str, event_id: str) -> TerminalEvent | None:
        """Stamp ``processed_at`` and move the event to ``outbox/processed/``.

        Returns ``None`` if the event was already processed.

        Raises:
            FileNotFoundError: If the event does not exist.
        """
        pending_path, processed_path = self._event_paths(session_id, event_id)
        with self.session_transaction(session_id):
            if not pending_path.is_file():
                if processed_path.is_file():
                    return None
                raise FileNotFoundError(f"event not found: {event_id}")
            event = self.read_event_unlocked(session_id, event_id)
            if event.processed_at is None:
                event.processed_at = utc_now()
            _atomic_write_text(processed_path, event.model_dump_json(indent=2))
            pending_path.unlink()
        return event
