from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from .models import (
    ITERATION_COMPLETE_STATUS,
    DialecticSession,
    ProcessTemplate,
    StageScope,
    complete_status,
    failed_status,
    generating_status,
    pending_status,
)
from .progress import ProgressAggregator, all_steps_completed, any_step_failed
from .state_store import JobStateStore

logger = logging.getLogger(__name__)

_COMPLETE_SUFFIX = "_generation_complete"


class AdvanceAction(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    IN_PROGRESS = "in_progress"
    ALREADY_RESOLVED = "already_resolved"
    STALE = "stale"


@dataclass(frozen=True)
class AdvanceOutcome:
    scope: StageScope
    action: AdvanceAction
    session_status: str
    current_stage_slug: str

    @property
    def changed(self) -> bool:
        return self.action in {AdvanceAction.COMPLETED, AdvanceAction.FAILED}


class StageSessionAdvancer:
    """Move a session through its stage lifecycle from aggregated job progress.

    Per stage the session walks ``pending_<stage> -> generating_<stage> ->
    <stage>_generation_complete | <stage>_failed`` and then on to the next
    stage of the process template. :meth:`advance` is invoked after every
    terminal job transition and must stay cheap and idempotent: every
    session write is conditioned on the expected current status, and a
    scope the session has already moved past is ignored.
    """

    def __init__(
        self,
        store: JobStateStore,
        progress: ProgressAggregator,
        process_template: ProcessTemplate,
        *,
        advance_to_pending_next_stage: bool = True,
    ) -> None:
        self.store = store
        self.progress = progress
        self.process_template = process_template
        self.advance_to_pending_next_stage = advance_to_pending_next_stage

    def advance(self, session_id: str, stage_slug: str, iteration_number: int) -> AdvanceOutcome:
        scope = StageScope(session_id=session_id, stage_slug=stage_slug, iteration_number=iteration_number)
        with self.store.session_transaction(session_id):
            session = self.store.read_session_unlocked(session_id)
            if session.current_stage_slug != stage_slug or session.iteration_number != iteration_number:
                logger.debug(
                    "Skipping advance for %s: session is at %s/%d",
                    scope.label(),
                    session.current_stage_slug,
                    session.iteration_number,
                )
                return self._outcome(scope, AdvanceAction.STALE, session)

            entry = self.progress.stage_entry_unlocked(session, stage_slug, iteration_number)
            open_statuses = {pending_status(stage_slug), generating_status(stage_slug)}

            if any_step_failed(entry):
                updated = self.store.update_session_unlocked(
                    session_id,
                    expected_statuses=open_statuses,
                    new_status=failed_status(stage_slug),
                )
                if updated is None:
                    return self._outcome(scope, AdvanceAction.ALREADY_RESOLVED, session)
                logger.info("Session %s: stage %s failed (%s)", session_id, stage_slug, updated.status)
                return self._outcome(scope, AdvanceAction.FAILED, updated)

            required = [key for key in entry.steps if not entry.steps[key].anomaly]
            if not all_steps_completed(entry, required):
                return self._outcome(scope, AdvanceAction.IN_PROGRESS, session)

            next_stage = self.process_template.next_stage(stage_slug)
            new_status = complete_status(stage_slug)
            if next_stage is not None and self.advance_to_pending_next_stage:
                new_status = pending_status(next_stage)
            updated = self.store.update_session_unlocked(
                session_id,
                expected_statuses=open_statuses,
                new_status=new_status,
                current_stage_slug=next_stage,
            )
            if updated is None:
                return self._outcome(scope, AdvanceAction.ALREADY_RESOLVED, session)
            logger.info(
                "Session %s: stage %s complete, now %s at stage %s",
                session_id,
                stage_slug,
                updated.status,
                updated.current_stage_slug,
            )
            return self._outcome(scope, AdvanceAction.COMPLETED, updated)

    def begin_stage(self, session_id: str) -> DialecticSession | None:
        """Move ``pending_<stage>`` to ``generating_<stage>`` for the session's current stage."""
        with self.store.session_transaction(session_id):
            session = self.store.read_session_unlocked(session_id)
            stage_slug = session.current_stage_slug
            updated = self.store.update_session_unlocked(
                session_id,
                expected_statuses={pending_status(stage_slug)},
                new_status=generating_status(stage_slug),
            )
        if updated is not None:
            logger.info("Session %s: generating %s", session_id, stage_slug)
        return updated

    def open_next_stage(self, session_id: str) -> DialecticSession | None:
        """Open the stage after a ``<stage>_generation_complete`` session.

        The session moves to ``pending_<next>``, or to
        ``iteration_complete_pending_review`` when the completed stage was the
        last one. Returns ``None`` if the session is not in a completed state.

        Jobs of the opened stage may already have finished while the previous
        stage was still closed, and their events found no open status to move.
        The opened stage is therefore advanced once more right away.
        """
        with self.store.session_transaction(session_id):
            session = self.store.read_session_unlocked(session_id)
            if not session.status.endswith(_COMPLETE_SUFFIX):
                logger.debug("Session %s is %s; no stage to open", session_id, session.status)
                return None
            completed_stage = session.status[: -len(_COMPLETE_SUFFIX)]
            next_stage = self.process_template.next_stage(completed_stage)
            new_status = pending_status(next_stage) if next_stage is not None else ITERATION_COMPLETE_STATUS
            updated = self.store.update_session_unlocked(
                session_id,
                expected_statuses={session.status},
                new_status=new_status,
                current_stage_slug=next_stage,
            )
        if updated is None:
            return None
        logger.info("Session %s: opened %s", session_id, updated.status)
        if next_stage is None:
            return updated
        outcome = self.advance(session_id, next_stage, updated.iteration_number)
        if outcome.changed:
            return self.store.read_session(session_id)
        return updated

    @staticmethod
    def _outcome(scope: StageScope, action: AdvanceAction, session: DialecticSession) -> AdvanceOutcome:
        return AdvanceOutcome(
            scope=scope,
            action=action,
            session_status=session.status,
            current_stage_slug=session.current_stage_slug,
        )
