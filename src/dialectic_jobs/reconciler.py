"""Outbox-driven reconciliation of terminal job transitions.

Every terminal transition leaves a :class:`TerminalEvent` in the session
outbox, written under the same lock as the status change. The reconciler
consumes those events through a small LangGraph ``StateGraph``::

    START -> resolve_dependents -> advance_stages -> mark_processed -> END

Dependency resolution and stage advancement are separate nodes and can be
fired on their own (``resolve=False`` or ``advance=False``). An event is
only marked processed after both have run for it, so a partial run leaves
the event in the outbox for a later full pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph

from .advancer import AdvanceOutcome, StageSessionAdvancer
from .models import StageScope, TerminalEvent
from .resolver import DependencyResolver
from .state_store import JobStateStore

logger = logging.getLogger(__name__)


class ReconcileState(TypedDict, total=False):
    event: TerminalEvent
    resolve: bool
    advance: bool
    unlocked_job_ids: list[str]
    failed_job_ids: list[str]
    scopes: list[StageScope]
    outcomes: list[AdvanceOutcome]
    processed: bool


@dataclass
class ReconcileReport:
    event_id: str
    job_id: str
    unlocked_job_ids: list[str] = field(default_factory=list)
    failed_job_ids: list[str] = field(default_factory=list)
    outcomes: list[AdvanceOutcome] = field(default_factory=list)
    processed: bool = False


class OutboxReconciler:
    def __init__(
        self,
        store: JobStateStore,
        resolver: DependencyResolver,
        advancer: StageSessionAdvancer,
        *,
        recursion_limit: int = 100,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.advancer = advancer
        self.recursion_limit = recursion_limit
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ReconcileState)
        graph.add_node("resolve_dependents", self._resolve_dependents_node)
        graph.add_node("advance_stages", self._advance_stages_node)
        graph.add_node("mark_processed", self._mark_processed_node)

        graph.add_conditional_edges(
            START,
            self._start_route,
            {
                "resolve_dependents": "resolve_dependents",
                "advance_stages": "advance_stages",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "resolve_dependents",
            self._resolved_route,
            {
                "advance_stages": "advance_stages",
                "end": END,
            },
        )
        graph.add_conditional_edges(
            "advance_stages",
            self._advanced_route,
            {
                "mark_processed": "mark_processed",
                "end": END,
            },
        )
        graph.add_edge("mark_processed", END)
        return graph

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @staticmethod
    def _start_route(state: ReconcileState) -> str:
        if state.get("resolve", True):
            return "resolve_dependents"
        if state.get("advance", True):
            return "advance_stages"
        return "end"

    @staticmethod
    def _resolved_route(state: ReconcileState) -> str:
        return "advance_stages" if state.get("advance", True) else "end"

    @staticmethod
    def _advanced_route(state: ReconcileState) -> str:
        return "mark_processed" if state.get("resolve", True) else "end"

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def _resolve_dependents_node(self, state: ReconcileState) -> dict[str, Any]:
        event = state["event"]
        result = self.resolver.on_job_terminal(event.job_id, event.final_status)
        scopes = {event.scope, *result.scopes}
        return {
            "unlocked_job_ids": list(result.unlocked_job_ids),
            "failed_job_ids": list(result.failed_job_ids),
            "scopes": sorted(scopes, key=lambda scope: (scope.stage_slug, scope.iteration_number)),
        }

    def _advance_stages_node(self, state: ReconcileState) -> dict[str, Any]:
        event = state["event"]
        scopes = state.get("scopes") or [event.scope]
        outcomes = [
            self.advancer.advance(scope.session_id, scope.stage_slug, scope.iteration_number)
            for scope in scopes
        ]
        return {"outcomes": outcomes}

    def _mark_processed_node(self, state: ReconcileState) -> dict[str, Any]:
        event = state["event"]
        marked = self.store.mark_event_processed(event.session_id, event.event_id)
        if marked is None:
            logger.debug("Event %s was already processed", event.event_id)
        return {"processed": True}

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def handle(self, event: TerminalEvent, *, resolve: bool = True, advance: bool = True) -> ReconcileReport:
        """Run the reconcile graph for one outbox event."""
        initial_state: ReconcileState = {
            "event": event,
            "resolve": resolve,
            "advance": advance,
            "unlocked_job_ids": [],
            "failed_job_ids": [],
            "scopes": [],
            "outcomes": [],
            "processed": False,
        }
        result = self.graph.invoke(initial_state, config={"recursion_limit": self.recursion_limit})
        report = ReconcileReport(
            event_id=event.event_id,
            job_id=event.job_id,
            unlocked_job_ids=list(result.get("unlocked_job_ids", [])),
            failed_job_ids=list(result.get("failed_job_ids", [])),
            outcomes=list(result.get("outcomes", [])),
            processed=bool(result.get("processed")),
        )
        logger.debug(
            "Reconciled event %s for job %s (unlocked=%d failed=%d processed=%s)",
            event.event_id,
            event.job_id,
            len(report.unlocked_job_ids),
            len(report.failed_job_ids),
            report.processed,
        )
        return report

    def handle_job(self, job_id: str) -> list[ReconcileReport]:
        """Reconcile every unprocessed event recorded for *job_id*."""
        return [self.handle(event) for event in self.store.events_for_job(job_id) if event.processed_at is None]

    def drain(self, session_id: str) -> list[ReconcileReport]:
        """Process the session outbox until no unprocessed events remain.

        Cascaded failures append their own events while earlier ones are
        handled, so the outbox is re-read after each pass.
        """
        reports: list[ReconcileReport] = []
        while True:
            pending = self.store.pending_events(session_id)
            if not pending:
                break
            for event in pending:
                reports.append(self.handle(event))
        if reports:
            logger.info("Drained %d outbox events for session %s", len(reports), session_id)
        return reports
