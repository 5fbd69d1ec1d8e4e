"""Entry point for `python -m dialectic_jobs` and the `dialectic-jobs` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Any

from dialectic_jobs import JobOrchestrator
from dialectic_jobs.settings import RuntimeSettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and drive dialectic job graphs")
    parser.add_argument(
        "--state-store-root",
        type=Path,
        default=None,
        help="State store directory (default: DIALECTIC_STATE_STORE_ROOT)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("sessions", help="List session ids")

    create = commands.add_parser("create-session", help="Create a session at the first stage")
    create.add_argument("--project-id", required=True)
    create.add_argument("--model", dest="models", action="append", default=[], help="Selected model id (repeatable)")
    create.add_argument("--clone-recipes", action="store_true", help="Copy template recipes into a session instance")

    progress = commands.add_parser("progress", help="Print stage progress for a session iteration")
    progress.add_argument("session_id")
    progress.add_argument("--iteration", type=int, default=None)

    show = commands.add_parser("show-job", help="Print one job record")
    show.add_argument("job_id")

    claim = commands.add_parser("claim", help="Move a pending job to processing")
    claim.add_argument("job_id")

    complete = commands.add_parser("complete", help="Record a processing job as completed")
    complete.add_argument("job_id")
    complete.add_argument("--results", default=None, help="JSON object stored as the job results")

    fail = commands.add_parser("fail", help="Fail a job and propagate to its dependents")
    fail.add_argument("job_id")
    fail.add_argument("--code", required=True, help="Failure code, e.g. insufficient_funds")
    fail.add_argument("--message", default="", help="Human-readable failure message")

    drain = commands.add_parser("drain", help="Process unreconciled terminal events for a session")
    drain.add_argument("session_id")

    blocker = commands.add_parser("blocker", help="Find the unfinished job closest to producing a document")
    blocker.add_argument("session_id")
    blocker.add_argument("--stage", required=True)
    blocker.add_argument("--model", required=True)
    blocker.add_argument("--document", required=True)
    blocker.add_argument("--iteration", type=int, default=None)

    return parser.parse_args(argv)


def _parse_results(raw: str | None) -> dict[str, Any]:
    if raw is None:
        return {}
    value = json.loads(raw)
    if not isinstance(value, dict):
        raise ValueError("--results must be a JSON object")
    return value


def run_command(args: argparse.Namespace, orchestrator: JobOrchestrator) -> Any:
    if args.command == "sessions":
        return orchestrator.store.list_sessions()
    if args.command == "create-session":
        session = orchestrator.create_session(args.project_id, args.models, clone_recipes=args.clone_recipes)
        return session.model_dump(mode="json")
    if args.command == "progress":
        entries = orchestrator.get_stage_progress(args.session_id, args.iteration)
        return {
            "fingerprint": orchestrator.progress_fingerprint(args.session_id, args.iteration),
            "stages": [entry.model_dump(mode="json", by_alias=True) for entry in entries],
        }
    if args.command == "show-job":
        return orchestrator.get_job(args.job_id).model_dump(mode="json")
    if args.command == "claim":
        job = orchestrator.claim_job(args.job_id)
        return job.model_dump(mode="json") if job is not None else None
    if args.command == "complete":
        job = orchestrator.complete_job(args.job_id, _parse_results(args.results))
        return job.model_dump(mode="json") if job is not None else None
    if args.command == "fail":
        job = orchestrator.fail_job(args.job_id, {"code": args.code, "message": args.message})
        return job.model_dump(mode="json") if job is not None else None
    if args.command == "drain":
        reports = orchestrator.drain_outbox(args.session_id)
        return [
            {
                "event_id": report.event_id,
                "job_id": report.job_id,
                "unlocked_job_ids": report.unlocked_job_ids,
                "failed_job_ids": report.failed_job_ids,
                "processed": report.processed,
            }
            for report in reports
        ]
    if args.command == "blocker":
        job = orchestrator.resolve_next_blocker(
            args.session_id,
            args.stage,
            args.model,
            args.document,
            iteration_number=args.iteration,
        )
        return job.model_dump(mode="json") if job is not None else None
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        orchestrator = JobOrchestrator(settings=settings, state_store_root=args.state_store_root)
        output = run_command(args, orchestrator)
    except (OSError, ValueError, LookupError) as exc:
        logging.error("Command %s failed: %s", args.command, exc)
        return 1

    print(json.dumps(output, indent=2, default=str))
    if args.command in {"claim", "complete", "fail"} and output is None:
        logging.warning("Job %s was not in the expected status; nothing changed", args.job_id)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
