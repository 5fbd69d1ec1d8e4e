from importlib.metadata import PackageNotFoundError, version

from .advancer import AdvanceAction, AdvanceOutcome, StageSessionAdvancer
from .canonical import progress_fingerprint, to_canonical_json
from .models import (
    DEFAULT_PROCESS_TEMPLATE,
    ITERATION_COMPLETE_STATUS,
    DialecticSession,
    Job,
    JobSpec,
    JobStatus,
    JobType,
    ProcessTemplate,
    RecipeStep,
    StageDocument,
    StageProgressEntry,
    StageRecipe,
    StageScope,
    StepAnomaly,
    StepCardinality,
    StepProgress,
    StepStatus,
    TerminalEvent,
)
from .orchestrator import JobOrchestrator
from .progress import ProgressAggregator, all_steps_completed, derive_stage_status
from .recipes import (
    ClonedRecipeProvider,
    RecipeResolver,
    RecipeStepProvider,
    StageNotFoundError,
    TemplateRecipeProvider,
)
from .reconciler import OutboxReconciler, ReconcileReport
from .resolver import DependencyResolver, ResolutionResult
from .settings import RuntimeSettings
from .state_store import IllegalTransitionError, JobNotFoundError, JobStateStore, SessionNotFoundError


def get_version() -> str:
    try:
        return version("dialectic-jobs")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AdvanceAction",
    "AdvanceOutcome",
    "ClonedRecipeProvider",
    "DEFAULT_PROCESS_TEMPLATE",
    "DependencyResolver",
    "DialecticSession",
    "ITERATION_COMPLETE_STATUS",
    "IllegalTransitionError",
    "Job",
    "JobNotFoundError",
    "JobOrchestrator",
    "JobSpec",
    "JobStateStore",
    "JobStatus",
    "JobType",
    "OutboxReconciler",
    "ProcessTemplate",
    "ProgressAggregator",
    "RecipeResolver",
    "RecipeStep",
    "RecipeStepProvider",
    "ReconcileReport",
    "ResolutionResult",
    "RuntimeSettings",
    "SessionNotFoundError",
    "StageDocument",
    "StageNotFoundError",
    "StageProgressEntry",
    "StageRecipe",
    "StageScope",
    "StageSessionAdvancer",
    "StepAnomaly",
    "StepCardinality",
    "StepProgress",
    "StepStatus",
    "TemplateRecipeProvider",
    "TerminalEvent",
    "all_steps_completed",
    "derive_stage_status",
    "get_version",
    "progress_fingerprint",
    "to_canonical_json",
]
