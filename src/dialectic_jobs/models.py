from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


SYNTHETIC_STEP_PREFIX = "__job:"
UPSTREAM_FAILURE_CODE = "upstream_prerequisite_failed"


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_job_id() -> str:
    return f"JOB-{uuid.uuid4().hex}"


def new_event_id() -> str:
    return f"EVT-{uuid.uuid4().hex}"


class JobType(str, Enum):
    PLAN = "PLAN"
    EXECUTE = "EXECUTE"
    RENDER = "RENDER"


class JobStatus(str, Enum):
    WAITING_FOR_PREREQUISITE = "waiting_for_prerequisite"
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

# Forward-only lifecycle. Terminal states have no outgoing edges.
JOB_STATUS_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.WAITING_FOR_PREREQUISITE: frozenset({JobStatus.PENDING, JobStatus.FAILED}),
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StepCardinality(str, Enum):
    SINGLE = "single"
    PER_MODEL = "per_model"
    PAIRWISE = "pairwise"
    DYNAMIC = "dynamic"


class StepAnomaly(str, Enum):
    UNBOUND_STEP = "unbound_step"
    UNKNOWN_STEP_KEY = "unknown_step_key"


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class Job(BaseModel):
    """One schedulable unit of work within a stage iteration."""

    id: str = Field(default_factory=new_job_id)
    session_id: str
    stage_slug: str
    iteration_number: int = Field(ge=1)
    step_key: str | None = None
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    parent_job_id: str | None = None
    prerequisite_job_id: str | None = None
    attempt_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)
    results: dict[str, Any] | None = None
    error_details: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @field_validator("session_id", "stage_slug")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must be non-empty")
        return value.strip()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def model_id(self) -> str | None:
        value = self.payload.get("model_id")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @property
    def document_key(self) -> str | None:
        value = self.payload.get("document_key")
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    @property
    def scope(self) -> StageScope:
        return StageScope(
            session_id=self.session_id,
            stage_slug=self.stage_slug,
            iteration_number=self.iteration_number,
        )


class JobSpec(BaseModel):
    """Caller-supplied description of a job to create.

    Status is never accepted from callers: the store derives it from the
    presence of a prerequisite.
    """

    stage_slug: str
    iteration_number: int = Field(ge=1)
    job_type: JobType
    step_key: str | None = None
    prerequisite_job_id: str | None = None
    max_retries: int | None = Field(default=None, ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)


class StageScope(BaseModel):
    """A (session, stage, iteration) triple; the unit of contention."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    stage_slug: str
    iteration_number: int

    def label(self) -> str:
        return f"{self.session_id}/{self.stage_slug}/{self.iteration_number}"


class TerminalEvent(BaseModel):
    """Outbox row recorded in the same locked write as a terminal transition."""

    event_id: str = Field(default_factory=new_event_id)
    job_id: str
    session_id: str
    stage_slug: str
    iteration_number: int
    final_status: JobStatus
    occurred_at: datetime = Field(default_factory=utc_now)
    processed_at: datetime | None = None

    @field_validator("final_status")
    @classmethod
    def _terminal_only(cls, value: JobStatus) -> JobStatus:
        if not value.is_terminal:
            raise ValueError(f"terminal events require a terminal status, got {value.value}")
        return value

    @property
    def scope(self) -> StageScope:
        return StageScope(
            session_id=self.session_id,
            stage_slug=self.stage_slug,
            iteration_number=self.iteration_number,
        )


# ---------------------------------------------------------------------------
# Recipes and process templates
# ---------------------------------------------------------------------------

class RecipeStep(BaseModel):
    """Read-only step definition shared by template and cloned recipes."""

    model_config = ConfigDict(frozen=True)

    step_key: str
    job_type: JobType
    cardinality: StepCardinality = StepCardinality.SINGLE
    output_document_key: str | None = None
    step_name: str | None = None

    @property
    def produces_document(self) -> bool:
        return self.output_document_key is not None

    def expected_jobs(self, model_count: int) -> int | None:
        if self.cardinality == StepCardinality.SINGLE:
            return 1
        if self.cardinality == StepCardinality.PER_MODEL:
            return model_count
        if self.cardinality == StepCardinality.PAIRWISE:
            return math.comb(model_count, 2)
        return None


class StageRecipe(BaseModel):
    """A versioned recipe for one stage."""

    recipe_id: str
    stage_slug: str
    version: int = Field(default=1, ge=1)
    steps: list[RecipeStep]

    @field_validator("steps")
    @classmethod
    def _unique_step_keys(cls, steps: list[RecipeStep]) -> list[RecipeStep]:
        keys = [step.step_key for step in steps]
        if len(keys) != len(set(keys)):
            raise ValueError("recipe step keys must be unique")
        for key in keys:
            if key.startswith(SYNTHETIC_STEP_PREFIX):
                raise ValueError(f"step key {key!r} uses the reserved synthetic prefix")
        return steps


class ProcessTemplate(BaseModel):
    """Ordered stages of a pipeline."""

    id: str
    name: str
    stages: list[str]

    @field_validator("stages")
    @classmethod
    def _valid_stages(cls, stages: list[str]) -> list[str]:
        if not stages:
            raise ValueError("process template must define at least one stage")
        if len(stages) != len(set(stages)):
            raise ValueError("process template stages must be unique")
        return stages

    @property
    def starting_stage(self) -> str:
        return self.stages[0]

    def next_stage(self, stage_slug: str) -> str | None:
        try:
            index = self.stages.index(stage_slug)
        except ValueError as exc:
            raise LookupError(f"stage {stage_slug!r} is not part of process template {self.id}") from exc
        if index + 1 < len(self.stages):
            return self.stages[index + 1]
        return None


DIALECTIC_STAGES = ["thesis", "antithesis", "synthesis", "parenthesis", "paralysis"]

DEFAULT_PROCESS_TEMPLATE = ProcessTemplate(
    id="dialectic",
    name="Dialectic process",
    stages=list(DIALECTIC_STAGES),
)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

ITERATION_COMPLETE_STATUS = "iteration_complete_pending_review"


def pending_status(stage_slug: str) -> str:
    return f"pending_{stage_slug}"


def generating_status(stage_slug: str) -> str:
    return f"generating_{stage_slug}"


def complete_status(stage_slug: str) -> str:
    return f"{stage_slug}_generation_complete"


def failed_status(stage_slug: str) -> str:
    return f"{stage_slug}_failed"


class DialecticSession(BaseModel):
    id: str = Field(default_factory=lambda: f"SES-{uuid.uuid4().hex}")
    project_id: str
    process_template_id: str = DEFAULT_PROCESS_TEMPLATE.id
    current_stage_slug: str
    iteration_number: int = Field(default=1, ge=1)
    selected_model_ids: list[str] = Field(default_factory=list)
    recipe_instance_id: str | None = None
    status: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def _default_status(self) -> DialecticSession:
        if not self.status:
            self.status = pending_status(self.current_stage_slug)
        return self


# ---------------------------------------------------------------------------
# Progress views (derived, never persisted)
# ---------------------------------------------------------------------------

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


class StepProgress(_CamelModel):
    step_key: str
    job_type: JobType | None = None
    status: StepStatus
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    in_progress_jobs: int = 0
    pending_jobs: int = 0
    expected_jobs: int | None = None
    model_job_statuses: dict[str, StepStatus] | None = None
    anomaly: StepAnomaly | None = None

    @property
    def satisfied(self) -> bool:
        if self.status != StepStatus.COMPLETED:
            return False
        return self.expected_jobs is None or self.total_jobs >= self.expected_jobs


class StageDocument(_CamelModel):
    document_key: str
    job_id: str
    step_key: str
    model_id: str | None = None
    status: JobStatus
    latest_rendered_resource_id: str | None = None


class StageProgressEntry(_CamelModel):
    stage_slug: str
    iteration_number: int
    steps: dict[str, StepProgress] = Field(default_factory=dict)
    documents: list[StageDocument] = Field(default_factory=list)

    @property
    def step_statuses(self) -> dict[str, StepStatus]:
        return {key: step.status for key, step in self.steps.items()}
