from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CHECK_COUNT = 8


def utc_now() -> datetime:
    return datetime.now(UTC)


class EdgeCaseTiming(str, Enum):
    EARLY = "early"
    MID = "mid"
    LATE = "late"


class GameMechanic(str, Enum):
    """Closed set of interaction mechanics a sub-competency can be tested with."""

    DRAG_DROP = "drag_drop"
    SELECT = "select"
    SEQUENCE = "sequence"
    PRIORITIZE = "prioritize"
    MATCH = "match"
    TYPE_INPUT = "type_input"
    ALLOCATE = "allocate"
    INSPECT = "inspect"
    UNSPECIFIED = "unspecified"


class ArtifactKind(str, Enum):
    GENERATED = "generated"
    UPLOADED = "uploaded"


class PipelineState(str, Enum):
    DRAFT = "draft"
    GENERATING = "generating"
    GENERATED = "generated"
    TESTING = "testing"
    PASSED = "passed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


class Visibility(str, Enum):
    UNPUBLISHED = "unpublished"
    PUBLISHED = "published"


class CheckStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


PIPELINE_STATE_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.DRAFT: frozenset({PipelineState.GENERATING, PipelineState.TESTING}),
    PipelineState.GENERATING: frozenset({PipelineState.GENERATED, PipelineState.DRAFT}),
    PipelineState.GENERATED: frozenset({PipelineState.GENERATING, PipelineState.TESTING}),
    PipelineState.TESTING: frozenset(
        {
            PipelineState.PASSED,
            PipelineState.FAILED,
            PipelineState.NEEDS_REVIEW,
            # Aborted or timed-out runs fall back to the state they started from.
            PipelineState.DRAFT,
            PipelineState.GENERATED,
        }
    ),
    # A verdict state drops back to draft only when an upload replaces the tested artifact.
    PipelineState.PASSED: frozenset({PipelineState.GENERATING, PipelineState.TESTING, PipelineState.DRAFT}),
    PipelineState.FAILED: frozenset({PipelineState.GENERATING, PipelineState.TESTING, PipelineState.DRAFT}),
    PipelineState.NEEDS_REVIEW: frozenset({PipelineState.GENERATING, PipelineState.TESTING, PipelineState.DRAFT}),
}

ACTIVE_STATES: frozenset[PipelineState] = frozenset({PipelineState.GENERATING, PipelineState.TESTING})

VERDICT_STATES: dict[CheckStatus, PipelineState] = {
    CheckStatus.PASSED: PipelineState.PASSED,
    CheckStatus.FAILED: PipelineState.FAILED,
    CheckStatus.NEEDS_REVIEW: PipelineState.NEEDS_REVIEW,
}


# ---------------------------------------------------------------------------
# Specification
# ---------------------------------------------------------------------------


class DesignPalette(BaseModel):
    """Theme parameters handed to the generator alongside the prompt."""

    model_config = ConfigDict(frozen=True)

    primary: str = "#C8DBDB"
    secondary: str = "#6C8FA4"
    accent: str = "#2D5556"
    background: str = "#F5EDD3"
    highlight: str = "#F0C7A0"
    text: str = "#2D5556"
    font: str = "Inter, sans-serif"
    particle_effect: str = "sparkles"
    logo_url: str | None = None


class CompetencyRef(BaseModel):
    model_config = ConfigDict(frozen=True)

    competency_id: str = Field(min_length=1)
    name: str = ""
    sub_competency_id: str = Field(min_length=1)
    statement: str = ""
    player_action: str = ""
    game_mechanic: GameMechanic = GameMechanic.UNSPECIFIED
    backend_data_captured: list[str] = Field(default_factory=list)
    scoring_logic: dict[str, Any] = Field(default_factory=dict)


class SceneSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str


class Specification(BaseModel):
    """Author-described validator.

    Layout invariants (scene and competency counts, edge-case timing) are
    enforced by the compiler so they surface as ``InvalidSceneLayout``.
    """

    model_config = ConfigDict(frozen=True)

    title: str = ""
    description: str = ""
    industry: str = ""
    role_context: str = ""
    competencies: list[CompetencyRef] = Field(default_factory=list)
    scenes: list[SceneSpec] = Field(default_factory=list)
    edge_case_timing: EdgeCaseTiming = EdgeCaseTiming.MID
    edge_case: str = ""
    design: DesignPalette | None = None

    @property
    def theme(self) -> DesignPalette:
        return self.design if self.design is not None else DesignPalette()


class EdgeCaseSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    scene: int
    layout_scene_count: int
    timing: EdgeCaseTiming
    fallback: bool = False


class GenerationMetadata(BaseModel):
    """Structured facts about a request that the test runner needs later."""

    model_config = ConfigDict(frozen=True)

    competency_ids: list[str]
    sub_competency_ids: list[str]
    scene_count: int
    edge_case: EdgeCaseSlot
    required_metrics: list[str] = Field(default_factory=list)
    interaction_verbs: dict[str, list[str]] = Field(default_factory=dict)


class GenerationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    payload: str
    metadata: GenerationMetadata
    fingerprint: str


# ---------------------------------------------------------------------------
# Pipeline records
# ---------------------------------------------------------------------------


class SurfacedError(BaseModel):
    """Last pipeline failure, kept on the draft for dashboards."""

    code: str
    message: str
    remediation: str
    retryable: bool
    retry_after_seconds: int | None = None
    occurred_at: datetime = Field(default_factory=utc_now)


class Draft(BaseModel):
    draft_id: str
    author_id: str
    specification: Specification
    artifact_kind: ArtifactKind
    state: PipelineState = PipelineState.DRAFT
    artifact: str | None = None
    artifact_fingerprint: str | None = None
    artifact_revision: int = 0
    visibility: Visibility = Visibility.UNPUBLISHED
    public_code: str | None = None
    published_at: datetime | None = None
    certified_test_run_id: str | None = None
    last_error: SurfacedError | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def has_artifact(self) -> bool:
        return bool(self.artifact)

    @property
    def is_published(self) -> bool:
        return self.visibility == Visibility.PUBLISHED


class CheckResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    check_number: int = Field(ge=1, le=CHECK_COUNT)
    name: str
    status: CheckStatus
    notes: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


def aggregate_status(results: list[CheckResult]) -> CheckStatus:
    """Passed iff every check passed; failed if any failed; otherwise needs review."""
    statuses = {result.status for result in results}
    if CheckStatus.FAILED in statuses:
        return CheckStatus.FAILED
    if statuses == {CheckStatus.PASSED}:
        return CheckStatus.PASSED
    return CheckStatus.NEEDS_REVIEW


class TestRun(BaseModel):
    """One immutable certification attempt."""

    __test__ = False
    model_config = ConfigDict(frozen=True)

    test_run_id: str
    draft_id: str
    sequence: int = Field(ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    artifact_fingerprint: str
    artifact_revision: int
    sub_competency_id: str
    results: list[CheckResult]
    status: CheckStatus

    @field_validator("results")
    @classmethod
    def _exactly_one_result_per_check(cls, value: list[CheckResult]) -> list[CheckResult]:
        numbers = [result.check_number for result in value]
        if numbers != list(range(1, CHECK_COUNT + 1)):
            raise ValueError(f"TestRun requires results for checks 1..{CHECK_COUNT} in order, got {numbers}")
        return value

    @model_validator(mode="after")
    def _status_matches_results(self) -> "TestRun":
        expected = aggregate_status(self.results)
        if self.status != expected:
            raise ValueError(f"TestRun status {self.status.value} does not match aggregate {expected.value}")
        return self


class InflightToken(BaseModel):
    draft_id: str
    operation: str
    token: str
    acquired_at: datetime = Field(default_factory=utc_now)
