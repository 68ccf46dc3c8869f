from importlib.metadata import version

from .checks import CHECK_CATALOG
from .compiler import compile_specification, resolve_edge_case_slot
from .errors import (
    AlreadyRunning,
    CompileError,
    DraftNotFound,
    ForgeError,
    GateError,
    GenerationError,
    InvalidSceneLayout,
    NoArtifactReturned,
    NotAuthorized,
    NotCertified,
    PaymentRequired,
    PipelineStateError,
    QuotaExhausted,
    RateLimited,
    StaleCertification,
    TestRunnerError,
    Transient,
)
from .llm import ArtifactGenerator
from .models import (
    ArtifactKind,
    CheckResult,
    CheckStatus,
    CompetencyRef,
    DesignPalette,
    Draft,
    EdgeCaseTiming,
    GameMechanic,
    GenerationRequest,
    PipelineState,
    SceneSpec,
    Specification,
    TestRun,
    Visibility,
)
from .orchestrator import PipelineOrchestrator
from .publication import PublicationGate
from .settings import RuntimeSettings
from .state_store import PipelineStateStore
from .test_runner import ComplianceTestRunner


def get_version() -> str:
    try:
        return version("validator-forge")
    except Exception:
        return "0.0.0"


__all__ = [
    "AlreadyRunning",
    "ArtifactGenerator",
    "ArtifactKind",
    "CHECK_CATALOG",
    "CheckResult",
    "CheckStatus",
    "CompetencyRef",
    "CompileError",
    "ComplianceTestRunner",
    "DesignPalette",
    "Draft",
    "DraftNotFound",
    "EdgeCaseTiming",
    "ForgeError",
    "GameMechanic",
    "GateError",
    "GenerationError",
    "GenerationRequest",
    "InvalidSceneLayout",
    "NoArtifactReturned",
    "NotAuthorized",
    "NotCertified",
    "PaymentRequired",
    "PipelineOrchestrator",
    "PipelineState",
    "PipelineStateError",
    "PipelineStateStore",
    "PublicationGate",
    "QuotaExhausted",
    "RateLimited",
    "RuntimeSettings",
    "SceneSpec",
    "Specification",
    "StaleCertification",
    "TestRun",
    "TestRunnerError",
    "Transient",
    "Visibility",
    "compile_specification",
    "get_version",
    "resolve_edge_case_slot",
]
