"""Exception types for the validator certification pipeline.

Every error carries a stable machine-readable ``code``, a human-readable
``remediation`` hint, and a ``retryable`` flag so callers can render the
right guidance without inspecting message text.

Exception Hierarchy:
    ForgeError (base)
    ├── CompileError - Specification is unusable (caller's fault)
    │   └── InvalidSceneLayout - Scene/competency/edge-case layout violated
    ├── GenerationError - External generation service failed
    │   ├── QuotaExhausted - Credits depleted, terminal until remediated
    │   ├── PaymentRequired - Billing blocked, terminal until remediated
    │   ├── RateLimited - Retry after backoff
    │   └── Transient - Retry now
    │       └── NoArtifactReturned - Service answered without a document
    ├── TestRunnerError - A check could not be executed
    ├── GateError - Publication or single-flight refusal
    │   ├── NotCertified - No passing TestRun is the latest one
    │   ├── StaleCertification - Artifact changed since it was certified
    │   └── AlreadyRunning - Another pipeline run holds the draft
    ├── PipelineStateError - Illegal transition or unmet precondition
    ├── DraftNotFound - No draft with the given id
    └── NotAuthorized - Caller may not act on the draft
"""

from __future__ import annotations

from typing import Any


class ForgeError(Exception):
    """Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error description.
        details: Additional error context.
    """

    code = "forge_error"
    remediation = "Contact support if the problem persists."
    retryable = False

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        remediation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if remediation is not None:
            self.remediation = remediation

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


# =============================================================================
# Compile errors
# =============================================================================


class CompileError(ForgeError):
    """The specification cannot be compiled into a generation request."""

    code = "compile_error"
    remediation = "Fix the validator specification and submit it again."


class InvalidSceneLayout(CompileError):
    """Scene count, competency count or edge-case timing are inconsistent.

    Attributes:
        issues: Every layout problem found, in discovery order.
    """

    code = "invalid_scene_layout"
    remediation = "Provide one scene per selected competency (1-4 scenes) and a valid edge-case timing."

    def __init__(self, issues: list[str]) -> None:
        super().__init__("; ".join(issues) or "invalid scene layout", {"issue_count": len(issues)})
        self.issues = list(issues)


# =============================================================================
# Generation errors
# =============================================================================


class GenerationError(ForgeError):
    """The external generation service did not produce an artifact.

    Attributes:
        status_code: HTTP status reported by the service, when known.
    """

    code = "generation_error"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        remediation: str | None = None,
    ) -> None:
        super().__init__(message, details, remediation=remediation)
        self.status_code = status_code


class QuotaExhausted(GenerationError):
    code = "quota_exhausted"
    remediation = "Generation credits are depleted. Add credits to the generation account, then retry."


class PaymentRequired(GenerationError):
    code = "payment_required"
    remediation = "The generation account requires payment. Add a payment method or credits, then retry."


class RateLimited(GenerationError):
    """The service throttled the request.

    Attributes:
        retry_after_seconds: Backoff the caller should wait before retrying.
    """

    code = "rate_limited"
    retryable = True

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        *,
        status_code: int | None = None,
        retry_after_seconds: int | None = None,
    ) -> None:
        wait = f"{retry_after_seconds} seconds" if retry_after_seconds else "a moment"
        super().__init__(
            message,
            details,
            status_code=status_code,
            remediation=f"Rate limit reached. Wait {wait} and retry.",
        )
        self.retry_after_seconds = retry_after_seconds


class Transient(GenerationError):
    code = "transient"
    retryable = True
    remediation = "The generation service had a temporary problem. Retry now."


class NoArtifactReturned(Transient):
    code = "no_artifact_returned"
    remediation = "The generation service returned no document. Retry now."


# =============================================================================
# Test runner errors
# =============================================================================


class TestRunnerError(ForgeError):
    """A compliance check could not be executed.

    Distinct from a check legitimately returning ``failed``: no TestRun is
    recorded when this is raised.
    """

    __test__ = False

    code = "test_runner_error"
    retryable = True
    remediation = "The compliance run was aborted without recording results. Retry the test run."


# =============================================================================
# Gate errors
# =============================================================================


class GateError(ForgeError):
    code = "gate_error"


class NotCertified(GateError):
    code = "not_certified"
    remediation = "Run the compliance tests and fix every failing or review-flagged check before publishing."


class StaleCertification(GateError):
    code = "stale_certification"
    remediation = "The artifact changed after it was certified. Re-run the compliance tests on the new artifact."


class AlreadyRunning(GateError):
    code = "already_running"
    retryable = True
    remediation = "A pipeline run is already in progress for this draft. Wait for it to complete."


# =============================================================================
# Pipeline state errors
# =============================================================================


class PipelineStateError(ForgeError):
    """The requested step is not legal from the draft's current state."""

    code = "pipeline_state_error"
    remediation = "Reload the draft and request a step that is valid for its current state."


class DraftNotFound(ForgeError):
    code = "draft_not_found"
    remediation = "Check the draft id; the draft may have been deleted."


class NotAuthorized(ForgeError):
    code = "not_authorized"
    remediation = "Only the creator who owns the draft may perform this action."
