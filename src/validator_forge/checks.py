"""The fixed catalog of eight compliance checks run against every artifact.

Each check is a pure function of a :class:`CheckContext`; none of them
touches storage or mutates the artifact.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable

from .artifacts import SUBMISSION_BRIDGE_MARKER
from .models import ArtifactKind, CheckStatus, CompetencyRef, GenerationMetadata

_FLAGS = re.IGNORECASE

HTML_OPEN_RE = re.compile(r"<html[\s>]", _FLAGS)
HTML_CLOSE_RE = re.compile(r"</html\s*>", _FLAGS)
BODY_RE = re.compile(r"<body[\s>]", _FLAGS)
DOCTYPE_RE = re.compile(r"<!doctype\s+html", _FLAGS)
SCRIPT_RE = re.compile(r"<script[\s>]", _FLAGS)
EXTERNAL_SCRIPT_RE = re.compile(r"<script[^>]+src\s*=\s*[\"']([^\"']+)[\"']", _FLAGS)
EXTERNAL_STYLESHEET_RE = re.compile(r"<link[^>]+rel\s*=\s*[\"']stylesheet[\"'][^>]*>", _FLAGS)
IFRAME_RE = re.compile(r"<iframe[\s>]", _FLAGS)

SUBMIT_SCORE_DEFINITION_RE = re.compile(
    r"function\s+submitScore\s*\(|(?:const|let|var)\s+submitScore\s*=|window\.submitScore\s*=", _FLAGS
)
REPLAY_RE = re.compile(r"\b(?:play\s+again|replay)\b|\brestart\s*(?:button|btn|game)\b", _FLAGS)

METRICS_OBJECT_RE = re.compile(r"(?:const|let|var)\s+metrics\s*=\s*{(?P<body>[^}]*)}", _FLAGS)
REQUIRED_METRIC_FIELDS = ("accuracy", "time_taken", "final_score")
PROFICIENCY_LEVELS: dict[str, re.Pattern[str]] = {
    "needs_work": re.compile(r"needs[\s_-]?work", _FLAGS),
    "proficient": re.compile(r"\bproficient\b", _FLAGS),
    "mastery": re.compile(r"\bmastery\b", _FLAGS),
}

EDGE_CASE_FUNCTION_RE = re.compile(r"function\s+triggerEdgeCase\s*\(|triggerEdgeCase\s*=", _FLAGS)
EDGE_CASE_CALL_RE = re.compile(r"(?<!function\s)\btriggerEdgeCase\s*\(\s*\)|\btriggerEdgeCase\s*[,)]", _FLAGS)
EDGE_CASE_MARKER_RE = re.compile(r"data-edge-case\s*=\s*[\"']true[\"']", _FLAGS)

VIEWPORT_RE = re.compile(r"<meta[^>]+name\s*=\s*[\"']viewport[\"']", _FLAGS)
RESPONSIVE_RE = re.compile(r"@media|display\s*:\s*(?:flex|grid)|\b\d+(?:\.\d+)?(?:vw|vh|rem|%)", _FLAGS)
TOUCH_RE = re.compile(r"touchstart|touchend|pointerdown|pointerup|addEventListener\(\s*[\"']click[\"']|onclick", _FLAGS)

GAMEPLAY_DATA_RE = re.compile(r"(?:const|let|var)\s+gameplayData\s*=\s*{", _FLAGS)
SUBMIT_SCORE_CALL_RE = re.compile(r"submitScore\s*\(\s*[A-Za-z_$]", _FLAGS)

END_GAME_DEFINITION_RE = re.compile(r"function\s+endGame\s*\(|(?:const|let|var)\s+endGame\s*=", _FLAGS)
END_GAME_CALL_RE = re.compile(r"(?<!function\s)\bendGame\s*\(\s*\)|\bendGame\s*[,)]", _FLAGS)
SUBMIT_BUTTON_RE = re.compile(r"id\s*=\s*[\"']submit-btn[\"']", _FLAGS)

TELEGRAM_SDK_RE = re.compile(r"telegram-web-app\.js", _FLAGS)
TELEGRAM_READY_RE = re.compile(r"Telegram\.WebApp\.(?:ready|expand)\s*\(", _FLAGS)


@dataclass(frozen=True)
class CheckContext:
    artifact: str
    artifact_kind: ArtifactKind
    metadata: GenerationMetadata
    sub_competency: CompetencyRef
    max_artifact_bytes: int


@dataclass(frozen=True)
class CheckOutcome:
    status: CheckStatus
    notes: str
    details: dict[str, Any] = field(default_factory=dict)


CheckFn = Callable[[CheckContext], CheckOutcome]


@dataclass(frozen=True)
class ComplianceCheck:
    number: int
    name: str
    run: CheckFn


def _strip_bridge(artifact: str) -> str:
    """Return the artifact without the injected submission bridge block."""
    marker_at = artifact.find(SUBMISSION_BRIDGE_MARKER)
    if marker_at < 0:
        return artifact
    start = artifact.rfind("<script", 0, marker_at)
    end = artifact.find("</script>", marker_at)
    if start < 0 or end < 0:
        return artifact
    return artifact[:start] + artifact[end + len("</script>") :]


def check_structure(ctx: CheckContext) -> CheckOutcome:
    html = ctx.artifact
    missing = [
        label
        for label, pattern in (("<html>", HTML_OPEN_RE), ("</html>", HTML_CLOSE_RE), ("<body>", BODY_RE), ("<script>", SCRIPT_RE))
        if not pattern.search(html)
    ]
    external_scripts = [src for src in EXTERNAL_SCRIPT_RE.findall(html) if "telegram-web-app.js" not in src]
    details: dict[str, Any] = {
        "doctype": bool(DOCTYPE_RE.search(html)),
        "missing_elements": missing,
        "external_scripts": external_scripts,
        "external_stylesheets": len(EXTERNAL_STYLESHEET_RE.findall(html)),
        "iframes": len(IFRAME_RE.findall(html)),
    }
    if missing:
        return CheckOutcome(CheckStatus.FAILED, f"Not a complete HTML document; missing {', '.join(missing)}", details)
    if external_scripts or details["external_stylesheets"] or details["iframes"]:
        return CheckOutcome(
            CheckStatus.NEEDS_REVIEW,
            "Document loads external scripts, stylesheets or frames; verify it stays self-contained",
            details,
        )
    if not details["doctype"]:
        return CheckOutcome(CheckStatus.NEEDS_REVIEW, "Missing <!DOCTYPE html> declaration", details)
    return CheckOutcome(CheckStatus.PASSED, "Self-contained HTML document", details)


def check_locked_elements(ctx: CheckContext) -> CheckOutcome:
    authored = _strip_bridge(ctx.artifact)
    bridge_count = ctx.artifact.count(SUBMISSION_BRIDGE_MARKER)
    redefinitions = len(SUBMIT_SCORE_DEFINITION_RE.findall(authored))
    replay = sorted({match.group(0).strip().lower() for match in REPLAY_RE.finditer(authored)})
    details: dict[str, Any] = {
        "bridge_count": bridge_count,
        "submit_score_redefinitions": redefinitions,
        "replay_logic": replay,
    }
    if redefinitions:
        return CheckOutcome(CheckStatus.FAILED, "submitScore is redefined by the game code", details)
    if replay:
        return CheckOutcome(CheckStatus.FAILED, "Replay/restart logic found; validators are single-attempt", details)
    if bridge_count > 1:
        return CheckOutcome(CheckStatus.FAILED, "Submission bridge injected more than once", details)
    if bridge_count == 0:
        if ctx.artifact_kind == ArtifactKind.UPLOADED:
            return CheckOutcome(
                CheckStatus.NEEDS_REVIEW, "Uploaded game has no platform submission bridge", details
            )
        return CheckOutcome(CheckStatus.FAILED, "Platform submission bridge is missing", details)
    return CheckOutcome(CheckStatus.PASSED, "Locked submission bridge intact", details)


def check_scoring_logic(ctx: CheckContext) -> CheckOutcome:
    match = METRICS_OBJECT_RE.search(ctx.artifact)
    body = match.group("body") if match else ""
    present = [name for name in REQUIRED_METRIC_FIELDS if re.search(rf"\b{name}\b", body)]
    levels = [name for name, pattern in PROFICIENCY_LEVELS.items() if pattern.search(ctx.artifact)]
    details: dict[str, Any] = {
        "metrics_object": match is not None,
        "metric_fields": present,
        "proficiency_levels": levels,
        "scoring_logic": dict(ctx.sub_competency.scoring_logic),
    }
    if match is None or not present:
        return CheckOutcome(CheckStatus.FAILED, "No metrics object with scoring fields", details)
    if len(present) < len(REQUIRED_METRIC_FIELDS) or len(levels) < len(PROFICIENCY_LEVELS):
        missing = [name for name in REQUIRED_METRIC_FIELDS if name not in present]
        missing += [name for name in PROFICIENCY_LEVELS if name not in levels]
        return CheckOutcome(CheckStatus.NEEDS_REVIEW, f"Scoring incomplete; missing {', '.join(missing)}", details)
    return CheckOutcome(CheckStatus.PASSED, "Metrics and proficiency levels defined", details)


def check_edge_case(ctx: CheckContext) -> CheckOutcome:
    slot = ctx.metadata.edge_case
    defined = bool(EDGE_CASE_FUNCTION_RE.search(ctx.artifact))
    invoked = bool(EDGE_CASE_CALL_RE.search(ctx.artifact))
    marked = bool(EDGE_CASE_MARKER_RE.search(ctx.artifact))
    details: dict[str, Any] = {
        "expected_scene": slot.scene,
        "timing": slot.timing.value,
        "fallback_layout": slot.fallback,
        "trigger_defined": defined,
        "trigger_invoked": invoked,
        "container_marked": marked,
    }
    if defined and invoked:
        return CheckOutcome(CheckStatus.PASSED, f"Edge-case disruption wired for scene {slot.scene}", details)
    if defined or marked:
        return CheckOutcome(CheckStatus.NEEDS_REVIEW, "Edge case present but never triggered", details)
    return CheckOutcome(CheckStatus.FAILED, "No edge-case disruption found", details)


def check_ui_baseline(ctx: CheckContext) -> CheckOutcome:
    details: dict[str, Any] = {
        "viewport_meta": bool(VIEWPORT_RE.search(ctx.artifact)),
        "responsive_layout": bool(RESPONSIVE_RE.search(ctx.artifact)),
        "touch_input": bool(TOUCH_RE.search(ctx.artifact)),
    }
    if not details["viewport_meta"]:
        return CheckOutcome(CheckStatus.FAILED, "Missing viewport meta tag; not mobile-ready", details)
    gaps = [name for name in ("responsive_layout", "touch_input") if not details[name]]
    if gaps:
        return CheckOutcome(CheckStatus.NEEDS_REVIEW, f"UI baseline gaps: {', '.join(gaps)}", details)
    return CheckOutcome(CheckStatus.PASSED, "Mobile-ready layout and touch input", details)


def check_data_capture(ctx: CheckContext) -> CheckOutcome:
    authored = _strip_bridge(ctx.artifact)
    gameplay_data = bool(GAMEPLAY_DATA_RE.search(authored))
    submit_call = bool(SUBMIT_SCORE_CALL_RE.search(authored))
    declared = list(ctx.sub_competency.backend_data_captured)
    missing_metrics = [name for name in declared if not re.search(rf"\b{re.escape(name)}\b", authored)]
    details: dict[str, Any] = {
        "gameplay_data_object": gameplay_data,
        "submit_score_called": submit_call,
        "declared_metrics": declared,
        "missing_metrics": missing_metrics,
    }
    if not (gameplay_data and submit_call):
        return CheckOutcome(CheckStatus.FAILED, "gameplayData capture or submitScore() call missing", details)
    if missing_metrics:
        return CheckOutcome(
            CheckStatus.NEEDS_REVIEW, f"Declared metrics not captured: {', '.join(missing_metrics)}", details
        )
    return CheckOutcome(CheckStatus.PASSED, "Gameplay data captured and submitted", details)


def check_result_screen(ctx: CheckContext) -> CheckOutcome:
    details: dict[str, Any] = {
        "end_game_defined": bool(END_GAME_DEFINITION_RE.search(ctx.artifact)),
        "end_game_called": bool(END_GAME_CALL_RE.search(ctx.artifact)),
        "submit_button": bool(SUBMIT_BUTTON_RE.search(ctx.artifact)),
        "endings": [name for name, pattern in PROFICIENCY_LEVELS.items() if pattern.search(ctx.artifact)],
    }
    if not (details["end_game_defined"] and details["end_game_called"] and details["submit_button"]):
        return CheckOutcome(CheckStatus.FAILED, "endGame() or submit button with id=submit-btn missing", details)
    if len(details["endings"]) < len(PROFICIENCY_LEVELS):
        return CheckOutcome(
            CheckStatus.NEEDS_REVIEW,
            f"{len(details['endings'])} of {len(PROFICIENCY_LEVELS)} proficiency endings present",
            details,
        )
    return CheckOutcome(CheckStatus.PASSED, "All proficiency endings and submit button present", details)


def check_runtime_target(ctx: CheckContext) -> CheckOutcome:
    size = len(ctx.artifact.encode("utf-8"))
    details: dict[str, Any] = {
        "artifact_bytes": size,
        "max_artifact_bytes": ctx.max_artifact_bytes,
        "telegram_sdk": bool(TELEGRAM_SDK_RE.search(ctx.artifact)),
        "telegram_ready_called": bool(TELEGRAM_READY_RE.search(ctx.artifact)),
    }
    if size > ctx.max_artifact_bytes:
        return CheckOutcome(CheckStatus.FAILED, f"Artifact is {size} bytes; limit is {ctx.max_artifact_bytes}", details)
    if not (details["telegram_sdk"] and details["telegram_ready_called"]):
        return CheckOutcome(CheckStatus.NEEDS_REVIEW, "Telegram Mini App SDK not initialised", details)
    return CheckOutcome(CheckStatus.PASSED, "Telegram Mini App ready", details)


CHECK_CATALOG: tuple[ComplianceCheck, ...] = (
    ComplianceCheck(1, "Structure Compliance", check_structure),
    ComplianceCheck(2, "Locked Elements", check_locked_elements),
    ComplianceCheck(3, "Scoring Logic", check_scoring_logic),
    ComplianceCheck(4, "Edge Case Implementation", check_edge_case),
    ComplianceCheck(5, "UI/UX Standards", check_ui_baseline),
    ComplianceCheck(6, "Data Capture", check_data_capture),
    ComplianceCheck(7, "Result Screens", check_result_screen),
    ComplianceCheck(8, "Runtime Target", check_runtime_target),
)
