from pathlib import Path

import pytest

from conftest import BRIDGED_GAME_HTML, GAME_HTML, make_specification
from validator_forge.artifacts import (
    SUBMISSION_BRIDGE_MARKER,
    fingerprint_artifact,
    inject_submission_bridge,
    prepare_generated_artifact,
    strip_code_fences,
)
from validator_forge.checks import CHECK_CATALOG, CheckContext, ComplianceCheck, check_edge_case, check_locked_elements
from validator_forge.compiler import compile_specification
from validator_forge.errors import PipelineStateError, TestRunnerError
from validator_forge.models import ArtifactKind, CheckStatus, Draft, aggregate_status
from validator_forge.settings import RuntimeSettings
from validator_forge.state_store import PipelineStateStore
from validator_forge.test_runner import ComplianceTestRunner, select_sub_competency


def _draft(artifact: str | None, kind: ArtifactKind = ArtifactKind.GENERATED, competencies: int = 1) -> Draft:
    return Draft(
        draft_id="DRF-test",
        author_id="author-1",
        specification=make_specification(competency_count=competencies),
        artifact_kind=kind,
        artifact=artifact,
        artifact_fingerprint=fingerprint_artifact(artifact) if artifact else None,
        artifact_revision=1 if artifact else 0,
    )


def _context(artifact: str, kind: ArtifactKind = ArtifactKind.GENERATED) -> CheckContext:
    spec = make_specification()
    return CheckContext(
        artifact=artifact,
        artifact_kind=kind,
        metadata=compile_specification(spec).metadata,
        sub_competency=spec.competencies[0],
        max_artifact_bytes=2_000_000,
    )


def _runner(tmp_path: Path, **kwargs: object) -> ComplianceTestRunner:
    return ComplianceTestRunner(PipelineStateStore(tmp_path / "store"), RuntimeSettings(), **kwargs)  # type: ignore[arg-type]


def test_catalog_is_fixed_and_ordered() -> None:
    assert [check.number for check in CHECK_CATALOG] == list(range(1, 9))
    assert CHECK_CATALOG[0].name == "Structure Compliance"
    assert CHECK_CATALOG[-1].name == "Runtime Target"


def test_compliant_game_passes_every_check(tmp_path: Path) -> None:
    results = _runner(tmp_path).evaluate(_draft(BRIDGED_GAME_HTML))
    assert [result.check_number for result in results] == list(range(1, 9))
    assert all(result.status == CheckStatus.PASSED for result in results), [
        (result.name, result.notes) for result in results if result.status != CheckStatus.PASSED
    ]
    assert aggregate_status(results) == CheckStatus.PASSED


def test_failing_check_does_not_stop_later_checks(tmp_path: Path) -> None:
    results = _runner(tmp_path).evaluate(_draft("<p>not a game</p>"))
    assert len(results) == 8
    assert results[0].status == CheckStatus.FAILED
    assert results[0].details["missing_elements"] == ["<html>", "</html>", "<body>", "<script>"]
    assert aggregate_status(results) == CheckStatus.FAILED


def test_evaluation_is_repeatable(tmp_path: Path) -> None:
    runner = _runner(tmp_path)
    draft = _draft(BRIDGED_GAME_HTML.replace("  Telegram.WebApp.ready();\n", ""))
    first = runner.evaluate(draft)
    second = runner.evaluate(draft)
    assert [result.status for result in first] == [result.status for result in second]
    assert aggregate_status(first) == CheckStatus.NEEDS_REVIEW


def test_locked_elements_rejects_redefined_bridge() -> None:
    hijacked = BRIDGED_GAME_HTML.replace(
        "<script>\n  Telegram", "<script>\n  function submitScore(a) { return a; }\n  Telegram", 1
    )
    outcome = check_locked_elements(_context(hijacked))
    assert outcome.status == CheckStatus.FAILED
    assert outcome.details["submit_score_redefinitions"] == 1


def test_locked_elements_rejects_replay_buttons() -> None:
    with_replay = BRIDGED_GAME_HTML.replace("Submit</button>", "Submit</button><button>Play Again</button>")
    outcome = check_locked_elements(_context(with_replay))
    assert outcome.status == CheckStatus.FAILED
    assert outcome.details["replay_logic"] == ["play again"]


def test_locked_elements_missing_bridge_depends_on_artifact_kind() -> None:
    assert check_locked_elements(_context(GAME_HTML)).status == CheckStatus.FAILED
    assert check_locked_elements(_context(GAME_HTML, ArtifactKind.UPLOADED)).status == CheckStatus.NEEDS_REVIEW


def test_edge_case_defined_but_never_triggered_needs_review() -> None:
    untriggered = GAME_HTML.replace("    if (scene === 2) triggerEdgeCase();\n", "")
    outcome = check_edge_case(_context(untriggered))
    assert outcome.status == CheckStatus.NEEDS_REVIEW
    assert outcome.details["trigger_defined"] is True
    assert outcome.details["trigger_invoked"] is False
    assert outcome.details["fallback_layout"] is True


def test_oversized_artifact_fails_runtime_target(tmp_path: Path) -> None:
    runner = ComplianceTestRunner(
        PipelineStateStore(tmp_path / "store"), RuntimeSettings(max_artifact_bytes=1_024)
    )
    results = runner.evaluate(_draft(BRIDGED_GAME_HTML))
    assert results[7].status == CheckStatus.FAILED
    assert results[7].details["artifact_bytes"] > 1_024


def test_crashing_check_aborts_run(tmp_path: Path) -> None:
    def explode(ctx: CheckContext) -> None:
        raise KeyError("boom")

    catalog = CHECK_CATALOG[:3] + (ComplianceCheck(4, "Edge Case Implementation", explode),) + CHECK_CATALOG[4:]
    with pytest.raises(TestRunnerError, match="Check 4"):
        _runner(tmp_path, catalog=catalog).evaluate(_draft(BRIDGED_GAME_HTML))


def test_runner_requires_artifact_and_known_sub_competency(tmp_path: Path) -> None:
    with pytest.raises(PipelineStateError, match="no artifact"):
        _runner(tmp_path).evaluate(_draft(None))
    with pytest.raises(PipelineStateError, match="SUB-9"):
        select_sub_competency(_draft(GAME_HTML, competencies=2), "SUB-9")
    assert select_sub_competency(_draft(GAME_HTML, competencies=2), "SUB-2").sub_competency_id == "SUB-2"


def test_strip_code_fences() -> None:
    assert strip_code_fences("```html\n<html></html>\n```") == "<html></html>"
    assert strip_code_fences("  <html></html>  ") == "<html></html>"


def test_bridge_injected_after_last_script_once() -> None:
    bridged = prepare_generated_artifact(f"```html\n{GAME_HTML}```")
    assert bridged.count(SUBMISSION_BRIDGE_MARKER) == 1
    assert bridged.index(SUBMISSION_BRIDGE_MARKER) > bridged.rindex("pointerdown")
    assert bridged.index(SUBMISSION_BRIDGE_MARKER) < bridged.index("</body>")
    assert inject_submission_bridge(bridged) == bridged


def test_bridge_injected_before_body_without_scripts() -> None:
    bridged = inject_submission_bridge("<html><body><p>hi</p></body></html>")
    assert bridged.index(SUBMISSION_BRIDGE_MARKER) < bridged.index("</body>")
