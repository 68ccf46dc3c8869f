import json
from pathlib import Path

import pytest

from conftest import BRIDGED_GAME_HTML, make_specification
from validator_forge.__main__ import main


def _parse(output: str) -> dict[str, str]:
    pairs = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep and " " not in key:
            pairs[key] = value
    return pairs


def test_cli_upload_test_publish_flow(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    store_root = tmp_path / "store"
    spec_path = tmp_path / "spec.json"
    spec_path.write_text(make_specification().model_dump_json(), encoding="utf-8")
    game_path = tmp_path / "game.html"
    game_path.write_text(BRIDGED_GAME_HTML, encoding="utf-8")
    base = ["--state-store", str(store_root), "--log-level", "WARNING"]

    assert main([*base, "create", "--author", "author-1", "--spec", str(spec_path), "--upload", str(game_path)]) == 0
    created = _parse(capsys.readouterr().out)
    draft_id = created["draft_id"]
    assert created["state"] == "draft"

    assert main([*base, "publish", draft_id, "--author", "author-1"]) == 1
    assert _parse(capsys.readouterr().out)["error"] == "not_certified"

    assert main([*base, "test", draft_id]) == 0
    assert "status=passed" in capsys.readouterr().out

    assert main([*base, "publish", draft_id, "--author", "author-1"]) == 0
    published = _parse(capsys.readouterr().out)
    assert published["visibility"] == "published"
    assert len(published["public_code"]) == 8

    assert main([*base, "history", draft_id]) == 0
    history = json.loads(capsys.readouterr().out)
    assert [run["status"] for run in history] == ["passed"]
    assert len(history[0]["results"]) == 8


def test_cli_rejects_non_creator_role(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    spec_path = tmp_path / "spec.json"
    spec_path.write_text(make_specification().model_dump_json(), encoding="utf-8")
    code = main(
        ["--state-store", str(tmp_path / "store"), "create", "--author", "a", "--role", "viewer", "--spec", str(spec_path)]
    )
    assert code == 1
    output = _parse(capsys.readouterr().out)
    assert output["error"] == "not_authorized"
    assert output["retryable"] == "false"


def test_cli_reports_missing_draft(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["--state-store", str(tmp_path / "store"), "status", "DRF-missing"]) == 1
    assert _parse(capsys.readouterr().out)["error"] == "draft_not_found"
