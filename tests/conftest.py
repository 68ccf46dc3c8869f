from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Callable

import pytest

from validator_forge.artifacts import inject_submission_bridge
from validator_forge.models import (
    CompetencyRef,
    DesignPalette,
    EdgeCaseTiming,
    GameMechanic,
    SceneSpec,
    Specification,
)
from validator_forge.orchestrator import PipelineOrchestrator
from validator_forge.settings import RuntimeSettings
from validator_forge.state_store import PipelineStateStore

GAME_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<script src="https://telegram.org/js/telegram-web-app.js"></script>
<style>
  body { display: flex; flex-direction: column; min-height: 100vh; }
  @media (max-width: 600px) { .scene { padding: 1rem; } }
</style>
</head>
<body>
<div id="scene" class="scene"></div>
<div id="edge" data-edge-case="true" hidden></div>
<div id="result"></div>
<button id="submit-btn" hidden>Submit</button>
<script>
  Telegram.WebApp.ready();
  const metrics = { accuracy: 0, time_taken: 0, final_score: 0 };
  const gameplayData = { decision_time: [], choices: [] };
  const startedAt = Date.now();
  let scene = 1;
  let correct = 0;

  function triggerEdgeCase() {
    document.getElementById("edge").hidden = false;
  }

  function endGame() {
    metrics.time_taken = Date.now() - startedAt;
    metrics.accuracy = correct / 3;
    metrics.final_score = Math.round(metrics.accuracy * 100);
    const level = metrics.final_score >= 90 ? "Mastery" : metrics.final_score >= 60 ? "Proficient" : "Needs Work";
    document.getElementById("result").textContent = level;
    const button = document.getElementById("submit-btn");
    button.hidden = false;
    button.addEventListener("click", () => submitScore(metrics, gameplayData, level));
  }

  function advance(choice) {
    gameplayData.choices.push(choice);
    gameplayData.decision_time.push(Date.now() - startedAt);
    if (choice === "a") correct += 1;
    scene += 1;
    if (scene === 2) triggerEdgeCase();
    if (scene > 3) endGame();
  }

  document.getElementById("scene").addEventListener("pointerdown", () => advance("a"));
</script>
</body>
</html>
"""

# Same game as the platform would store it after bridge injection.
BRIDGED_GAME_HTML = inject_submission_bridge(GAME_HTML)

# Check 5 fails without a viewport meta tag.
BROKEN_GAME_HTML = GAME_HTML.replace(
    '<meta name="viewport" content="width=device-width, initial-scale=1">\n', ""
)

# Check 8 asks for review without the Mini App handshake.
UNREADY_GAME_HTML = GAME_HTML.replace("  Telegram.WebApp.ready();\n", "")


def make_specification(
    competency_count: int = 1,
    scene_count: int | None = None,
    timing: EdgeCaseTiming = EdgeCaseTiming.MID,
) -> Specification:
    scenes = scene_count if scene_count is not None else competency_count
    return Specification(
        title="Budget Triage",
        description="Allocate a shrinking budget across competing requests",
        industry="Finance",
        role_context="Junior analyst during quarter close",
        competencies=[
            CompetencyRef(
                competency_id=f"C-{idx}",
                name="Analytical Thinking",
                sub_competency_id=f"SUB-{idx}",
                statement="Prioritizes requests by expected impact",
                player_action="Rank incoming requests before the deadline",
                game_mechanic=GameMechanic.PRIORITIZE,
                backend_data_captured=["decision_time", "choices"],
                scoring_logic={"accuracy_weight": 0.7},
            )
            for idx in range(1, competency_count + 1)
        ],
        scenes=[SceneSpec(text=f"Scene {idx}: a new request arrives") for idx in range(1, scenes + 1)],
        edge_case_timing=timing,
        edge_case="The CFO cuts the budget by 30% mid-review",
        design=DesignPalette(primary="#112233"),
    )


class FakeGenerator:
    """Returns (or raises) scripted outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: str | BaseException, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes) or [GAME_HTML]
        self.delay = delay
        self.calls = 0
        self.payloads: list[str] = []

    async def generate(self, payload: str, theme: DesignPalette) -> str:
        self.calls += 1
        self.payloads.append(payload)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings()


@pytest.fixture
def store(tmp_path: Path) -> PipelineStateStore:
    return PipelineStateStore(tmp_path / "state_store")


@pytest.fixture
def make_orchestrator(
    store: PipelineStateStore, settings: RuntimeSettings
) -> Callable[..., PipelineOrchestrator]:
    def _make(generator: FakeGenerator | None = None, **kwargs: object) -> PipelineOrchestrator:
        return PipelineOrchestrator(
            store,
            settings,
            generator=generator if generator is not None else FakeGenerator(),
            **kwargs,  # type: ignore[arg-type]
        )

    return _make
