"""Specification compiler: turns an authored validator description into one generation request.

Pure functions only; nothing here performs I/O.
"""

from __future__ import annotations

import logging

from .canonical import fingerprint
from .errors import InvalidSceneLayout
from .models import (
    CompetencyRef,
    EdgeCaseSlot,
    EdgeCaseTiming,
    GameMechanic,
    GenerationMetadata,
    GenerationRequest,
    Specification,
)

logger = logging.getLogger(__name__)

MIN_SCENES = 1
MAX_SCENES = 4
MIN_COMPETENCIES = 1
MAX_COMPETENCIES = 4

EDGE_CASE_SLOTS: dict[tuple[int, EdgeCaseTiming], int] = {
    (2, EdgeCaseTiming.EARLY): 2,
    (2, EdgeCaseTiming.MID): 2,
    (2, EdgeCaseTiming.LATE): 2,
    (3, EdgeCaseTiming.EARLY): 2,
    (3, EdgeCaseTiming.MID): 2,
    (3, EdgeCaseTiming.LATE): 3,
    (4, EdgeCaseTiming.EARLY): 2,
    (4, EdgeCaseTiming.MID): 3,
    (4, EdgeCaseTiming.LATE): 4,
}
FALLBACK_LAYOUT: tuple[int, EdgeCaseTiming] = (3, EdgeCaseTiming.MID)

# The UNSPECIFIED row is the default for mechanics the author did not pick.
MECHANIC_VERBS: dict[GameMechanic, tuple[str, ...]] = {
    GameMechanic.DRAG_DROP: ("drag", "drop", "arrange"),
    GameMechanic.SELECT: ("tap", "select", "confirm"),
    GameMechanic.SEQUENCE: ("order", "reorder", "lock in"),
    GameMechanic.PRIORITIZE: ("rank", "prioritize", "commit"),
    GameMechanic.MATCH: ("pair", "match", "verify"),
    GameMechanic.TYPE_INPUT: ("type", "enter", "submit"),
    GameMechanic.ALLOCATE: ("assign", "allocate", "rebalance"),
    GameMechanic.INSPECT: ("inspect", "flag", "justify"),
    GameMechanic.UNSPECIFIED: ("tap", "choose", "confirm"),
}


def resolve_edge_case_slot(scene_count: int, timing: EdgeCaseTiming) -> EdgeCaseSlot:
    """Map ``(scene_count, timing)`` to the scene that hosts the edge case.

    Pairs outside the lookup table use the default 3-scene/mid layout.
    """
    scene = EDGE_CASE_SLOTS.get((scene_count, timing))
    if scene is not None:
        return EdgeCaseSlot(scene=scene, layout_scene_count=scene_count, timing=timing)
    layout_scenes, layout_timing = FALLBACK_LAYOUT
    logger.debug(
        "No edge-case slot for %d scene(s)/%s; using %d-scene/%s layout",
        scene_count,
        timing.value,
        layout_scenes,
        layout_timing.value,
    )
    return EdgeCaseSlot(
        scene=EDGE_CASE_SLOTS[FALLBACK_LAYOUT],
        layout_scene_count=layout_scenes,
        timing=timing,
        fallback=True,
    )


def interaction_verbs(mechanic: GameMechanic) -> tuple[str, ...]:
    """Return the verbs the prompt offers for *mechanic*; unknown mechanics get the generic set."""
    return MECHANIC_VERBS.get(mechanic, MECHANIC_VERBS[GameMechanic.UNSPECIFIED])


def layout_issues(spec: Specification) -> list[str]:
    """Collect every scene and competency layout problem in *spec*.

    All problems are reported together rather than stopping at the first.

    Args:
        spec: Specification to check.

    Returns:
        Human-readable issues, empty when the layout compiles.
    """
    issues: list[str] = []
    scene_count = len(spec.scenes)
    competency_count = len(spec.competencies)

    if not MIN_SCENES <= scene_count <= MAX_SCENES:
        issues.append(f"scene count must be between {MIN_SCENES} and {MAX_SCENES}, got {scene_count}")
    if not MIN_COMPETENCIES <= competency_count <= MAX_COMPETENCIES:
        issues.append(
            f"competency count must be between {MIN_COMPETENCIES} and {MAX_COMPETENCIES}, got {competency_count}"
        )
    if competency_count > 1 and scene_count != competency_count:
        issues.append(
            f"scene count ({scene_count}) must equal competency count ({competency_count}) "
            "when more than one competency is selected"
        )

    seen: set[str] = set()
    for idx, competency in enumerate(spec.competencies):
        if competency.sub_competency_id in seen:
            issues.append(f"competencies[{idx}] duplicates sub-competency {competency.sub_competency_id}")
        seen.add(competency.sub_competency_id)

    if not issues:
        slot = resolve_edge_case_slot(scene_count, spec.edge_case_timing)
        if not slot.fallback and not 1 <= slot.scene <= scene_count:
            issues.append(f"edge case scene {slot.scene} is outside 1..{scene_count}")
    return issues


def _render_competency(index: int, competency: CompetencyRef) -> str:
    verbs = ", ".join(interaction_verbs(competency.game_mechanic))
    lines = [
        f"{index}. {competency.statement or competency.sub_competency_id}",
        f"   Competency: {competency.name or competency.competency_id}",
        f"   Player Action: {competency.player_action or 'Define the player action'}",
        f"   Interaction verbs: {verbs}",
    ]
    if competency.backend_data_captured:
        lines.append(f"   Required Metrics: {', '.join(competency.backend_data_captured)}")
    if competency.scoring_logic:
        rules = "; ".join(f"{key}={value}" for key, value in sorted(competency.scoring_logic.items()))
        lines.append(f"   Scoring Logic: {rules}")
    return "\n".join(lines)


def _render_scenes(spec: Specification, slot: EdgeCaseSlot) -> str:
    lines: list[str] = []
    for number, scene in enumerate(spec.scenes, start=1):
        marker = "  <-- EDGE CASE LANDS HERE" if number == slot.scene and not slot.fallback else ""
        lines.append(f"Scene {number}: {scene.text}{marker}")
    if slot.fallback:
        lines.append(
            f"Build the flow as {slot.layout_scene_count} short beats around the scenes above; "
            f"the edge case lands in beat {slot.scene}."
        )
    return "\n".join(lines)


def render_payload(spec: Specification, slot: EdgeCaseSlot, required_metrics: list[str]) -> str:
    """Render the generation prompt for *spec*.

    Args:
        spec: Compiled specification.
        slot: Resolved edge-case slot.
        required_metrics: Backend metrics gathered from every competency.

    Returns:
        The prompt text sent to the generation service.
    """
    competencies = "\n\n".join(
        _render_competency(idx, competency) for idx, competency in enumerate(spec.competencies, start=1)
    )
    metrics = ", ".join(["accuracy", "time_taken", "final_score", *required_metrics])
    return f"""Design a 3-6 minute validator mini-game that tests the sub-competencies below through interactive gameplay.

Title: {spec.title or 'Untitled validator'}
Industry: {spec.industry or 'General'}
Role context: {spec.role_context or 'Not specified'}
{spec.description}

Sub-Competencies Being Tested:
{competencies}

Scenes:
{_render_scenes(spec, slot)}

Edge-Case Moment ({slot.timing.value}, scene {slot.scene}):
{spec.edge_case or 'A single twist that forces the player to adapt.'}
Wrap the edge case in a function named triggerEdgeCase() and mark its container with data-edge-case="true".

SCORING INTEGRATION (CRITICAL):
1. At game completion, endGame() creates a `metrics` object with: {metrics}.
2. endGame() creates a `gameplayData` object (may be empty).
3. Compute a proficiency level: 'needs_work', 'proficient' or 'mastery', and show a result screen for each.
4. Include a button with id="submit-btn" that calls submitScore(metrics, gameplayData, level).
5. Never define submitScore yourself; it is injected automatically.
6. No "Play Again", "Restart" or replay buttons or logic.

Telegram Mini App Requirements:
- Mobile-first responsive layout with a viewport meta tag.
- Touch-friendly interactions.
- Load https://telegram.org/js/telegram-web-app.js and call Telegram.WebApp.ready().
"""


def compile_specification(spec: Specification) -> GenerationRequest:
    """Compile *spec* into a :class:`GenerationRequest`.

    Raises:
        InvalidSceneLayout: If the scene/competency/edge-case invariants are violated.
    """
    issues = layout_issues(spec)
    if issues:
        raise InvalidSceneLayout(issues)

    slot = resolve_edge_case_slot(len(spec.scenes), spec.edge_case_timing)
    required_metrics: list[str] = []
    for competency in spec.competencies:
        for metric in competency.backend_data_captured:
            if metric not in required_metrics:
                required_metrics.append(metric)

    metadata = GenerationMetadata(
        competency_ids=[competency.competency_id for competency in spec.competencies],
        sub_competency_ids=[competency.sub_competency_id for competency in spec.competencies],
        scene_count=len(spec.scenes),
        edge_case=slot,
        required_metrics=required_metrics,
        interaction_verbs={
            competency.sub_competency_id: list(interaction_verbs(competency.game_mechanic))
            for competency in spec.competencies
        },
    )
    payload = render_payload(spec, slot, required_metrics)
    return GenerationRequest(
        payload=payload,
        metadata=metadata,
        fingerprint=fingerprint({"payload": payload, "metadata": metadata}),
    )
