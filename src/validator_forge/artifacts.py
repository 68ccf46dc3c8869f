from __future__ import annotations

import hashlib
import re

SUBMISSION_BRIDGE_MARKER = "Injected submission function - DO NOT EDIT"

SUBMISSION_BRIDGE = f"""
<script>
  // {SUBMISSION_BRIDGE_MARKER}
  function submitScore(metrics, gameplayData, level) {{
    const payload = {{
      type: "gameSubmit",
      payload: {{
        scoringMetrics: metrics,
        gameplayData: gameplayData || {{}},
        proficiencyLevel: level
      }}
    }};
    window.parent.postMessage(payload, "*");

    const overlay = document.createElement("div");
    overlay.style.cssText = "position:fixed;inset:0;background:rgba(0,0,0,0.9);display:flex;align-items:center;justify-content:center;z-index:9999;";
    overlay.innerHTML = "<div style='padding:2rem;background:#111;border:2px solid #00A3FF;color:#fff;border-radius:12px;font-size:1.2rem;'>Submitting...</div>";
    document.body.appendChild(overlay);
  }}
</script>
"""

_FENCE_OPEN_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?")
_FENCE_CLOSE_RE = re.compile(r"\n?```\s*$")
_SCRIPT_CLOSE_RE = re.compile(r"</script\s*>", re.IGNORECASE)
_BODY_CLOSE_RE = re.compile(r"</body\s*>", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Remove a markdown code fence the model wrapped around the document."""
    stripped = _FENCE_OPEN_RE.sub("", text.strip(), count=1)
    return _FENCE_CLOSE_RE.sub("", stripped, count=1).strip()


def inject_submission_bridge(html: str) -> str:
    """Insert the locked ``submitScore`` bridge after the last script block.

    Without any script block the bridge goes before ``</body>``, or at the end
    of the document when there is no body either. Already-bridged documents
    are returned unchanged.
    """
    if SUBMISSION_BRIDGE_MARKER in html:
        return html
    closes = list(_SCRIPT_CLOSE_RE.finditer(html))
    if closes:
        insert_at = closes[-1].end()
        return html[:insert_at] + SUBMISSION_BRIDGE + html[insert_at:]
    body_close = _BODY_CLOSE_RE.search(html)
    if body_close is not None:
        return html[: body_close.start()] + SUBMISSION_BRIDGE + html[body_close.start() :]
    return html + SUBMISSION_BRIDGE


def prepare_generated_artifact(raw: str) -> str:
    return inject_submission_bridge(strip_code_fences(raw))


def fingerprint_artifact(artifact: str) -> str:
    return hashlib.sha256(artifact.encode("utf-8")).hexdigest()
