from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

import openai
from dotenv import load_dotenv
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import (
    GenerationError,
    NoArtifactReturned,
    PaymentRequired,
    QuotaExhausted,
    RateLimited,
    Transient,
)
from .models import DesignPalette
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

QUOTA_ERROR_CODES = frozenset({"insufficient_quota", "credits_depleted", "quota_exceeded"})
PAYMENT_ERROR_CODES = frozenset({"payment_required", "billing_hard_limit_reached"})
TRANSIENT_STATUS_CODES = frozenset({408, 409, 425})


class SupportsGenerate(Protocol):
    """Anything that turns a compiled payload plus theme into a raw artifact."""

    async def generate(self, payload: str, theme: DesignPalette) -> str:
        ...


def ensure_api_key(repo_root: Path | None = None) -> str:
    """Load OPENAI_API_KEY from environment or .env and return it.

    Raises:
        RuntimeError: If OPENAI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required to call the generation service")
    return key


def get_chat_model(
    *,
    model_name: str,
    temperature: float,
    timeout: float,
    base_url: str = "",
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI instance that never retries on its own.

    Raises:
        ValueError: If model_name is blank.
        RuntimeError: If OPENAI_API_KEY is not available.
    """
    if not model_name or not model_name.strip():
        raise ValueError("model_name must be a non-empty string")
    api_key = ensure_api_key(repo_root=repo_root)
    kwargs: dict[str, Any] = {
        "model": model_name,
        "temperature": temperature,
        "timeout": timeout,
        "max_retries": 0,
        "api_key": api_key,
    }
    if base_url:
        kwargs["base_url"] = base_url
    return ChatOpenAI(**kwargs)


def render_system_prompt(theme: DesignPalette) -> str:
    logo = f"\nDisplay the brand logo from {theme.logo_url} in a fixed top-right corner badge." if theme.logo_url else ""
    return f"""You are an expert game developer. Generate a complete, playable HTML5 game from the design brief.

CRITICAL REQUIREMENTS:
1. Return ONLY valid HTML - a complete, self-contained HTML file.
2. Include ALL JavaScript and CSS inline within the HTML.
3. Use the brand palette: primary={theme.primary}, secondary={theme.secondary}, accent={theme.accent},
   background={theme.background}, highlight={theme.highlight}, text={theme.text}, font={theme.font}.
4. Decorative particle effect: {theme.particle_effect}.
5. Make it responsive and mobile-friendly.{logo}

OUTPUT FORMAT:
Return ONLY the HTML code. No markdown, no explanations."""


def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                chunks.append(item["text"])
        return "".join(chunks)
    return ""


def _error_code(exc: openai.APIStatusError) -> str | None:
    """Pull the service's structured error code out of an API error."""
    for candidate in (getattr(exc, "code", None), getattr(exc, "type", None)):
        if isinstance(candidate, str) and candidate:
            return candidate.lower()
    body = exc.body
    if isinstance(body, dict):
        nested = body.get("error", body)
        if isinstance(nested, dict):
            for key in ("code", "type"):
                value = nested.get(key)
                if isinstance(value, str) and value:
                    return value.lower()
    return None


def _retry_after_seconds(exc: openai.APIStatusError) -> int | None:
    raw = exc.response.headers.get("retry-after") if exc.response is not None else None
    if raw is None:
        return None
    try:
        return max(1, int(float(raw)))
    except ValueError:
        return None


def classify_generation_failure(exc: BaseException) -> GenerationError:
    """Map a failed service call onto the generation error taxonomy.

    Classification uses HTTP status and structured error codes only.
    """
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, (TimeoutError, openai.APITimeoutError)):
        return Transient("Generation service timed out", {"error": type(exc).__name__})
    if isinstance(exc, openai.APIConnectionError):
        return Transient("Could not reach the generation service", {"error": type(exc).__name__})
    if isinstance(exc, openai.APIStatusError):
        status = exc.status_code
        code = _error_code(exc)
        details = {"status": status, "code": code}
        if code in QUOTA_ERROR_CODES:
            return QuotaExhausted("Generation credits depleted", details, status_code=status)
        if status == 402 or code in PAYMENT_ERROR_CODES:
            return PaymentRequired("Generation service requires payment", details, status_code=status)
        if status == 429:
            return RateLimited(
                "Generation service rate limit exceeded",
                details,
                status_code=status,
                retry_after_seconds=_retry_after_seconds(exc),
            )
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            return Transient(f"Generation service error {status}", details, status_code=status)
        error = GenerationError(
            f"Generation service rejected the request with status {status}",
            details,
            status_code=status,
            remediation="Check the generation service configuration (API key, model name), then retry.",
        )
        error.code = "generation_rejected"
        return error
    return Transient(f"Unexpected generation failure: {exc}", {"error": type(exc).__name__})


class ArtifactGenerator:
    """Client for the external generation service.

    Wraps exactly one chat-completion call per ``generate``; retries are the
    orchestrator's decision, never the client's.
    """

    def __init__(self, settings: RuntimeSettings | None = None, *, model: Any | None = None) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self._model = model

    @property
    def model(self) -> Any:
        if self._model is None:
            self._model = get_chat_model(
                model_name=self.settings.model_name,
                temperature=self.settings.temperature,
                timeout=self.settings.generation_timeout_seconds,
                base_url=self.settings.api_base_url,
            )
        return self._model

    async def generate(self, payload: str, theme: DesignPalette) -> str:
        """Generate one artifact and return the service's text verbatim.

        Raises:
            GenerationError: A classified failure; see :func:`classify_generation_failure`.
        """
        messages = [SystemMessage(content=render_system_prompt(theme)), HumanMessage(content=payload)]
        logger.info("Requesting artifact from %s (%d prompt chars)", self.settings.model_name, len(payload))
        try:
            response = await self.model.ainvoke(messages)
        except Exception as exc:  # noqa: BLE001 - every failure is classified below.
            error = classify_generation_failure(exc)
            logger.warning("Generation failed: %s [%s]", error, error.code)
            raise error from exc

        text = _content_to_text(getattr(response, "content", response))
        if not text.strip():
            raise NoArtifactReturned(
                "Generation service returned an empty document",
                {"response_metadata": json.dumps(getattr(response, "response_metadata", {}), default=str)[:500]},
            )
        logger.info("Artifact received (%d chars)", len(text))
        return text
