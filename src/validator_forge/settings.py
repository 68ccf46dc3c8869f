from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    model_name: str = "gpt-4o"
    api_base_url: str = ""
    temperature: float = 1.0
    generation_timeout_seconds: float = 90.0
    testing_timeout_seconds: float = 30.0
    inflight_lease_seconds: int = 900
    max_artifact_bytes: int = 2_000_000
    default_rate_limit_backoff_seconds: int = 30

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("FORGE_STATE_STORE_ROOT", "state_store"),
            model_name=os.getenv("FORGE_MODEL", "gpt-4o"),
            api_base_url=os.getenv("FORGE_API_BASE_URL", ""),
            temperature=_get_env_float("FORGE_TEMPERATURE", default=1.0, minimum=0.0, maximum=2.0),
            generation_timeout_seconds=_get_env_float(
                "FORGE_GENERATION_TIMEOUT", default=90.0, minimum=1.0, maximum=3_600.0
            ),
            testing_timeout_seconds=_get_env_float(
                "FORGE_TESTING_TIMEOUT", default=30.0, minimum=1.0, maximum=3_600.0
            ),
            inflight_lease_seconds=_get_env_int("FORGE_INFLIGHT_LEASE", default=900, minimum=60),
            max_artifact_bytes=_get_env_int("FORGE_MAX_ARTIFACT_BYTES", default=2_000_000, minimum=1_024),
            default_rate_limit_backoff_seconds=_get_env_int(
                "FORGE_RATE_LIMIT_BACKOFF", default=30, minimum=1, maximum=3_600
            ),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        model_name = self.model_name.strip()
        if not model_name:
            raise ValueError("FORGE_MODEL must be non-empty")
        if not self.state_store_root.strip():
            raise ValueError("FORGE_STATE_STORE_ROOT must be non-empty")

        if self.generation_timeout_seconds <= 0 or self.testing_timeout_seconds <= 0:
            raise ValueError("pipeline timeouts must be > 0")
        # The lease must outlast the longest run, or a live token could be reclaimed.
        longest_run = max(self.generation_timeout_seconds, self.testing_timeout_seconds)
        if self.inflight_lease_seconds < longest_run:
            raise ValueError(
                "FORGE_INFLIGHT_LEASE must be >= FORGE_GENERATION_TIMEOUT and FORGE_TESTING_TIMEOUT, got: "
                f"{self.inflight_lease_seconds} < {longest_run}"
            )

        api_base_url = self.api_base_url.strip().rstrip("/")
        if api_base_url and not api_base_url.startswith(("http://", "https://")):
            raise ValueError(f"FORGE_API_BASE_URL must be an http(s) URL, got: {api_base_url!r}")

        return RuntimeSettings(
            state_store_root=self.state_store_root,
            model_name=model_name,
            api_base_url=api_base_url,
            temperature=self.temperature,
            generation_timeout_seconds=self.generation_timeout_seconds,
            testing_timeout_seconds=self.testing_timeout_seconds,
            inflight_lease_seconds=self.inflight_lease_seconds,
            max_artifact_bytes=self.max_artifact_bytes,
            default_rate_limit_backoff_seconds=self.default_rate_limit_backoff_seconds,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound (default 10M, prevents absurd values).

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    """Parse a float from an environment variable with bounds checking."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed
