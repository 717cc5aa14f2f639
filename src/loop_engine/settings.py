from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

STORE_BACKENDS = frozenset({"memory", "file"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    store_backend: str = "file"
    state_store_root: str = "state_store"
    max_propagation_depth: int = 64
    activity_log: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            store_backend=os.getenv("LOOPS_STORE_BACKEND", "file"),
            state_store_root=os.getenv("LOOPS_STATE_STORE_ROOT", "state_store"),
            max_propagation_depth=_get_env_int("LOOPS_MAX_PROPAGATION_DEPTH", default=64, minimum=1, maximum=10_000),
            activity_log=os.getenv("LOOPS_ACTIVITY_LOG", ""),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        backend = self.store_backend.strip().lower()
        if backend not in STORE_BACKENDS:
            raise ValueError(f"LOOPS_STORE_BACKEND must be one of: {', '.join(sorted(STORE_BACKENDS))}")
        if not self.state_store_root.strip():
            raise ValueError("LOOPS_STATE_STORE_ROOT must be non-empty")
        if self.max_propagation_depth < 1:
            raise ValueError(f"LOOPS_MAX_PROPAGATION_DEPTH must be >= 1, got: {self.max_propagation_depth}")
        return RuntimeSettings(
            store_backend=backend,
            state_store_root=self.state_store_root.strip(),
            max_propagation_depth=self.max_propagation_depth,
            activity_log=self.activity_log.strip(),
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def activity_log_path(self, repo_root: Path) -> Path:
        if not self.activity_log:
            return self.state_store_path(repo_root) / "activity.jsonl"
        path = Path(self.activity_log)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

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
