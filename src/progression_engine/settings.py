from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

HASH_ALGORITHMS = frozenset({"sha256", "sha3_256", "blake2s"})
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class EngineSettings:
    """Engine settings loaded from the environment with fail-fast validation."""

    state_store_root: str = "state_store"
    hash_algorithm: str = "sha256"
    generator_model: str = "gpt-4o-mini"
    generator_temperature: float = 0.4
    offline_only: bool = True

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "EngineSettings":
        """Read ``PROGRESSION_*`` variables, loading ``env_file`` (or ``./.env``) first when present."""
        dotenv_path = env_file if env_file is not None else Path.cwd() / ".env"
        if dotenv_path.is_file():
            load_dotenv(dotenv_path)
        return cls(
            state_store_root=os.getenv("PROGRESSION_STATE_STORE_ROOT", "state_store"),
            hash_algorithm=os.getenv("PROGRESSION_HASH_ALGORITHM", "sha256"),
            generator_model=os.getenv("PROGRESSION_GENERATOR_MODEL", "gpt-4o-mini"),
            generator_temperature=_get_env_float("PROGRESSION_GENERATOR_TEMPERATURE", default=0.4, minimum=0.0, maximum=2.0),
            offline_only=_get_env_bool("PROGRESSION_OFFLINE_ONLY", default=True),
        ).normalized()

    def normalized(self) -> "EngineSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        hash_algorithm = self.hash_algorithm.strip().lower()
        if hash_algorithm not in HASH_ALGORITHMS:
            raise ValueError(
                f"PROGRESSION_HASH_ALGORITHM must be one of: {', '.join(sorted(HASH_ALGORITHMS))}"
            )
        if not self.state_store_root.strip():
            raise ValueError("PROGRESSION_STATE_STORE_ROOT must be non-empty")
        generator_model = self.generator_model.strip()
        if not generator_model:
            raise ValueError("PROGRESSION_GENERATOR_MODEL must be non-empty")
        return EngineSettings(
            state_store_root=self.state_store_root,
            hash_algorithm=hash_algorithm,
            generator_model=generator_model,
            generator_temperature=self.generator_temperature,
            offline_only=self.offline_only,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"{name} must be a boolean flag, got: {raw!r}")
