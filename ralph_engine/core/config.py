"""Configuration loader for ralph-engine.

Loads config from a YAML cascade: <state_dir>/config.yaml is loaded first,
then an optional environment-specific overlay (config.<env>.yaml), then
RALPH_* environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ralph_engine.core.exceptions import ConfigError

DEFAULT_STATE_DIR = Path(".ralph")


# ---------------------------------------------------------------------------
# Config schema
# ---------------------------------------------------------------------------

class LoopConfig(BaseModel):
    """Circuit-breaker thresholds and budget ceilings. Immutable for a session."""
    model_config = ConfigDict(frozen=True)

    max_consecutive_errors: int = Field(default=3, ge=1)
    max_consecutive_no_change: int = Field(default=5, ge=1)
    max_consecutive_test_only: int = Field(default=3, ge=1)
    max_consecutive_test_failures: int = Field(default=5, ge=1)
    max_iterations: int = Field(default=50, ge=1)
    max_tokens: int = Field(default=500_000, ge=1)
    completion_score_threshold: int = Field(default=3, ge=1)


class AgentConfig(BaseModel):
    provider: Literal["claude", "codex"] = "claude"
    model: str = "sonnet"
    timeout_seconds: int = 1800
    session_mode: Literal["hybrid", "stateless"] = "hybrid"
    refresh_interval: int = 5
    refresh_on_inject: bool = True
    refresh_on_criterion: bool = False


class TestsConfig(BaseModel):
    command: Optional[str] = None
    timeout_seconds: int = 300
    max_output_lines: int = 100


class VcsConfig(BaseModel):
    auto_commit_interval: int = 5
    auto_push: bool = False
    commit_on_complete: bool = True


class ContextConfig(BaseModel):
    recent_iterations: int = 3
    max_excerpt_chars: int = 4000


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    log_to_file: bool = True


class AppConfig(BaseModel):
    loop: LoopConfig = Field(default_factory=LoopConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    tests: TestsConfig = Field(default_factory=TestsConfig)
    vcs: VcsConfig = Field(default_factory=VcsConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

# env var -> (section, key, caster)
_ENV_OVERRIDES: dict[str, tuple[str, str, type]] = {
    "RALPH_MODEL": ("agent", "model", str),
    "RALPH_PROVIDER": ("agent", "provider", str),
    "RALPH_MAX_ITERATIONS": ("loop", "max_iterations", int),
    "RALPH_MAX_TOKENS": ("loop", "max_tokens", int),
    "RALPH_TEST_COMMAND": ("tests", "command", str),
    "RALPH_LOG_LEVEL": ("logging", "level", str),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base, returning a new dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for var, (section, key, caster) in _ENV_OVERRIDES.items():
        raw = os.getenv(var)
        if raw is None or raw == "":
            continue
        try:
            value = caster(raw)
        except ValueError as e:
            raise ConfigError(f"{var}={raw!r} is not a valid {caster.__name__}") from e
        overrides.setdefault(section, {})[key] = value
    return overrides


def load_config(
    state_dir: Optional[Path] = None,
    env: Optional[str] = None,
) -> AppConfig:
    """Load application config from YAML cascade.

    Order: config.yaml -> config.{env}.yaml -> RALPH_* env vars.
    """
    if state_dir is None:
        state_dir = DEFAULT_STATE_DIR

    merged = _load_yaml(state_dir / "config.yaml")

    if env:
        overlay = _load_yaml(state_dir / f"config.{env}.yaml")
        merged = _deep_merge(merged, overlay)

    merged = _deep_merge(merged, _env_overrides())

    try:
        return AppConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


# ---------------------------------------------------------------------------
# Prompt loader
# ---------------------------------------------------------------------------

class PromptLoader:
    """Loads prompt fragments from <state_dir>/prompts/.

    Falls back to the built-in default if the file doesn't exist, so the
    agent protocol can be reworded without code changes.
    """

    def __init__(self, prompts_dir: Optional[Path] = None):
        if prompts_dir is None:
            prompts_dir = DEFAULT_STATE_DIR / "prompts"
        self.prompts_dir = prompts_dir

    def load(self, name: str, default: str = "") -> str:
        """Load a prompt fragment by filename.

        Args:
            name: Filename within prompts/ (e.g. "protocol.md").
            default: Fallback text if file doesn't exist.

        Returns:
            Prompt text (stripped of leading/trailing whitespace).
        """
        path = self.prompts_dir / name
        if path.exists():
            return path.read_text().strip()
        return default
