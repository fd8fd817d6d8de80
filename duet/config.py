"""Configuration loader — reads config.yaml, applies env overrides, validates with Pydantic.

The CLI commands, their working directory and the per-run timeout live under
``cli``. Environment variables win over the file so deployments can swap a
command without editing YAML.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, field_validator

from duet.schemas import AgentType

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
DEFAULT_TIMEOUT_SECONDS = 300.0

# env var -> (section, key); section None means top level
_ENV_OVERRIDES: dict[str, tuple[str | None, str]] = {
    "GEMINI_CLI": ("cli", "gemini"),
    "CLAUDE_CLI": ("cli", "claude"),
    "DUET_WORKSPACE_DIR": ("cli", "workspace_dir"),
    "DUET_TIMEOUT_SECONDS": ("cli", "timeout_seconds"),
    "DUET_API_KEY": (None, "api_key"),
}


class CliConfig(BaseModel):
    """How to invoke the two external tools."""

    gemini: str = "gemini"
    claude: str = "claude"
    workspace_dir: str = "."
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @field_validator("gemini", "claude")
    @classmethod
    def command_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("CLI command must not be empty")
        return v

    @field_validator("workspace_dir")
    @classmethod
    def expand_workspace(cls, v: str) -> str:
        return os.path.expanduser(v)

    @field_validator("timeout_seconds")
    @classmethod
    def timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout_seconds must be greater than 0")
        return v

    def command_for(self, agent: AgentType) -> str:
        return self.gemini if agent == "gemini" else self.claude


class DuetConfig(BaseModel):
    """Top-level service configuration."""

    cli: CliConfig = CliConfig()

    # Auth & CORS
    api_key: str | None = None
    allowed_origins: list[str] = ["*"]

    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def known_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level '{v}'")
        return level


# ---------------------------------------------------------------------------
# Module-level config cache
# ---------------------------------------------------------------------------

_config: DuetConfig | None = None
_config_path: str | None = None


def _apply_env_overrides(raw: dict[str, Any]) -> dict[str, Any]:
    for env_var, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        if section is None:
            raw[key] = value
        else:
            if not isinstance(raw.get(section), dict):
                raw[section] = {}
            raw[section][key] = value
        logger.debug(f"Config override from {env_var}")
    return raw


def load_config(path: str | None = None) -> DuetConfig:
    """Read the config file (if any), apply env overrides, validate, and cache.

    ``path`` defaults to ``$DUET_CONFIG`` or ``config.yaml``. An explicitly
    requested file that does not exist is an error; a missing default file
    falls back to built-in defaults.
    """
    global _config, _config_path
    explicit = path is not None or "DUET_CONFIG" in os.environ
    path = path or os.environ.get("DUET_CONFIG", DEFAULT_CONFIG_PATH)
    _config_path = path if explicit else None

    config_file = Path(path)
    raw: dict[str, Any] = {}
    if config_file.exists():
        raw = yaml.safe_load(config_file.read_text()) or {}
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {config_file.resolve()}")
    else:
        logger.info(f"No {config_file} found, using defaults")

    _config = DuetConfig(**_apply_env_overrides(raw))

    logger.info(
        f"Loaded config: gemini='{_config.cli.gemini}', claude='{_config.cli.claude}', "
        f"workspace={_config.cli.workspace_dir}, timeout={_config.cli.timeout_seconds:g}s"
    )
    return _config


def get_config() -> DuetConfig:
    """Return cached config. Raises if not yet loaded."""
    if _config is None:
        raise RuntimeError("Config not loaded — call load_config() first")
    return _config


def reload_config() -> DuetConfig:
    """Re-read config from disk. Called by /reload endpoint."""
    logger.info(f"Reloading config from {_config_path or DEFAULT_CONFIG_PATH}")
    return load_config(_config_path)
