"""Configuration management for Cadence."""

import json
from pathlib import Path

from pydantic import BaseModel


class LLMConfig(BaseModel):
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key_env: str = "ANTHROPIC_API_KEY"
    max_tokens: int = 4096


class EngineSettings(BaseModel):
    stop_on_error: bool = True
    critic_enabled: bool = False
    critic_strict: bool = False
    max_run_history: int = 50


class CadenceConfig(BaseModel):
    llm: LLMConfig = LLMConfig()
    engine: EngineSettings = EngineSettings()
    default_owner: str = "local"


def _config_dir() -> Path:
    return Path.home() / ".cadence"


def _config_path() -> Path:
    return _config_dir() / "config.json"


def notebooks_dir() -> Path:
    """Return the notebooks directory path."""
    return _config_dir() / "notebooks"


def ensure_dirs() -> None:
    """Create required Cadence directories."""
    _config_dir().mkdir(exist_ok=True)
    notebooks_dir().mkdir(exist_ok=True)


def load_config() -> CadenceConfig:
    """Load config from ~/.cadence/config.json, returning defaults if missing."""
    path = _config_path()
    if not path.exists():
        return CadenceConfig()
    text = path.read_text()
    return CadenceConfig.model_validate_json(text)


def save_config(config: CadenceConfig) -> None:
    """Save config to ~/.cadence/config.json."""
    ensure_dirs()
    path = _config_path()
    path.write_text(json.dumps(config.model_dump(), indent=2) + "\n")
