"""Configuration loading utilities for the session orchestrator."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

try:
    import tomllib  # Python 3.11+
except ModuleNotFoundError:  # pragma: no cover - fallback for <3.11
    import tomli as tomllib  # type: ignore


ENV_PREFIX = "AI_PROJECT_AGENT_"
CONFIG_FILENAMES: tuple[str, ...] = (".ai-project-agent.toml", "ai-project-agent.toml")
DEFAULT_CONFIG_PATHS = (
    Path.home() / ".config" / "ai-project-agent" / "config.toml",
    Path.home() / ".ai-project-agent.toml",
)

DEFAULT_PROVIDERS: Dict[str, Dict[str, Any]] = {
    "openrouter": {"kind": "openrouter", "base_url": "https://openrouter.ai/api/v1"},
    "deepseek": {"kind": "deepseek", "base_url": "https://api.deepseek.com/v1"},
}


def find_config_in_parents(
    start_path: Path, config_name: str | Sequence[str] = ".ai-project-agent.toml"
) -> Optional[Path]:
    """Search parent directories starting from ``start_path`` for configuration files."""

    if isinstance(config_name, str):
        candidate_names: tuple[str, ...] = (config_name,)
    else:
        candidate_names = tuple(config_name)

    current = start_path.resolve()
    if current.is_file():
        current = current.parent

    while True:
        for name in candidate_names:
            candidate = current / name
            if candidate.is_file():
                return candidate.resolve()
        if current.parent == current:
            break
        current = current.parent
    return None


@dataclass
class Settings:
    """Runtime configuration for the session orchestrator."""

    default_model: str = "openrouter/anthropic/claude-sonnet-4"
    providers: Dict[str, Dict[str, Any]] = field(
        default_factory=lambda: {key: dict(value) for key, value in DEFAULT_PROVIDERS.items()}
    )
    pricing: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    system_prompt: Optional[str] = None
    max_steps: int = 50
    streaming_update_interval: float = 0.05
    history_root: Path = Path("projects")
    persist_history: bool = True
    request_timeout: float = 120.0
    max_retries: int = 3
    cancel_wait_timeout: float = 10.0
    generation_timeout: float = 0.0
    max_sessions: int = 50
    max_session_age_days: int = 7
    log_level: str = "INFO"
    structured_logging: bool = False

    def provider_api_key(self, provider_id: str) -> Optional[str]:
        """Return the API key for ``provider_id`` from config or ``<PROVIDER>_API_KEY``."""
        entry = self.providers.get(provider_id) or {}
        return entry.get("api_key") or os.environ.get(f"{provider_id.upper()}_API_KEY")


_BOOL_FIELDS = {"persist_history", "structured_logging"}
_INT_FIELDS = {"max_steps", "max_retries", "max_sessions", "max_session_age_days"}
_FLOAT_FIELDS = {"streaming_update_interval", "request_timeout", "cancel_wait_timeout", "generation_timeout"}
_JSON_FIELDS = {"providers", "pricing"}


def _cast_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"1", "true", "on", "yes", "y"}
    return bool(value)


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    return {k.replace("-", "_"): v for k, v in data.items()}


def _load_from_env(prefix: str = ENV_PREFIX) -> Dict[str, Any]:
    env: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        field_name = key[len(prefix) :].lower()
        if field_name in _BOOL_FIELDS:
            env[field_name] = _cast_bool(value)
        elif field_name in _INT_FIELDS:
            env[field_name] = int(value)
        elif field_name in _FLOAT_FIELDS:
            env[field_name] = float(value)
        elif field_name in _JSON_FIELDS:
            try:
                env[field_name] = json.loads(value)
            except json.JSONDecodeError:
                env[field_name] = {}
        elif field_name == "history_root":
            env[field_name] = Path(value)
        else:
            env[field_name] = value
    return env


def _merge_providers(overrides: Any) -> Dict[str, Dict[str, Any]]:
    merged = {key: dict(value) for key, value in DEFAULT_PROVIDERS.items()}
    if not isinstance(overrides, dict):
        return merged
    for provider_id, entry in overrides.items():
        if not isinstance(entry, dict):
            continue
        base = merged.setdefault(provider_id, {"kind": "openai"})
        base.update(entry)
    return merged


def load_settings(explicit_path: Optional[Path] = None) -> Settings:
    """Load configuration, merging file and environment sources."""

    file_data: Dict[str, Any] = {}
    if explicit_path:
        file_data.update(_load_from_file(explicit_path))
    else:
        search_paths = []
        cwd = Path.cwd()
        project_config = find_config_in_parents(cwd, CONFIG_FILENAMES)
        if project_config:
            search_paths.append(project_config)
        search_paths.extend(DEFAULT_CONFIG_PATHS)
        for candidate in search_paths:
            file_data = _load_from_file(candidate)
            if file_data:
                break

    env_data = _load_from_env()
    merged: Dict[str, Any] = {**file_data, **env_data}

    if "history_root" in merged and isinstance(merged["history_root"], str):
        merged["history_root"] = Path(merged["history_root"])
    if "providers" in merged:
        merged["providers"] = _merge_providers(merged["providers"])
    pricing = merged.get("pricing")
    if pricing is not None and not isinstance(pricing, dict):
        merged["pricing"] = {}

    known_fields = set(Settings.__dataclass_fields__)
    init_kwargs = {key: value for key, value in merged.items() if key in known_fields}
    settings = Settings(**init_kwargs)
    if not settings.history_root.is_absolute():
        settings.history_root = (Path.cwd() / settings.history_root).resolve()
    return settings


__all__ = ["Settings", "load_settings", "find_config_in_parents", "ENV_PREFIX"]
