"""
Configuration loader for the follow-up engine.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./followup_engine.db"       # postgresql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "sql" for production
    poll_interval_seconds: int = 15     # seconds between drain cycles
    batch_size: int = 50                # max events claimed per drain cycle
    retry_backoff_minutes: list[int] = field(default_factory=lambda: [1, 5, 30])
    default_priority: int = 5           # lower = more urgent
    default_max_retries: int = 3


@dataclass
class FollowupDefaults:
    default_timezone: str = "America/Sao_Paulo"
    default_daily_limit: int = 30


@dataclass
class AgentConfig:
    base_url: str = ""
    execute_path: str = "/api/ai-agent/execute"
    api_key: str = ""
    timeout_seconds: float = 60.0


@dataclass
class Settings:
    app_name: str = "FollowupEngine"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    followup: FollowupDefaults = field(default_factory=FollowupDefaults)
    agent: AgentConfig = field(default_factory=AgentConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FOLLOWUP_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
            )

        if "queue" in raw:
            q = raw["queue"]
            defaults = QueueConfig()
            settings.queue = QueueConfig(
                backend=q.get("backend", defaults.backend),
                poll_interval_seconds=int(q.get("poll_interval_seconds", defaults.poll_interval_seconds)),
                batch_size=int(q.get("batch_size", defaults.batch_size)),
                retry_backoff_minutes=[int(m) for m in q.get("retry_backoff_minutes", defaults.retry_backoff_minutes)],
                default_priority=int(q.get("default_priority", defaults.default_priority)),
                default_max_retries=int(q.get("default_max_retries", defaults.default_max_retries)),
            )

        if "followup" in raw:
            fu = raw["followup"]
            settings.followup = FollowupDefaults(
                default_timezone=fu.get("default_timezone", settings.followup.default_timezone),
                default_daily_limit=int(fu.get("default_daily_limit", settings.followup.default_daily_limit)),
            )

        if "agent" in raw:
            ag = raw["agent"]
            settings.agent = AgentConfig(
                base_url=ag.get("base_url", ""),
                execute_path=ag.get("execute_path", settings.agent.execute_path),
                api_key=ag.get("api_key", ""),
                timeout_seconds=float(ag.get("timeout_seconds", settings.agent.timeout_seconds)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
