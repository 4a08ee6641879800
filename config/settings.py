"""
Configuration loader for the jobspread system.
Reads settings from a YAML file with environment variable substitution,
then applies the deployment environment overrides (QUEUE_URL, RESULTS_TABLE,
RECORDS_TABLE, INTERNAL_API_URL, API_KEY, REQ_TIMEOUT_MS).
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    url: str = "jobspread-jobs"         # queue target identifier (QUEUE_URL)
    redis_url: str = "redis://localhost:6379"
    max_delay_seconds: int = 900        # channel delay ceiling
    max_receive_count: int = 5          # deliveries before dead-letter
    visibility_timeout_seconds: int = 120
    dedup_window_seconds: int = 86400   # must cover the business day
    receive_wait_seconds: float = 2.0


@dataclass
class StoreConfig:
    backend: str = "memory"             # "memory" | "file" | "sql"
    table: str = "jobspread-results"    # result-store identifier (RESULTS_TABLE)
    url: str = "sqlite:///./jobspread.db"
    file_dir: str = "./data"


@dataclass
class SourceConfig:
    backend: str = "memory"             # "memory" | "file" | "sql"
    table: str = "jobspread-records"    # record-source identifier (RECORDS_TABLE)
    url: str = "sqlite:///./jobspread.db"
    file_path: str = "./data/records.json"
    page_limit: int = 1000


@dataclass
class DownstreamConfig:
    base_url: str = ""                  # INTERNAL_API_URL
    api_key: str = ""                   # optional, sent as x-api-key
    timeout_ms: int = 5000
    path_a: str = "/lambdaA"
    path_b: str = "/lambdaB"
    use_mock: bool = False              # echo client when no base_url is set


@dataclass
class SchedulerConfig:
    jitter_seconds: int = 5
    trigger_hour: int = 0               # daily trigger time, UTC
    trigger_minute: int = 0


@dataclass
class WorkerConfig:
    batch_size: int = 5
    retry_on_config_error: bool = False
    idle_sleep_seconds: float = 1.0


@dataclass
class Settings:
    app_name: str = "jobspread"
    debug: bool = False
    queue: QueueConfig = field(default_factory=QueueConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    downstream: DownstreamConfig = field(default_factory=DownstreamConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)


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


def _section(cls, raw: dict[str, Any], current):
    """Build a config section, keeping current values for missing keys."""
    known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
    values = {name: getattr(current, name) for name in cls.__dataclass_fields__}
    values.update(known)
    return cls(**values)


def apply_env_overrides(settings: Settings, environ: dict[str, str] = None) -> Settings:
    """Apply the flat environment-style configuration surface."""
    env = os.environ if environ is None else environ

    if env.get("QUEUE_URL"):
        settings.queue.url = env["QUEUE_URL"]
    if env.get("RESULTS_TABLE"):
        settings.store.table = env["RESULTS_TABLE"]
    if env.get("RECORDS_TABLE"):
        settings.source.table = env["RECORDS_TABLE"]
    if env.get("INTERNAL_API_URL"):
        settings.downstream.base_url = env["INTERNAL_API_URL"]
    if env.get("API_KEY"):
        settings.downstream.api_key = env["API_KEY"]
    if env.get("REQ_TIMEOUT_MS"):
        try:
            settings.downstream.timeout_ms = int(env["REQ_TIMEOUT_MS"])
        except ValueError:
            raise ValueError(f"REQ_TIMEOUT_MS must be an integer, got {env['REQ_TIMEOUT_MS']!r}")
    return settings


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file, then the environment."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "JOBSPREAD_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        if "queue" in raw:
            settings.queue = _section(QueueConfig, raw["queue"], settings.queue)
        if "store" in raw:
            settings.store = _section(StoreConfig, raw["store"], settings.store)
        if "source" in raw:
            settings.source = _section(SourceConfig, raw["source"], settings.source)
        if "downstream" in raw:
            settings.downstream = _section(DownstreamConfig, raw["downstream"], settings.downstream)
        if "scheduler" in raw:
            settings.scheduler = _section(SchedulerConfig, raw["scheduler"], settings.scheduler)
        if "worker" in raw:
            settings.worker = _section(WorkerConfig, raw["worker"], settings.worker)

    apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
