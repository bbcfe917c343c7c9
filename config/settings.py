"""
Configuration loader for the campaign delivery pipeline.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./campaign_pipeline.db"     # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class QueueConfig:
    cache_backend: str = "memory"         # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "campaign_queue"
    max_attempts: int = 3
    retry_delay_s: float = 5.0            # fixed delay before a failed item is claimable again
    processing_timeout_s: float = 300.0   # items stuck in processing longer than this are reclaimed
    completed_retention_hours: int = 24
    maintenance_interval_s: float = 60.0


@dataclass
class WorkerConfig:
    enabled: bool = True
    ingest_interval_s: float = 5.0
    campaign_interval_s: float = 10.0
    delivery_interval_s: float = 3.0
    receipt_interval_s: float = 2.0


@dataclass
class ReceiptConfig:
    batch_size: int = 10
    batch_timeout_s: float = 5.0


@dataclass
class VendorConfig:
    mode: str = "simulated"               # "simulated" | "http"
    base_url: str = ""
    timeout_s: float = 30.0
    success_rate: float = 0.9
    min_latency_ms: int = 0
    max_latency_ms: int = 0
    user_agent: str = "Campaign-Pipeline/1.0"


@dataclass
class SegmentConfig:
    type: str = "static"                  # "static" | "rest"
    base_url: str = ""
    auth_token: str = ""
    endpoint: str = "/segments/{segment_id}/customers"
    static: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "CampaignPipeline"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)
    receipts: ReceiptConfig = field(default_factory=ReceiptConfig)
    vendor: VendorConfig = field(default_factory=VendorConfig)
    segments: SegmentConfig = field(default_factory=SegmentConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


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


def _build_section(cls, raw: Optional[dict[str, Any]]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "CAMPAIGN_PIPELINE_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)

        settings.database = _build_section(DatabaseConfig, raw.get("database"))
        settings.queue = _build_section(QueueConfig, raw.get("queue"))
        settings.workers = _build_section(WorkerConfig, raw.get("workers"))
        settings.receipts = _build_section(ReceiptConfig, raw.get("receipts"))
        settings.vendor = _build_section(VendorConfig, raw.get("vendor"))
        settings.segments = _build_section(SegmentConfig, raw.get("segments"))
        settings.logging = _build_section(LoggingConfig, raw.get("logging"))

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
