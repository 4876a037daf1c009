"""
Configuration loader for the automation engine.
Reads settings from YAML file with environment variable substitution.

Only infrastructure lives here. Flows, campaigns and stage automations are
rows in the store and are never configured through this file.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 512
    api_key: str = ""
    system_prompt: str = "You are a helpful WhatsApp assistant. Reply briefly."


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./automation.db"             # postgresql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "automation-workers"
    consumer_concurrency: int = 10
    delayed_promote_interval: int = 5   # seconds between delayed-queue scans
    retry_backoff_base: int = 5         # base seconds for exponential retry backoff


@dataclass
class GatewayConfig:
    provider: str = "whatsapp_cloud"
    api_version: str = "v21.0"
    base_url: str = "https://graph.facebook.com"
    timeout: float = 15.0
    max_attempts: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    rate_per_second: float = 20.0
    burst: int = 20
    verify_token: str = ""
    # connection_id -> {"phone_number_id": ..., "access_token": ...}
    connections: dict[str, dict[str, str]] = field(default_factory=dict)


@dataclass
class FlowConfig:
    max_steps_per_advance: int = 50
    default_transfer_after_failures: int = 3
    ai_context_messages: int = 20
    delay_tick_interval: float = 5.0


@dataclass
class CampaignConfig:
    tick_interval: float = 30.0
    item_gap_seconds: float = 1.5
    batch_limit: int = 500
    default_min_delay: float = 5.0
    default_max_delay: float = 15.0


@dataclass
class AutomationConfig:
    tick_interval: float = 60.0
    max_chain_depth: int = 5


@dataclass
class WorkerConfig:
    concurrency: int = 16


@dataclass
class Settings:
    app_name: str = "AutomationEngine"
    debug: bool = False
    timezone: str = "UTC"
    llm: LLMConfig = field(default_factory=LLMConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    flows: FlowConfig = field(default_factory=FlowConfig)
    campaigns: CampaignConfig = field(default_factory=CampaignConfig)
    automations: AutomationConfig = field(default_factory=AutomationConfig)
    workers: WorkerConfig = field(default_factory=WorkerConfig)


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


def _section(cls, data: Optional[dict]):
    """Build a config dataclass from a YAML mapping, ignoring unknown keys."""
    if not data:
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "AUTOMATION_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.timezone = raw.get("timezone", settings.timezone)

        settings.llm = _section(LLMConfig, raw.get("llm"))
        settings.database = _section(DatabaseConfig, raw.get("database"))
        settings.queue = _section(QueueConfig, raw.get("queue"))
        settings.gateway = _section(GatewayConfig, raw.get("gateway"))
        settings.flows = _section(FlowConfig, raw.get("flows"))
        settings.campaigns = _section(CampaignConfig, raw.get("campaigns"))
        settings.automations = _section(AutomationConfig, raw.get("automations"))
        settings.workers = _section(WorkerConfig, raw.get("workers"))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
