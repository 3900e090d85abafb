"""
Configuration loader for the flow engine.
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
    url: str = "sqlite:///./flowrunner.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                     # directory for file backend


@dataclass
class EngineConfig:
    step_budget: int = 50               # auto-advancing steps per drive before abort
    lease_ttl_seconds: float = 30.0     # stale leases are reclaimable after this
    lease_wait_seconds: float = 2.0     # how long a concurrent caller waits for the lease
    lease_retry_interval: float = 0.05
    max_delivery_failures: int = 3      # consecutive failed attempts on one block
    persist_retries: int = 3


@dataclass
class WhatsAppConfig:
    phone_number_id: str = ""
    access_token: str = ""
    api_version: str = "v18.0"
    base_url: str = "https://graph.facebook.com"
    timeout_seconds: float = 15.0


@dataclass
class CRMConfig:
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass
class Settings:
    app_name: str = "FlowRunner"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    whatsapp: WhatsAppConfig = field(default_factory=WhatsAppConfig)
    crm: CRMConfig = field(default_factory=CRMConfig)
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


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "FLOWRUNNER_CONFIG",
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
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        if "engine" in raw:
            eng = raw["engine"]
            defaults = EngineConfig()
            settings.engine = EngineConfig(
                step_budget=int(eng.get("step_budget", defaults.step_budget)),
                lease_ttl_seconds=float(eng.get("lease_ttl_seconds", defaults.lease_ttl_seconds)),
                lease_wait_seconds=float(eng.get("lease_wait_seconds", defaults.lease_wait_seconds)),
                lease_retry_interval=float(eng.get("lease_retry_interval", defaults.lease_retry_interval)),
                max_delivery_failures=int(eng.get("max_delivery_failures", defaults.max_delivery_failures)),
                persist_retries=int(eng.get("persist_retries", defaults.persist_retries)),
            )

        if "whatsapp" in raw:
            wa = raw["whatsapp"]
            settings.whatsapp = WhatsAppConfig(
                phone_number_id=str(wa.get("phone_number_id", "")),
                access_token=wa.get("access_token", ""),
                api_version=wa.get("api_version", "v18.0"),
                base_url=wa.get("base_url", "https://graph.facebook.com"),
                timeout_seconds=float(wa.get("timeout_seconds", 15.0)),
            )

        if "crm" in raw:
            crm = raw["crm"]
            settings.crm = CRMConfig(
                base_url=crm.get("base_url", ""),
                auth_type=crm.get("auth_type", "bearer"),
                auth_credentials=crm.get("auth_credentials", {}),
                endpoints=crm.get("endpoints", {}),
            )

        if "logging" in raw:
            lg = raw["logging"]
            settings.logging = LoggingConfig(
                level=str(lg.get("level", "INFO")).upper(),
                json=bool(lg.get("json", False)),
            )

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
