from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/sipscope.yaml")
DEFAULT_USERNAME = "admin"
DEFAULT_PASSWORD = "admin"


class EndpointCredentials(BaseModel):
    username: str = ""
    password: str = ""


class CollectorConfig(BaseModel):
    url: str = ""
    username: str = ""
    password: str = ""
    timeout_seconds: float = 30.0
    endpoints: Dict[str, EndpointCredentials] = Field(default_factory=dict)

    @field_validator("url", mode="before")
    @classmethod
    def normalize_url(cls, value: object) -> str:
        if value is None:
            return ""
        return str(value).strip().rstrip("/")

    @field_validator("timeout_seconds")
    @classmethod
    def validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeout_seconds must be positive")
        return value


class DiscoveryConfig(BaseModel):
    batch_limit: int = 200
    max_batches: int = 5

    @field_validator("batch_limit")
    @classmethod
    def validate_batch_limit(cls, value: int) -> int:
        if value < 1 or value > 1000:
            raise ValueError("batch_limit must be between 1 and 1000")
        return value

    @field_validator("max_batches")
    @classmethod
    def validate_max_batches(cls, value: int) -> int:
        if value < 1:
            raise ValueError("max_batches must be at least 1")
        return value


class QosConfig(BaseModel):
    clock_rate: int = 8000
    latency_ms: float = 20.0

    @field_validator("clock_rate")
    @classmethod
    def validate_clock_rate(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("clock_rate must be positive")
        return value

    @field_validator("latency_ms")
    @classmethod
    def validate_latency(cls, value: float) -> float:
        if value < 0:
            raise ValueError("latency_ms must not be negative")
        return value


class AppConfig(BaseModel):
    collector: CollectorConfig = Field(default_factory=CollectorConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    qos: QosConfig = Field(default_factory=QosConfig)

    def resolve_credentials(self, url: str) -> Tuple[str, str]:
        """Endpoint-specific credentials win over the global pair, then the collector defaults."""
        normalized = (url or "").strip().rstrip("/")
        for key, creds in self.collector.endpoints.items():
            if key.strip().rstrip("/") == normalized and creds.username and creds.password:
                return creds.username, creds.password
        if self.collector.username and self.collector.password:
            return self.collector.username, self.collector.password
        return DEFAULT_USERNAME, DEFAULT_PASSWORD


def load_config(config_path: Path) -> AppConfig:
    LOGGER.info("Loading config path=%s", config_path, extra={"category": "CONFIG"})
    if not config_path.exists():
        raise ValueError(f"Config file not found: {config_path}")

    try:
        parsed = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in config file: {exc}") from exc

    if parsed is None:
        parsed = {}
    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")

    try:
        cfg = AppConfig.model_validate(parsed)
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc
    LOGGER.info("Config loaded collector_url=%s", cfg.collector.url or "-", extra={"category": "CONFIG"})
    return cfg


def apply_env_overrides(cfg: AppConfig) -> AppConfig:
    collector = cfg.collector
    updates: Dict[str, str] = {}
    for env_name, attr in (
        ("SIPSCOPE_URL", "url"),
        ("SIPSCOPE_USERNAME", "username"),
        ("SIPSCOPE_PASSWORD", "password"),
    ):
        value = os.environ.get(env_name, "").strip()
        if value:
            updates[attr] = value.rstrip("/") if attr == "url" else value
    if not updates:
        return cfg
    LOGGER.debug("Applying env overrides keys=%s", sorted(updates), extra={"category": "CONFIG"})
    return cfg.model_copy(update={"collector": collector.model_copy(update=updates)})


def load_settings(config_path: Optional[Path] = None) -> AppConfig:
    """Config file (when present) plus environment overrides."""
    path = config_path
    if path is None:
        env_path = os.environ.get("SIPSCOPE_CONFIG", "").strip()
        path = Path(env_path).expanduser() if env_path else DEFAULT_CONFIG_PATH
        if not env_path and not path.exists():
            LOGGER.debug("No config file at path=%s; using defaults", path, extra={"category": "CONFIG"})
            return apply_env_overrides(AppConfig())
    return apply_env_overrides(load_config(path))
