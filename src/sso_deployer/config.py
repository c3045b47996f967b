"""Configuration management for the deployment orchestrator."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class StorageSettings(BaseModel):
    sqlite_path: str = Field(default="./data/deployments.sqlite")
    sqlite_wal: bool = Field(default=True)


class ExecutionSettings(BaseModel):
    """Bounds for every individual cloud API call."""

    sdk_timeout_seconds: int = Field(default=30, ge=1, le=300)
    call_timeout_seconds: float = Field(
        default=60.0,
        ge=1.0,
        le=900.0,
        description="Hard per-call ceiling enforced around the SDK call.",
    )
    max_retries: int = Field(default=5, ge=1, le=20)
    initial_delay_seconds: float = Field(default=1.0, gt=0.0, le=60.0)
    max_delay_seconds: float = Field(default=30.0, gt=0.0, le=600.0)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> "ExecutionSettings":
        if self.initial_delay_seconds > self.max_delay_seconds:
            raise ValueError("initial_delay_seconds must not exceed max_delay_seconds")
        return self


class QueueSettings(BaseModel):
    cooldown_seconds: float = Field(
        default=2.0,
        ge=0.0,
        le=300.0,
        description="Pause between consecutive deployments.",
    )


class NotificationSettings(BaseModel):
    topic_arn: str | None = Field(default=None)
    region: str | None = Field(default=None)

    @field_validator("topic_arn")
    @classmethod
    def _validate_topic_arn(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        if not value.startswith("arn:"):
            raise ValueError(f"DEPLOYMENT_TOPIC_ARN must be an ARN, got {value!r}")
        return value


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1024, le=65535)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    notification: NotificationSettings = Field(default_factory=NotificationSettings)


ENV_KEYS = {
    "host": "HOST",
    "port": "PORT",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "sqlite_path": "SQLITE_PATH",
    "sqlite_wal": "SQLITE_WAL",
    "sdk_timeout": "SDK_TIMEOUT_SECONDS",
    "call_timeout": "CALL_TIMEOUT_SECONDS",
    "max_retries": "DEPLOY_MAX_RETRIES",
    "initial_delay": "DEPLOY_INITIAL_DELAY_SECONDS",
    "max_delay": "DEPLOY_MAX_DELAY_SECONDS",
    "cooldown": "DEPLOY_COOLDOWN_SECONDS",
    "topic_arn": "DEPLOYMENT_TOPIC_ARN",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        return str(candidate.resolve())
    return str((_project_root() / candidate).resolve())


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "storage": {
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool(ENV_KEYS["sqlite_wal"], StorageSettings().sqlite_wal),
        },
        "execution": {
            "sdk_timeout_seconds": _env_int(
                ENV_KEYS["sdk_timeout"], ExecutionSettings().sdk_timeout_seconds
            ),
            "call_timeout_seconds": _env_float(
                ENV_KEYS["call_timeout"], ExecutionSettings().call_timeout_seconds
            ),
            "max_retries": _env_int(ENV_KEYS["max_retries"], ExecutionSettings().max_retries),
            "initial_delay_seconds": _env_float(
                ENV_KEYS["initial_delay"], ExecutionSettings().initial_delay_seconds
            ),
            "max_delay_seconds": _env_float(
                ENV_KEYS["max_delay"], ExecutionSettings().max_delay_seconds
            ),
        },
        "queue": {
            "cooldown_seconds": _env_float(
                ENV_KEYS["cooldown"], QueueSettings().cooldown_seconds
            ),
        },
        "notification": {
            "topic_arn": os.getenv(ENV_KEYS["topic_arn"]),
            "region": os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION"),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
