from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator

from dcabot.clock import get_zone


class StorageConfig(BaseModel):
    jobs_file: str = "jobs.json"
    history_file: str = "history.json"
    credentials_file: str = "credentials.json"
    pending_file: str = "pending_jobs.json"

    @model_validator(mode="after")
    def validate_names(self) -> "StorageConfig":
        for name in (self.jobs_file, self.history_file, self.credentials_file, self.pending_file):
            if not name.strip() or Path(name).name != name:
                raise ValueError(f"storage file name '{name}' must be a bare file name")
        return self


class BrokerConfig(BaseModel):
    base_url: str = "http://127.0.0.1:8080/api"
    timeout_seconds: float = 15.0
    rate_limit_rps: float = 2.0
    rate_limit_burst: int = 5
    request_max_attempts: int = 4
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 20.0

    @model_validator(mode="after")
    def validate_values(self) -> "BrokerConfig":
        self.base_url = self.base_url.strip().rstrip("/")
        if not self.base_url:
            raise ValueError("broker.base_url must not be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("broker.timeout_seconds must be > 0")
        if self.rate_limit_rps <= 0:
            raise ValueError("broker.rate_limit_rps must be > 0")
        if self.request_max_attempts <= 0:
            raise ValueError("broker.request_max_attempts must be > 0")
        if self.backoff_base_seconds > self.backoff_max_seconds:
            raise ValueError("broker.backoff_base_seconds must be <= broker.backoff_max_seconds")
        return self


class NotificationsConfig(BaseModel):
    enabled: bool = True
    discord_webhook: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: str | None = None


class AppConfig(BaseModel):
    # Calendar used for due-date decisions.
    timezone: str = "UTC"
    data_dir: str | None = None
    storage: StorageConfig = Field(default_factory=StorageConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)

    @model_validator(mode="after")
    def validate_timezone(self) -> "AppConfig":
        self.timezone = str(self.timezone or "UTC").strip() or "UTC"
        try:
            get_zone(self.timezone)
        except RuntimeError as exc:
            raise ValueError(str(exc)) from exc
        return self


def apply_env_overrides(config: AppConfig) -> AppConfig:
    data = config.model_dump()
    data["data_dir"] = os.getenv("DCA_DATA_DIR", data["data_dir"])
    data["timezone"] = os.getenv("DCA_TIMEZONE", data["timezone"])
    data["broker"]["base_url"] = os.getenv("BROKER_BASE_URL", data["broker"]["base_url"])
    data["broker"]["timeout_seconds"] = float(
        os.getenv("BROKER_TIMEOUT_SECONDS", str(data["broker"]["timeout_seconds"]))
    )
    notifications = data["notifications"]
    notifications["discord_webhook"] = os.getenv("ALERT_DISCORD_WEBHOOK", notifications["discord_webhook"])
    notifications["telegram_bot_token"] = os.getenv("ALERT_TELEGRAM_BOT_TOKEN", notifications["telegram_bot_token"])
    notifications["telegram_chat_id"] = os.getenv("ALERT_TELEGRAM_CHAT_ID", notifications["telegram_chat_id"])
    return AppConfig.model_validate(data)


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path)
    if not config_path.exists():
        return AppConfig()
    with config_path.open("r", encoding="utf-8") as file:
        raw: dict[str, Any] = yaml.safe_load(file) or {}
    return AppConfig.model_validate(raw)
