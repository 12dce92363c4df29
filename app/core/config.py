"""Konfigurationsmodul für das Dify-WeCom Relay Gateway: lädt Dify-, WeCom-
und Logging-Einstellungen via Pydantic-Settings, optional ergänzt durch eine
YAML-Datei mit ``${ENV}``-Platzhaltern."""
import logging
import os
from typing import Any, Dict, Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = os.path.join("config", "config.yaml")


class Settings(BaseSettings):
    """Hält alle konfigurierbaren Werte, die das Gateway zur Laufzeit
    benötigt (Dify-Zugang, WeCom-Webhook, Authentifizierung, Logging)."""

    model_config = SettingsConfigDict(populate_by_name=True, extra="ignore")

    dify_api_key: str = Field("", alias="DIFY_API_KEY")  # Muss per Env gesetzt werden.
    dify_base_url: str = Field("", alias="DIFY_BASE_URL")  # z.B. https://api.dify.ai
    dify_bot_type: str = Field("chat", alias="DIFY_BOT_TYPE")  # chat, completion oder workflow
    dify_workflow_id: str = Field("", alias="DIFY_WORKFLOW_ID")
    dify_default_prompt: str = Field("", alias="DIFY_DEFAULT_PROMPT")
    dify_default_role: str = Field("Mitarbeiter", alias="DIFY_DEFAULT_ROLE")
    dify_timeout: float = Field(30.0, alias="DIFY_TIMEOUT")

    wecom_webhook_url: str = Field("", alias="WECHAT_WEBHOOK_URL")
    wecom_timeout: float = Field(10.0, alias="WECOM_TIMEOUT")

    auth_token: str = Field("", alias="AUTH_TOKEN")
    enable_auth: bool = Field(False, alias="ENABLE_AUTH")

    log_to_file: bool = Field(False, alias="LOG_TO_FILE")
    log_file_path: str = Field("logs/app.log", alias="LOG_FILE_PATH")
    log_max_size_mb: int = Field(100, alias="LOG_MAX_SIZE_MB")
    log_max_backups: int = Field(0, alias="LOG_MAX_BACKUPS")
    log_compress: bool = Field(False, alias="LOG_COMPRESS")

    service_port: int = Field(8080, alias="SERVICE_PORT")

    def validate_required(self) -> None:
        """Prüft die Pflichtwerte; wirft ``ConfigurationError`` beim ersten Fehlen."""
        if not self.dify_api_key:
            raise ConfigurationError("dify api key is not configured")
        if not self.dify_base_url:
            raise ConfigurationError("dify base url is not configured")
        if not self.wecom_webhook_url:
            raise ConfigurationError("wecom webhook url is not configured")
        if self.enable_auth and not self.auth_token:
            raise ConfigurationError("auth is enabled but no auth token is configured")


def _flatten_yaml(raw: Dict[str, Any]) -> Dict[str, Any]:
    # dify.api_key -> dify_api_key, wecom.webhook_url -> wecom_webhook_url
    flat: Dict[str, Any] = {}
    for key, value in raw.items():
        if key in ("dify", "wecom") and isinstance(value, dict):
            for sub_key, sub_value in value.items():
                flat[f"{key}_{sub_key}"] = sub_value
        else:
            flat[key] = value
    return flat


def load_settings(path: Optional[str] = None) -> Settings:
    """Lädt die Settings aus YAML (falls vorhanden) und Umgebungsvariablen.

    Werte aus der YAML-Datei haben Vorrang vor der Umgebung. ``${VAR}`` im
    Dateiinhalt wird vor dem Parsen aus der Umgebung ersetzt.
    """
    config_path = path or os.getenv("CONFIG_FILE", DEFAULT_CONFIG_FILE)
    if not os.path.exists(config_path):
        logger.info(f"No config file at {config_path}, using environment only")
        return Settings()

    with open(config_path, encoding="utf-8") as fh:
        content = os.path.expandvars(fh.read())
    raw = yaml.safe_load(content) or {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"config file {config_path} must contain a mapping")

    logger.info(f"Loaded config file {config_path}")
    return Settings(**_flatten_yaml(raw))


settings = Settings()
