# src/gfcity/config/settings.py
"""
Application settings (Pydantic).

Settings are loaded from `src/gfcity/config/defaults.yaml`, then optionally overridden by:
- environment variables (gateway and SMS credentials, collection fee, log level)
- an external YAML file via `GFCITY_CONFIG_PATH`

Design rule:
- Policy knobs (fees, staleness window, retry counts) live in YAML, not in business logic.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, model_validator

from gfcity.core.env import load_dotenv_if_present


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `gfcity.config`."""
    text = resources.files("gfcity.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "Garbage Free City"
    timezone: str = "Africa/Kampala"
    http_timeout_seconds: float = 15
    log_level: str = "INFO"
    # Adds tracebacks to API error bodies. Never enable in production.
    debug: bool = False


class FeeSettings(BaseModel):
    default_amount: float = Field(5000, gt=0)
    currency: str = "UGX"
    by_volume: dict[Literal["small", "medium", "large"], float] = Field(default_factory=dict)
    min_amount: float = 1000
    max_amount: float = 1_000_000

    @model_validator(mode="after")
    def _amounts_within_bounds(self) -> "FeeSettings":
        for amount in (self.default_amount, *self.by_volume.values()):
            if not self.min_amount <= amount <= self.max_amount:
                raise ValueError(f"fee {amount} outside [{self.min_amount}, {self.max_amount}]")
        return self


class RankingSettings(BaseModel):
    limit_default: int = Field(5, ge=1)
    # A collector whose last position is older than this is not ranked.
    stale_after_seconds: int = Field(15 * 60, ge=0)
    nearby_radius_m: float = Field(5000, gt=0)
    # Caller-supplied radii are clamped to this.
    max_radius_m: float = Field(50_000, gt=0)
    nearby_limit: int = Field(20, ge=1)
    geo_fallback: Literal["fail", "degraded"] = "fail"
    index_cell_size_m: float = Field(1000, gt=0)
    index_lat0_deg: float = 0.35


class ReconciliationSettings(BaseModel):
    report_retry_attempts: int = Field(3, ge=1)
    report_retry_delay_seconds: float = Field(0.05, ge=0)
    lock_timeout_seconds: float = Field(5.0, gt=0)


class OrchestratorSettings(BaseModel):
    dependency_retries: int = Field(1, ge=0)
    retry_backoff_seconds: float = Field(0.2, ge=0)


class VerificationSettings(BaseModel):
    code_length: int = Field(6, ge=4, le=12)
    expected_radius_m: float = Field(200, gt=0)
    require_code: bool = False


class ValidationSettings(BaseModel):
    phone_pattern: str = r"^\+256[0-9]{9}$"
    description_max_length: int = 500


class FlutterwaveSettings(BaseModel):
    base_url: str = "https://api.flutterwave.com/v3"
    secret_key: str | None = None
    secret_hash: str | None = None
    network: str = "MTN"
    redirect_url: str | None = None
    email_domain: str = "gfc.kcca.ug"


class PesapalSettings(BaseModel):
    environment: Literal["sandbox", "live"] = "sandbox"
    sandbox_base_url: str = "https://cybqa.pesapal.com/pesapalv3/api"
    live_base_url: str = "https://pay.pesapal.com/v3/api"
    consumer_key: str | None = None
    consumer_secret: str | None = None
    notification_id: str | None = None
    callback_url: str | None = None

    @property
    def base_url(self) -> str:
        return self.live_base_url if self.environment == "live" else self.sandbox_base_url


class PaymentsSettings(BaseModel):
    default_provider: Literal["flutterwave", "pesapal"] = "flutterwave"
    reference_prefix: str = "GFC"
    flutterwave: FlutterwaveSettings = Field(default_factory=FlutterwaveSettings)
    pesapal: PesapalSettings = Field(default_factory=PesapalSettings)


class AfricasTalkingSettings(BaseModel):
    base_url: str = "https://api.sandbox.africastalking.com/version1/messaging"
    username: str = "sandbox"
    api_key: str | None = None
    sender_id: str = "KCCA-GFC"


class NotificationSettings(BaseModel):
    enabled: bool = True
    max_workers: int = Field(2, ge=0)
    africastalking: AfricasTalkingSettings = Field(default_factory=AfricasTalkingSettings)
    templates: dict[str, str] = Field(default_factory=dict)


class ApiSettings(BaseModel):
    rate_limit_max_requests: int = Field(100, ge=1)
    rate_limit_window_seconds: int = Field(15 * 60, ge=1)
    cors_origins: list[str] = Field(default_factory=list)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    fees: FeeSettings = Field(default_factory=FeeSettings)
    ranking: RankingSettings = Field(default_factory=RankingSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    payments: PaymentsSettings = Field(default_factory=PaymentsSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)


_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "GFCITY_LOG_LEVEL": ("app", "log_level"),
    "GFCITY_DEBUG": ("app", "debug"),
    "DEFAULT_COLLECTION_FEE": ("fees", "default_amount"),
    "FLUTTERWAVE_SECRET_KEY": ("payments", "flutterwave", "secret_key"),
    "FLUTTERWAVE_SECRET_HASH": ("payments", "flutterwave", "secret_hash"),
    "PESAPAL_CONSUMER_KEY": ("payments", "pesapal", "consumer_key"),
    "PESAPAL_CONSUMER_SECRET": ("payments", "pesapal", "consumer_secret"),
    "PESAPAL_ENVIRONMENT": ("payments", "pesapal", "environment"),
    "PESAPAL_NOTIFICATION_ID": ("payments", "pesapal", "notification_id"),
    "AFRICAS_TALKING_API_KEY": ("notifications", "africastalking", "api_key"),
    "AFRICAS_TALKING_USERNAME": ("notifications", "africastalking", "username"),
}


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small to avoid exposing unsafe overrides.
    """
    load_dotenv_if_present()
    data = dict(data)
    for env_name, path in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        node = data
        for key in path[:-1]:
            node = node.setdefault(key, {})
        node[path[-1]] = value
    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("GFCITY_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
