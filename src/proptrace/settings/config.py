"""Configuration loader for proptrace services using Pydantic settings."""

from __future__ import annotations

import os
import tomllib
from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

ENV_VAR_NAME = "PROPTRACE_ENV"
DEFAULT_ENV = "local"
PROJECT_ROOT = Path(__file__).resolve().parents[3]
CONFIG_DIR = PROJECT_ROOT / "config"
DEFAULT_CONFIG_FILE = CONFIG_DIR / "settings.default.toml"
LOCAL_CONFIG_FILE = CONFIG_DIR / "settings.local.toml"
SETTINGS_FILE_ENV_VAR = "PROPTRACE_SETTINGS_FILE"


def _resolve_env(explicit_env: str | None = None) -> str:
    """Return the active environment name.

    Args:
        explicit_env: Environment value supplied directly by the caller.

    Returns:
        A stripped environment name, falling back to ``DEFAULT_ENV``.
    """

    env = explicit_env or os.getenv(ENV_VAR_NAME) or DEFAULT_ENV
    return env.strip()


def _env_file_candidates(env: str) -> list[Path]:
    """List candidate ``.env`` files used during settings resolution."""

    return [
        PROJECT_ROOT / ".env",
        PROJECT_ROOT / f".env.{env}",
        PROJECT_ROOT / ".env.local",
    ]


def _resolve_config_path(raw_path: str | None) -> Path | None:
    """Return an absolute config path from user input."""

    if not raw_path:
        return None
    candidate = Path(raw_path).expanduser()
    if not candidate.is_absolute():
        candidate = (PROJECT_ROOT / candidate).resolve()
    return candidate


def _config_file_priority() -> tuple[Path, ...]:
    """Return existing config files in descending precedence order."""

    ordered: list[Path] = []
    env_override = _resolve_config_path(os.getenv(SETTINGS_FILE_ENV_VAR))
    if env_override:
        ordered.append(env_override)
    ordered.append(LOCAL_CONFIG_FILE)
    ordered.append(DEFAULT_CONFIG_FILE)
    return tuple(path for path in ordered if path.exists())


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """Pydantic settings source that loads values from a TOML file."""

    def __init__(self, settings_cls: type[BaseSettings], path: Path) -> None:
        super().__init__(settings_cls)
        self.path = path
        self._data: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data
        if not self.path.exists():
            self._data = {}
            return self._data
        try:
            with self.path.open("rb") as handle:
                self._data = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:  # pragma: no cover - invalid files surface immediately
            raise ValueError(f"Invalid TOML syntax in {self.path}") from exc
        return self._data

    def __call__(self) -> dict[str, Any]:  # pragma: no cover - trivial wrapper
        return self._load()

    def get_field_value(self, field_name: str, field):  # pragma: no cover - passthrough helper
        data = self._load()
        return data.get(field_name), field_name in data


class RuntimeSettings(BaseSettings):
    """Process-level runtime controls."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("LOG_LEVEL", "RUNTIME__LOG_LEVEL"),
    )


class APISettings(BaseSettings):
    """API token wiring; each token resolves to one caller."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    base_url: str = Field(
        default="http://127.0.0.1:8000",
        validation_alias=AliasChoices("API_URL", "API__BASE_URL"),
    )
    tokens: dict[str, str] = Field(
        default_factory=lambda: {"dev-caller-token": "caller-dev", "dev-admin-token": "caller-admin"},
        validation_alias=AliasChoices("API_TOKENS", "API__TOKENS"),
    )
    admin_tokens: list[str] = Field(
        default_factory=lambda: ["dev-admin-token"],
        validation_alias=AliasChoices("API_ADMIN_TOKENS", "API__ADMIN_TOKENS"),
    )


class StorageSettings(BaseSettings):
    """Relational storage configuration."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    sqlite_path: Path = Field(
        default=PROJECT_ROOT / "data" / "proptrace.db",
        validation_alias=AliasChoices("SQLITE_PATH", "STORAGE__SQLITE_PATH"),
    )
    database_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "STORAGE__DATABASE_URL"),
    )


class ProviderSettings(BaseSettings):
    """Skip-trace provider endpoint and protocol quirks."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    base_url: str = Field(
        default="https://api.tracerfy.com/",
        validation_alias=AliasChoices("TRACER_API_URL", "PROVIDER__BASE_URL"),
    )
    api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("TRACER_API_KEY", "PROVIDER__API_KEY"),
    )
    timeout_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices("PROVIDER_TIMEOUT_SECONDS", "PROVIDER__TIMEOUT_SECONDS"),
    )
    min_batch_size: int = Field(
        default=2,
        validation_alias=AliasChoices("PROVIDER_MIN_BATCH_SIZE", "PROVIDER__MIN_BATCH_SIZE"),
    )
    max_phones: int = Field(default=8, validation_alias=AliasChoices("PROVIDER__MAX_PHONES"))
    max_emails: int = Field(default=5, validation_alias=AliasChoices("PROVIDER__MAX_EMAILS"))
    padding_address: str = Field(
        default="0 Padding Row",
        validation_alias=AliasChoices("PROVIDER__PADDING_ADDRESS"),
    )


class PollingSettings(BaseSettings):
    """Polling schedules for single traces and bulk jobs."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    single_initial_delay_seconds: float = Field(
        default=10.0,
        validation_alias=AliasChoices("POLL_SINGLE_INITIAL_DELAY", "POLLING__SINGLE_INITIAL_DELAY_SECONDS"),
    )
    single_interval_seconds: float = Field(
        default=3.0,
        validation_alias=AliasChoices("POLL_SINGLE_INTERVAL", "POLLING__SINGLE_INTERVAL_SECONDS"),
    )
    single_max_attempts: int = Field(
        default=20,
        validation_alias=AliasChoices("POLL_SINGLE_MAX_ATTEMPTS", "POLLING__SINGLE_MAX_ATTEMPTS"),
    )
    bulk_interval_seconds: float = Field(
        default=30.0,
        validation_alias=AliasChoices("POLL_BULK_INTERVAL", "POLLING__BULK_INTERVAL_SECONDS"),
    )
    bulk_max_attempts: int = Field(
        default=240,
        validation_alias=AliasChoices("POLL_BULK_MAX_ATTEMPTS", "POLLING__BULK_MAX_ATTEMPTS"),
    )


class DedupeSettings(BaseSettings):
    """Result cache window."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    window_days: int = Field(
        default=90,
        validation_alias=AliasChoices("DEDUPE_WINDOW_DAYS", "DEDUPE__WINDOW_DAYS"),
    )


class BulkSettings(BaseSettings):
    """Limits applied to bulk submissions."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    max_records: int = Field(
        default=10000,
        validation_alias=AliasChoices("BULK_MAX_RECORDS", "BULK__MAX_RECORDS"),
    )
    insert_batch_size: int = Field(
        default=500,
        validation_alias=AliasChoices("BULK_INSERT_BATCH_SIZE", "BULK__INSERT_BATCH_SIZE"),
    )


class BillingSettings(BaseSettings):
    """Per-tier trace pricing and wallet defaults."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    standard_rate: Decimal = Field(
        default=Decimal("0.11"),
        validation_alias=AliasChoices("BILLING_STANDARD_RATE", "BILLING__STANDARD_RATE"),
    )
    member_rate: Decimal = Field(
        default=Decimal("0.07"),
        validation_alias=AliasChoices("BILLING_MEMBER_RATE", "BILLING__MEMBER_RATE"),
    )
    cost_per_record: Decimal = Field(
        default=Decimal("0.009"),
        validation_alias=AliasChoices("BILLING_COST_PER_RECORD", "BILLING__COST_PER_RECORD"),
    )
    low_balance_threshold: Decimal = Field(
        default=Decimal("10.00"),
        validation_alias=AliasChoices("BILLING__LOW_BALANCE_THRESHOLD"),
    )
    auto_rebill_amount: Decimal = Field(
        default=Decimal("25.00"),
        validation_alias=AliasChoices("BILLING__AUTO_REBILL_AMOUNT"),
    )


class NotificationSettings(BaseSettings):
    """Outbound webhook delivery."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    webhook_urls: dict[str, str] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("WEBHOOK_URLS", "NOTIFICATIONS__WEBHOOK_URLS"),
    )
    timeout_seconds: float = Field(
        default=5.0,
        validation_alias=AliasChoices("WEBHOOK_TIMEOUT_SECONDS", "NOTIFICATIONS__TIMEOUT_SECONDS"),
    )


class ObservabilitySettings(BaseSettings):
    """Logging and metrics configuration."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    structured_logging: bool = Field(
        default=True,
        validation_alias=AliasChoices("OBS_STRUCTURED_LOGGING", "OBSERVABILITY__STRUCTURED_LOGGING"),
    )
    statsd_host: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OBS_STATSD_HOST", "OBSERVABILITY__STATSD_HOST"),
    )
    statsd_port: int = Field(
        default=8125,
        validation_alias=AliasChoices("OBS_STATSD_PORT", "OBSERVABILITY__STATSD_PORT"),
    )
    statsd_prefix: str = Field(
        default="proptrace",
        validation_alias=AliasChoices("OBS_STATSD_PREFIX", "OBSERVABILITY__STATSD_PREFIX"),
    )
    service_name: str = Field(
        default="proptrace-engine",
        validation_alias=AliasChoices("OBS_SERVICE_NAME", "OBSERVABILITY__SERVICE_NAME"),
    )


class Settings(BaseSettings):
    """Top-level configuration model with nested sections for each subsystem."""

    env: str = Field(
        default_factory=lambda: _resolve_env(),
        validation_alias=AliasChoices("ENV", "ENVIRONMENT", "RUNTIME__ENV"),
    )
    project_root: Path = Field(default=PROJECT_ROOT)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    api: APISettings = Field(default_factory=APISettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    dedupe: DedupeSettings = Field(default_factory=DedupeSettings)
    bulk: BulkSettings = Field(default_factory=BulkSettings)
    billing: BillingSettings = Field(default_factory=BillingSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    env_files: tuple[Path, ...] = Field(default_factory=tuple, exclude=True)
    config_files: tuple[Path, ...] = Field(default_factory=tuple, exclude=True)

    model_config = SettingsConfigDict(
        env_prefix="PROPTRACE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Extend settings sources with TOML-based config files."""

        config_sources = [TomlConfigSettingsSource(settings_cls, path) for path in _config_file_priority()]
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            *config_sources,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Normalize relative paths once the model is initialised."""

        if not self.storage.sqlite_path.is_absolute():
            resolved = (self.project_root / self.storage.sqlite_path).resolve()
            object.__setattr__(self, "storage", self.storage.model_copy(update={"sqlite_path": resolved}))
        return self

    @model_validator(mode="after")
    def _apply_environment_overrides(self) -> "Settings":
        """Force environment-specific defaults after basic resolution."""

        if self.env.lower() == "local":
            observability_update = {"structured_logging": False, "statsd_host": None}
            object.__setattr__(self, "observability", self.observability.model_copy(update=observability_update))
        if not self.provider.base_url.endswith("/"):
            object.__setattr__(
                self, "provider", self.provider.model_copy(update={"base_url": f"{self.provider.base_url}/"})
            )
        return self

    @property
    def log_level(self) -> str:
        """str: Effective logging level for the running process."""

        return self.runtime.log_level

    @property
    def is_local(self) -> bool:
        """bool: True when the active environment is ``local``."""

        return self.env.lower() == "local"


def _load_settings(env: str | None = None) -> Settings:
    """Load settings with optional environment override."""

    resolved_env = _resolve_env(env)
    candidate_files = [path for path in _env_file_candidates(resolved_env) if path.exists()]
    config_files = _config_file_priority()
    return Settings(
        _env_file=[str(path) for path in candidate_files],
        _env_file_encoding="utf-8",
        env=resolved_env,
        env_files=tuple(candidate_files),
        config_files=config_files,
    )


@lru_cache(maxsize=1)
def get_settings(env: str | None = None) -> Settings:
    """Return cached settings for the requested environment."""

    return _load_settings(env)


def reload_settings(env: str | None = None) -> Settings:
    """Clear the cached settings and reload from disk."""

    get_settings.cache_clear()
    return get_settings(env)


__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "PROJECT_ROOT",
    "ENV_VAR_NAME",
]
