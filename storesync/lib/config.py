"""Runtime settings for sync and compaction runs.

Settings resolve from, highest precedence first:
1. Explicit overrides (command-line flags)
2. An optional YAML settings file
3. ``STORESYNC_*`` environment variables (a ``.env`` file is honoured)
4. Built-in defaults

Uses pydantic-settings for environment loading and validation, PyYAML for
the settings file.

Example YAML:
    stores_file: ./stores.jsonl
    output_dir: ./out
    retry_count: 5
    resources: [orders, products]
    log_format: json
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from storesync.lib.api import (
    DEFAULT_API_VERSION,
    DEFAULT_HTTP_TIMEOUT,
    DEFAULT_RETRY_COUNT,
    DEFAULT_RETRY_DELAY,
    DEFAULT_RETRY_JITTER,
    DEFAULT_USER_AGENT,
    ClientOptions,
)
from storesync.lib.errors import ConfigurationError

logger = logging.getLogger(__name__)

__all__ = ["DEFAULT_RESOURCES", "RuntimeSettings", "load_settings"]

DEFAULT_RESOURCES = ["orders", "products", "customers"]


class RuntimeSettings(BaseSettings):
    """Settings of one run.

    Automatically loads from environment variables with the STORESYNC_
    prefix, e.g. ``STORESYNC_OUTPUT_DIR=/data/stores``. List values are
    given as JSON: ``STORESYNC_RESOURCES='["orders"]'``.
    """

    stores_file: str = Field(default="./stores.jsonl", description="JSON-lines store list")
    output_dir: str = Field(default="./out", description="Root directory of the changelogs")
    dry_run: bool = Field(default=False, description="Log fetch options instead of fetching")

    api_version: str = Field(default=DEFAULT_API_VERSION, description="Admin API version")
    http_timeout: float = Field(default=DEFAULT_HTTP_TIMEOUT, gt=0, description="Per-request timeout in seconds")
    retry_count: int = Field(default=DEFAULT_RETRY_COUNT, ge=1, description="Max attempts per request")
    retry_delay: float = Field(default=DEFAULT_RETRY_DELAY, ge=0, description="Base retry delay in seconds")
    retry_jitter: float = Field(default=DEFAULT_RETRY_JITTER, ge=0, description="Retry jitter ceiling in seconds")
    user_agent: Optional[str] = Field(default=None, description="User-Agent header override")

    resources: List[str] = Field(default_factory=lambda: list(DEFAULT_RESOURCES))
    max_workers: int = Field(default=8, ge=1, description="Stores synchronized concurrently")

    stack_dump: bool = Field(default=False, description="Periodically dump thread stacks")
    stack_dump_period: float = Field(default=60.0, gt=0, description="Seconds between stack dumps")

    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format: 'json' or 'console'")
    log_file: Optional[str] = Field(default=None, description="Optional log file path")

    model_config = SettingsConfigDict(
        env_prefix="STORESYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("resources", mode="before")
    @classmethod
    def split_resources(cls, v: Any) -> Any:
        """Accept ``"orders,products"`` as well as a list."""
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v

    @field_validator("resources")
    @classmethod
    def validate_resources(cls, v: List[str]) -> List[str]:
        cleaned = [r.strip().strip("/") for r in v if r and r.strip().strip("/")]
        if not cleaned:
            raise ValueError("at least one resource is required")
        return cleaned

    @field_validator("api_version")
    @classmethod
    def validate_api_version(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("api_version must not be empty")
        return v.strip()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = ["TRACE", "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        valid_formats = ["json", "console"]
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of: {valid_formats}")
        return v.lower()

    def client_options(self) -> ClientOptions:
        return ClientOptions(
            api_version=self.api_version,
            timeout=self.http_timeout,
            retry_count=self.retry_count,
            retry_delay=self.retry_delay,
            retry_jitter=self.retry_jitter,
            user_agent=self.user_agent or DEFAULT_USER_AGENT,
        )


def _read_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except FileNotFoundError as exc:
        raise ConfigurationError(
            f"settings file not found: {path}", field="config", value=str(path)
        ) from exc
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigurationError(
            f"unable to read settings file {path}: {exc}", field="config", value=str(path)
        ) from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"settings file {path} must contain a mapping", field="config", value=str(path)
        )
    return data


def load_settings(
    config_file: Optional[Union[str, Path]] = None,
    **overrides: Any,
) -> RuntimeSettings:
    """Resolve the run settings.

    Args:
        config_file: Optional YAML settings file
        **overrides: Explicit values; None means "not given"

    Raises:
        ConfigurationError: A value is invalid or the YAML file is unusable
    """
    values: Dict[str, Any] = _read_yaml(config_file) if config_file else {}
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        settings = RuntimeSettings(**values)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise ConfigurationError(
            f"invalid settings: {first.get('msg', exc)}",
            field=field,
            value=first.get("input"),
            details={"errors": exc.error_count()},
        ) from exc
    except ValueError as exc:
        # pydantic-settings rejects undecodable environment values
        raise ConfigurationError(f"invalid settings: {exc}") from exc

    logger.debug("settings: %s", settings.model_dump())
    return settings
