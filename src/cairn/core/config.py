"""Configuration schema and loading for cairn.

Settings are frozen pydantic models. Loading goes through Dynaconf so a YAML
file can be overridden per key from the environment (CAIRN_STORE__URL).
"""

import os
import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")

_RULE_FLAGS = frozenset("imsx")


class StoreSettings(BaseModel):
    """Resource store database configuration."""

    model_config = {"frozen": True}

    # NOTE: str rather than Path - Path mangles DSNs like postgresql://user@host/db
    url: str = Field(
        default="sqlite:///./cairn.db",
        description="Full SQLAlchemy database URL",
    )
    echo: bool = Field(default=False, description="Echo SQL statements to the sqlalchemy logger")
    actor: str = Field(
        default="UNKNOWN",
        min_length=1,
        description="Actor recorded in created_by/updated_by/deleted_by housekeeping columns",
    )


class PayloadStoreSettings(BaseModel):
    """Out-of-line content storage configuration."""

    model_config = {"frozen": True}

    enabled: bool = Field(default=False, description="Store large content in the payload store")
    base_path: Path = Field(
        default=Path(".cairn/payloads"),
        description="Base path for the filesystem payload store",
    )
    inline_threshold_bytes: int = Field(
        default=1024 * 1024,
        ge=0,
        description="Content larger than this is stored out of line when enabled",
    )


class MatchRuleSettings(BaseModel):
    """One path match rule as written in configuration."""

    model_config = {"frozen": True}

    namespace: str = Field(min_length=1)
    regex: str = Field(min_length=1)
    flags: str = Field(default="", description="Regex flags, any of i m s x")
    nature: str | None = Field(default=None, description="Media nature assigned to matched paths")
    priority: int | None = Field(default=None, description="Lower value wins; unset sorts last")
    include_globs: tuple[str, ...] = ()
    exclude_globs: tuple[str, ...] = ()
    description: str | None = None

    @field_validator("flags")
    @classmethod
    def validate_flags(cls, v: str) -> str:
        unknown = set(v) - _RULE_FLAGS
        if unknown:
            raise ValueError(f"Unknown regex flags {sorted(unknown)}; allowed: i, m, s, x")
        return v

    @field_validator("regex")
    @classmethod
    def validate_regex(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid regex {v!r}: {e}") from e
        return v


class RewriteRuleSettings(BaseModel):
    """One path rewrite rule as written in configuration."""

    model_config = {"frozen": True}

    namespace: str = Field(min_length=1)
    regex: str = Field(min_length=1)
    replace: str
    priority: int | None = None
    description: str | None = None

    @field_validator("regex")
    @classmethod
    def validate_regex(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid regex {v!r}: {e}") from e
        return v


class IngestSettings(BaseModel):
    """Ingestion defaults and path rules."""

    model_config = {"frozen": True}

    default_namespace: str = Field(default="default", min_length=1)
    strict_namespaces: tuple[str, ...] = Field(
        default=(),
        description="Namespaces in which a path matching no rule is UNMATCHED instead of match-all",
    )
    match_rules: tuple[MatchRuleSettings, ...] = ()
    rewrite_rules: tuple[RewriteRuleSettings, ...] = ()
    rules_file: Path | None = Field(
        default=None,
        description="Optional YAML file with additional match_rules/rewrite_rules",
    )


class RetrySettings(BaseModel):
    """Retry behaviour for transient store lock contention."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=5, gt=0, description="Maximum attempts per statement")
    initial_delay_seconds: float = Field(default=0.05, gt=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=2.0, gt=0, description="Maximum backoff delay")

    @model_validator(mode="after")
    def validate_delays(self) -> "RetrySettings":
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        return self


class LoggingSettings(BaseModel):
    """Log output configuration."""

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    json_output: bool = False

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.upper()
        return v


class CairnSettings(BaseModel):
    """Top-level cairn configuration.

    Every section has defaults, so an empty file yields a working
    SQLite-backed configuration.
    """

    model_config = {"frozen": True}

    store: StoreSettings = Field(default_factory=StoreSettings)
    payload_store: PayloadStoreSettings = Field(default_factory=PayloadStoreSettings)
    ingest: IngestSettings = Field(default_factory=IngestSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values."""

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            env_value = os.environ.get(match.group(1))
            if env_value is not None:
                return env_value
            if match.group(2) is not None:
                return match.group(2)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_lower_keys(item) for item in value]
    return value


def load_settings(config_path: Path) -> CairnSettings:
    """Load settings from YAML file with environment variable overrides.

    Precedence:
    1. Environment variables (CAIRN_*) - highest priority
    2. Config file
    3. Defaults from the pydantic schema - lowest priority

    Raises:
        pydantic.ValidationError: If configuration fails validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="CAIRN",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys (nested ones too, from env overrides)
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): _lower_keys(v) for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}
    raw_config = _expand_env_vars(raw_config)

    return CairnSettings(**raw_config)
