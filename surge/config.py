"""
Surge configuration.

Sources, lowest to highest precedence:
1. Built-in defaults (four 10-minute phases of 20/50/100/300 users)
2. YAML file (``surge.yaml`` in the working directory, or ``--config``)
3. Environment variables (API_BASE_URL, MONGODB_CONNECTION_STRING, ...), with
   a ``.env`` file filling in any that are not set
4. CLI options, merged by the caller and re-validated with ``build_config``

Missing values fall back to defaults; only a missing connection parameter
that the run actually needs is an error.
"""

# mypy: disable-error-code="misc"

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from surge.datastore import DEFAULT_TEST_USER_PATTERN
from surge.errors import ConfigurationError
from surge.metrics import DEFAULT_ENDPOINT_RULES, EndpointNormalizer, EndpointRule
from surge.scheduler import DEFAULT_STAGGER_FLOOR_MS, PhasePlan

logger = logging.getLogger("surge.config")

DEFAULT_CONFIG_FILE = "surge.yaml"
DEFAULT_ENV_FILE = ".env"


# ============================================================================
# Models
# ============================================================================


class PhaseSettings(BaseModel):
    """One load phase."""

    model_config = ConfigDict(populate_by_name=True)

    users: int = Field(gt=0)
    duration_minutes: float = Field(gt=0, alias="durationMinutes")


def _default_phases() -> list[PhaseSettings]:
    return [
        PhaseSettings(users=users, duration_minutes=10)
        for users in (20, 50, 100, 300)
    ]


class ApiSettings(BaseModel):
    """Target service."""

    base_url: str = "http://localhost:5000"
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {v!r}")
        return v.rstrip("/")


class DataStoreSettings(BaseModel):
    """MongoDB used to verify and clean up test users."""

    enabled: bool = True
    connection_string: str | None = None
    database_name: str = "TraceSourceDB"
    user_pattern: str = DEFAULT_TEST_USER_PATTERN


class LoadTestSettings(BaseModel):
    """Phase schedule and pacing."""

    phases: list[PhaseSettings] = Field(default_factory=_default_phases)
    iterations_per_user: int = Field(default=10, gt=0)
    rest_duration_minutes: float = Field(default=10, ge=0)
    phase_cooldown_seconds: float = Field(default=30, ge=0)
    stagger_floor_ms: int = Field(default=DEFAULT_STAGGER_FLOOR_MS, ge=0)
    iteration_backoff_seconds: tuple[float, float] = (1.0, 2.0)
    workload: str = "tracesource"
    # Extra constructor options for the workload, e.g. {"paths": ["/health"]} for smoke
    workload_options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("phases")
    @classmethod
    def validate_phases(cls, v: list[PhaseSettings]) -> list[PhaseSettings]:
        # An explicitly empty list means "use the defaults"
        return v or _default_phases()

    @field_validator("iteration_backoff_seconds")
    @classmethod
    def validate_backoff(cls, v: tuple[float, float]) -> tuple[float, float]:
        low, high = v
        if low < 0 or high < low:
            raise ValueError("iteration_backoff_seconds must be (min, max) with 0 <= min <= max")
        return v


class ReportSettings(BaseModel):
    """Where and how the final report is written."""

    output_dir: str = "."
    format: Literal["markdown", "json"] = "markdown"


class EndpointRuleSettings(BaseModel):
    """Endpoint normalization rule as written in config files."""

    pattern: str
    replacement: str


def _default_rules() -> list[EndpointRuleSettings]:
    return [
        EndpointRuleSettings(pattern=r.pattern, replacement=r.replacement)
        for r in DEFAULT_ENDPOINT_RULES
    ]


class SurgeConfig(BaseModel):
    """Complete configuration of a run."""

    api: ApiSettings = Field(default_factory=ApiSettings)
    datastore: DataStoreSettings = Field(default_factory=DataStoreSettings)
    load_test: LoadTestSettings = Field(default_factory=LoadTestSettings)
    report: ReportSettings = Field(default_factory=ReportSettings)
    endpoint_rules: list[EndpointRuleSettings] = Field(default_factory=_default_rules)

    @model_validator(mode="after")
    def validate_rules(self) -> SurgeConfig:
        for rule in self.endpoint_rules:
            try:
                re.compile(rule.pattern)
            except re.error as e:
                raise ValueError(f"Invalid endpoint rule pattern {rule.pattern!r}: {e}") from e
        return self

    def require_runnable(self) -> None:
        """
        Check the settings a run cannot do without.

        Raises:
            ConfigurationError: If a required connection parameter is missing
        """
        if self.datastore.enabled and not self.datastore.connection_string:
            raise ConfigurationError(
                "MongoDB connection string is required (set MONGODB_CONNECTION_STRING "
                "or disable cleanup)",
                setting="datastore.connection_string",
            )

    def normalizer(self) -> EndpointNormalizer:
        return EndpointNormalizer(
            [EndpointRule(r.pattern, r.replacement) for r in self.endpoint_rules]
        )

    def phase_plans(self) -> list[PhasePlan]:
        """Phases in configured order, named ``Phase {n} ({users} users)``."""
        return [
            PhasePlan(
                name=f"Phase {index} ({phase.users} users)",
                user_count=phase.users,
                duration_seconds=phase.duration_minutes * 60,
                iterations_per_user=self.load_test.iterations_per_user,
            )
            for index, phase in enumerate(self.load_test.phases, start=1)
        ]


# ============================================================================
# Loading
# ============================================================================

# Environment variable -> (section, field)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "API_BASE_URL": ("api", "base_url"),
    "SURGE_REQUEST_TIMEOUT_SECONDS": ("api", "request_timeout_seconds"),
    "MONGODB_CONNECTION_STRING": ("datastore", "connection_string"),
    "MONGODB_DATABASE_NAME": ("datastore", "database_name"),
    "SURGE_ITERATIONS_PER_USER": ("load_test", "iterations_per_user"),
    "SURGE_REST_DURATION_MINUTES": ("load_test", "rest_duration_minutes"),
    "SURGE_PHASE_COOLDOWN_SECONDS": ("load_test", "phase_cooldown_seconds"),
    "SURGE_WORKLOAD": ("load_test", "workload"),
    "SURGE_REPORT_DIR": ("report", "output_dir"),
    "SURGE_REPORT_FORMAT": ("report", "format"),
}

# Short spellings accepted wherever a report format is given
REPORT_FORMAT_ALIASES = {"md": "markdown"}


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}", setting=str(path)) from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping", setting=str(path))
    return data


def _read_env_file(path: Path) -> dict[str, str]:
    if not path.is_file():
        return {}
    logger.info(f"Loaded environment from {path}")
    return {k: v for k, v in dotenv_values(path).items() if v is not None}


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    env_file: str | Path | None = DEFAULT_ENV_FILE,
) -> SurgeConfig:
    """
    Load configuration from defaults, an optional YAML file and the environment.

    Args:
        path: YAML file; when None, ``surge.yaml`` is used if present
        env: Environment mapping (defaults to ``os.environ``)
        env_file: Dotenv file filling in variables missing from ``env``

    Returns:
        Validated SurgeConfig

    Raises:
        ConfigurationError: On unreadable files or invalid values
    """
    env = os.environ if env is None else env
    if env_file is not None:
        # Real environment variables win over the file
        env = {**_read_env_file(Path(env_file)), **{k: v for k, v in env.items() if v}}
    data: dict[str, Any] = {}

    if path is not None:
        data = _read_yaml(Path(path))
        logger.info(f"Loaded configuration from {path}")
    elif Path(DEFAULT_CONFIG_FILE).is_file():
        data = _read_yaml(Path(DEFAULT_CONFIG_FILE))
        logger.info(f"Loaded configuration from {DEFAULT_CONFIG_FILE}")

    for var, (section, key) in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            if var == "SURGE_REPORT_FORMAT":
                value = REPORT_FORMAT_ALIASES.get(value, value)
            data.setdefault(section, {})[key] = value

    return build_config(data)


def build_config(data: Mapping[str, Any]) -> SurgeConfig:
    """Validate a raw mapping, converting validation failures to ConfigurationError."""
    try:
        return SurgeConfig.model_validate(dict(data))
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            f"Invalid configuration at {location or '<root>'}: {first.get('msg')}",
            setting=location or None,
        ) from e
