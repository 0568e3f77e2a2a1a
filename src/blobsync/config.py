"""Configuration loading and validation for the reconciliation pipeline.

Settings come from a JSON file (``config/blobsync.json`` by default)
with one object per section::

    {
      "source":   {"root": "/data/archive", "prefix": "IRIS_"},
      "database": {"path": "data/blobsync.db"},
      "query":    {"host": "influx.local", "port": 8086, "database": "iris", ...},
      "pipeline": {"processing_interval_seconds": 60, ...}
    }

Unrecognised keys are ignored.  A few environment variables override
the file, and the query token lives in the system keyring.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

import keyring
from keyring.errors import KeyringError

from blobsync.exceptions import ConfigError
from blobsync.verify.verifier import PLACEHOLDER

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/blobsync.json")

SERVICE_NAME = "blobsync-query"
KEY_NAME = "token"
TOKEN_ENV = "BLOBSYNC_QUERY_TOKEN"

SUPPORTED_PROTOCOLS = ("http", "https")

STAGES = ("ingest", "process", "verify")

# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "BLOBSYNC_SOURCE_ROOT": ("source", "root"),
    "BLOBSYNC_DB_PATH": ("database", "path"),
    "BLOBSYNC_QUERY_HOST": ("query", "host"),
    "BLOBSYNC_QUERY_TEMPLATE": ("query", "template"),
}


@dataclass
class SourceConfig:
    """Where archived objects are listed and read from."""

    root: str | None = None
    prefix: str | None = None
    process_historical: bool = True


@dataclass
class DatabaseConfig:
    path: str = "data/blobsync.db"


@dataclass
class QueryConfig:
    """Time-series count-query endpoint."""

    protocol: str = "https"
    host: str | None = None
    port: int = 8086
    database: str | None = None
    token: str | None = None
    template: str | None = None
    skip_tls_validation: bool = False
    connect_timeout: float = 30.0
    read_timeout: float = 60.0

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"


@dataclass
class PipelineConfig:
    """Poll cadence and retry discipline shared by the three loops."""

    ingestion_interval_seconds: float = 60.0
    processing_interval_seconds: float = 60.0
    verification_interval_seconds: float = 60.0
    min_age_minutes: float = 10.0
    max_retries: int = 3
    retry_base_delay: float = 1.0


@dataclass
class AppConfig:
    source: SourceConfig = field(default_factory=SourceConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)


def get_query_token() -> str | None:
    """Get the query token: system keyring first, then BLOBSYNC_QUERY_TOKEN.

    A host without a usable keyring backend falls through to the
    environment variable.
    """
    try:
        token = keyring.get_password(SERVICE_NAME, KEY_NAME)
    except KeyringError as e:
        logger.debug("Keyring unavailable (%s), reading %s", e, TOKEN_ENV)
        token = None
    if token:
        return token
    return os.environ.get(TOKEN_ENV) or None


def _build_section(cls: type, data: object) -> object:
    if not isinstance(data, dict):
        return cls()
    # Only recognised fields are applied
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from JSON, falling back to defaults.

    Reads ``config/blobsync.json`` when *config_path* is ``None``; a
    missing file yields the defaults.  Environment overrides are applied
    afterwards, and the token is read from keyring (then environment)
    when the file does not set one.

    Raises:
        ConfigError: The file is not valid JSON or not a JSON object.
    """
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    data: dict = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError([f"{config_path}: invalid JSON ({e})"]) from e
        if not isinstance(data, dict):
            raise ConfigError([f"{config_path}: top level must be a JSON object"])
        logger.debug("Loaded configuration from %s", config_path)
    else:
        logger.debug("No configuration file at %s, using defaults", config_path)

    config = AppConfig(
        source=_build_section(SourceConfig, data.get("source")),
        database=_build_section(DatabaseConfig, data.get("database")),
        query=_build_section(QueryConfig, data.get("query")),
        pipeline=_build_section(PipelineConfig, data.get("pipeline")),
    )

    for env_name, (section, name) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            setattr(getattr(config, section), name, value)

    if not config.query.token:
        config.query.token = get_query_token()

    return config


def validate_config(config: AppConfig, stages: tuple[str, ...] = STAGES) -> None:
    """Check the settings the given *stages* need.

    Raises:
        ConfigError: Listing every problem found.
    """
    problems: list[str] = []

    if not config.database.path:
        problems.append("database.path is required")

    if "ingest" in stages or "process" in stages:
        if not config.source.root:
            problems.append("source.root is required")

    if "verify" in stages:
        query = config.query
        if query.protocol not in SUPPORTED_PROTOCOLS:
            problems.append(
                f"query.protocol must be one of {', '.join(SUPPORTED_PROTOCOLS)}, "
                f"got {query.protocol!r}"
            )
        if not query.host:
            problems.append("query.host is required")
        if not isinstance(query.port, int) or query.port <= 0:
            problems.append("query.port must be a positive integer")
        if not query.database:
            problems.append("query.database is required")
        if not query.token:
            problems.append(
                f"query token is required (blobsync config set-token, or {TOKEN_ENV})"
            )
        if not query.template:
            problems.append("query.template is required")
        elif query.template.count(PLACEHOLDER) != 1:
            problems.append(f"query.template must contain exactly one {PLACEHOLDER} placeholder")

    pipeline = config.pipeline
    if pipeline.max_retries < 0:
        problems.append("pipeline.max_retries must not be negative")
    if pipeline.retry_base_delay < 0:
        problems.append("pipeline.retry_base_delay must not be negative")
    if pipeline.min_age_minutes < 0:
        problems.append("pipeline.min_age_minutes must not be negative")
    for name in (
        "ingestion_interval_seconds",
        "processing_interval_seconds",
        "verification_interval_seconds",
    ):
        if getattr(pipeline, name) <= 0:
            problems.append(f"pipeline.{name} must be positive")

    if problems:
        raise ConfigError(problems)
