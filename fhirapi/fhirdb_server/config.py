"""
Configuration management for FHIR DB Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for the history bucket
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)

# Serialized resources above this size are rejected outright
DEFAULT_MAX_RESOURCE_BYTES = 500_000


class HistoryBackend(Enum):
    """Supported history blob backends."""

    S3 = "s3"
    MEMORY = "memory"


@dataclass(frozen=True)
class DocumentStoreConfig:
    """Document backend configuration.

    Attributes:
        data_dir: Directory for SQLite database files
        database_name: Logical database holding one collection per resource type
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
    """

    data_dir: str = "/var/lib/fhirdb"
    database_name: str = "fhirdb"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000

    @classmethod
    def from_env(cls) -> DocumentStoreConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DOCSTORE_DATA_DIR", "/var/lib/fhirdb"),
            database_name=os.getenv("FHIR_DATABASE", "fhirdb"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
        )


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the resource history log.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        history_prefix: Key prefix for history entries (empty for bucket root)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
    """

    bucket: str = "fhirhistory"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    history_prefix: str = ""
    access_key_id: str | None = None
    secret_access_key: str | None = None

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "fhirhistory"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            history_prefix=os.getenv("S3_HISTORY_PREFIX", ""),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
        )


@dataclass(frozen=True)
class HistoryConfig:
    """History log configuration.

    Attributes:
        backend: Which blob backend stores history entries
        max_resource_bytes: Largest serialized resource accepted for writing
    """

    backend: HistoryBackend = HistoryBackend.S3
    max_resource_bytes: int = DEFAULT_MAX_RESOURCE_BYTES

    @classmethod
    def from_env(cls) -> HistoryConfig:
        """Load configuration from environment variables.

        Raises:
            ValueError: If HISTORY_BACKEND is not a supported backend.
        """
        backend_str = os.getenv("HISTORY_BACKEND", "s3").lower()
        try:
            backend = HistoryBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid HISTORY_BACKEND '{backend_str}'. Must be one of: s3, memory"
            )
        return cls(
            backend=backend,
            max_resource_bytes=int(
                os.getenv("HISTORY_MAX_RESOURCE_BYTES", str(DEFAULT_MAX_RESOURCE_BYTES))
            ),
        )


@dataclass(frozen=True)
class SearchConfig:
    """Search configuration.

    Attributes:
        rules_path: Search parameter rule file (None uses the packaged rules)
        default_page_size: Page size when the caller sends no _count
        max_page_size: Upper bound applied to _count
    """

    rules_path: str | None = None
    default_page_size: int = 100
    max_page_size: int = 1000

    @classmethod
    def from_env(cls) -> SearchConfig:
        """Load configuration from environment variables."""
        return cls(
            rules_path=os.getenv("SEARCH_RULES_PATH"),
            default_page_size=int(os.getenv("SEARCH_DEFAULT_PAGE_SIZE", "100")),
            max_page_size=int(os.getenv("SEARCH_MAX_PAGE_SIZE", "1000")),
        )


@dataclass(frozen=True)
class BatchConfig:
    """Batch bundle configuration.

    Attributes:
        surface_entry_outcomes: Return per-entry outcomes with the container response
    """

    surface_entry_outcomes: bool = True

    @classmethod
    def from_env(cls) -> BatchConfig:
        """Load configuration from environment variables."""
        return cls(
            surface_entry_outcomes=os.getenv("BATCH_SURFACE_ENTRY_OUTCOMES", "true").lower()
            == "true",
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        documents: Document backend configuration
        history: History log configuration
        s3: S3 configuration (if history backend is S3)
        search: Search configuration
        batch: Batch bundle configuration
        observability: Logging configuration
    """

    documents: DocumentStoreConfig = field(default_factory=DocumentStoreConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    s3: S3Config = field(default_factory=S3Config)
    search: SearchConfig = field(default_factory=SearchConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Returns:
            ServerConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        config = cls(
            documents=DocumentStoreConfig.from_env(),
            history=HistoryConfig.from_env(),
            s3=S3Config.from_env(),
            search=SearchConfig.from_env(),
            batch=BatchConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if not self.documents.database_name:
            raise ValueError("FHIR_DATABASE must not be empty")

        if self.history.backend == HistoryBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when HISTORY_BACKEND=s3")

        if self.history.max_resource_bytes <= 0:
            raise ValueError("HISTORY_MAX_RESOURCE_BYTES must be positive")

        if self.search.default_page_size <= 0:
            raise ValueError("SEARCH_DEFAULT_PAGE_SIZE must be positive")

        if self.search.max_page_size < self.search.default_page_size:
            raise ValueError("SEARCH_MAX_PAGE_SIZE must be >= SEARCH_DEFAULT_PAGE_SIZE")

        if self.search.rules_path and not os.path.exists(self.search.rules_path):
            raise ValueError(f"Search rule file not found: {self.search.rules_path}")

        if self.history.backend == HistoryBackend.MEMORY:
            logger.warning("History backend is in-memory; history is lost on restart")

        if not os.path.exists(self.documents.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.documents.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Server configuration loaded",
            extra={
                "data_dir": self.documents.data_dir,
                "database": self.documents.database_name,
                "history_backend": self.history.backend.value,
                "s3_bucket": self.s3.bucket
                if self.history.backend == HistoryBackend.S3
                else None,
                "max_resource_bytes": self.history.max_resource_bytes,
                "rules_path": self.search.rules_path or "<packaged>",
                "surface_entry_outcomes": self.batch.surface_entry_outcomes,
                "log_level": self.observability.log_level,
            },
        )
