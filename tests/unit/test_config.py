"""
Unit tests for environment configuration.

Tests cover:
- Defaults
- Environment overrides
- Validation failures
"""

import pytest

from fhirapi.fhirdb_server.config import (
    DEFAULT_MAX_RESOURCE_BYTES,
    HistoryBackend,
    HistoryConfig,
    SearchConfig,
    ServerConfig,
)

ENV_VARS = [
    "DOCSTORE_DATA_DIR",
    "FHIR_DATABASE",
    "HISTORY_BACKEND",
    "HISTORY_MAX_RESOURCE_BYTES",
    "S3_BUCKET",
    "S3_HISTORY_PREFIX",
    "SEARCH_RULES_PATH",
    "SEARCH_DEFAULT_PAGE_SIZE",
    "SEARCH_MAX_PAGE_SIZE",
    "BATCH_SURFACE_ENTRY_OUTCOMES",
    "LOG_FORMAT",
]


class TestServerConfig:
    """Tests for ServerConfig."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in ENV_VARS:
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        """Defaults suit local development."""
        config = ServerConfig.from_env()

        assert config.documents.database_name == "fhirdb"
        assert config.history.backend == HistoryBackend.S3
        assert config.history.max_resource_bytes == DEFAULT_MAX_RESOURCE_BYTES == 500_000
        assert config.s3.bucket == "fhirhistory"
        assert config.search.default_page_size == 100
        assert config.batch.surface_entry_outcomes is True
        assert config.observability.log_format == "json"

    def test_environment_overrides(self, monkeypatch, tmp_path):
        """Environment variables override defaults."""
        rules = tmp_path / "rules.txt"
        rules.write_text("Patient.gender=token\n")
        monkeypatch.setenv("DOCSTORE_DATA_DIR", str(tmp_path))
        monkeypatch.setenv("FHIR_DATABASE", "clinic")
        monkeypatch.setenv("HISTORY_BACKEND", "memory")
        monkeypatch.setenv("SEARCH_RULES_PATH", str(rules))
        monkeypatch.setenv("SEARCH_DEFAULT_PAGE_SIZE", "20")
        monkeypatch.setenv("BATCH_SURFACE_ENTRY_OUTCOMES", "false")

        config = ServerConfig.from_env()

        assert config.documents.data_dir == str(tmp_path)
        assert config.documents.database_name == "clinic"
        assert config.history.backend == HistoryBackend.MEMORY
        assert config.search.rules_path == str(rules)
        assert config.search.default_page_size == 20
        assert config.batch.surface_entry_outcomes is False

    def test_invalid_history_backend(self, monkeypatch):
        """Unknown history backends are rejected."""
        monkeypatch.setenv("HISTORY_BACKEND", "ftp")
        with pytest.raises(ValueError):
            HistoryConfig.from_env()

    def test_missing_rules_file(self, monkeypatch):
        """A configured rule file must exist."""
        monkeypatch.setenv("SEARCH_RULES_PATH", "/nonexistent/rules.txt")
        with pytest.raises(ValueError):
            ServerConfig.from_env()

    def test_page_size_bounds(self):
        """Max page size may not be below the default."""
        config = ServerConfig(search=SearchConfig(default_page_size=50, max_page_size=10))
        with pytest.raises(ValueError):
            config.validate()

    def test_s3_requires_bucket(self, monkeypatch):
        """The S3 history backend needs a bucket."""
        monkeypatch.setenv("S3_BUCKET", "")
        with pytest.raises(ValueError):
            ServerConfig.from_env()
