"""Tests for the mirror configuration."""

from pathlib import Path

import pytest

from jira_db.exceptions import ConfigurationError
from jira_db.mirror.config import EmbeddingProvider, MirrorConfig, _parse_projects

ENV_VARS = (
    "JIRA_URL",
    "JIRA_USERNAME",
    "JIRA_API_TOKEN",
    "JIRA_DB_PATH",
    "JIRA_DB_SYNC_PROJECTS",
    "JIRA_DB_SYNC_INTERVAL_MINUTES",
    "JIRA_DB_PAGE_SIZE",
    "JIRA_DB_SNAPSHOTS_AFTER_SYNC",
    "JIRA_DB_EXPAND_AFTER_SYNC",
    "JIRA_DB_QUERY_LIMIT",
    "JIRA_DB_EMBEDDING_MODEL",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestMirrorConfig:
    def test_defaults(self, clean_env):
        config = MirrorConfig()
        assert config.db_path == Path("./data/jira.db")
        assert config.sync_projects == []
        assert config.sync_interval_minutes == 30
        assert config.page_size == 100
        assert config.chunk_size == 50
        assert config.snapshots_after_sync is True
        assert config.expand_after_sync is False
        assert config.query_limit == 100
        assert config.embedding_provider == EmbeddingProvider.OPENAI
        assert config.embedding_model == "text-embedding-3-small"

    def test_from_env(self, clean_env):
        clean_env.setenv("JIRA_URL", "https://example.atlassian.net/")
        clean_env.setenv("JIRA_USERNAME", "bot@example.com")
        clean_env.setenv("JIRA_API_TOKEN", "abc123")
        clean_env.setenv("JIRA_DB_PATH", "/tmp/mirror/jira.db")
        clean_env.setenv("JIRA_DB_SYNC_PROJECTS", "proj, eng")
        clean_env.setenv("JIRA_DB_SYNC_INTERVAL_MINUTES", "0")
        clean_env.setenv("JIRA_DB_PAGE_SIZE", "25")
        clean_env.setenv("JIRA_DB_SNAPSHOTS_AFTER_SYNC", "false")
        clean_env.setenv("JIRA_DB_EXPAND_AFTER_SYNC", "yes")

        config = MirrorConfig.from_env()

        assert config.jira_url == "https://example.atlassian.net"
        assert config.db_path == Path("/tmp/mirror/jira.db")
        assert config.sync_projects == ["PROJ", "ENG"]
        assert config.sync_interval_minutes == 0
        assert config.page_size == 25
        assert config.snapshots_after_sync is False
        assert config.expand_after_sync is True

    def test_state_path_sits_next_to_database(self, tmp_path):
        config = MirrorConfig(db_path=tmp_path / "data" / "jira.db")
        assert config.state_path == tmp_path / "data" / "sync_state.json"

    def test_ensure_db_dir_creates_parent(self, tmp_path):
        config = MirrorConfig(db_path=tmp_path / "nested" / "jira.db")
        assert config.ensure_db_dir() == tmp_path / "nested" / "jira.db"
        assert (tmp_path / "nested").is_dir()


class TestValidate:
    def test_valid(self, config):
        config.validate()

    def test_missing_credentials(self, clean_env):
        config = MirrorConfig(jira_url="https://example.atlassian.net")
        with pytest.raises(ConfigurationError, match="JIRA_USERNAME, JIRA_API_TOKEN"):
            config.validate()

    def test_placeholder_token(self, config):
        config.jira_api_token = "your-api-token"
        with pytest.raises(ConfigurationError, match="placeholder"):
            config.validate()

    def test_url_scheme(self, config):
        config.jira_url = "example.atlassian.net"
        with pytest.raises(ConfigurationError, match="http"):
            config.validate()


@pytest.mark.parametrize(
    "value, expected",
    [
        ("*", []),
        (" * ", []),
        ("PROJ", ["PROJ"]),
        ("proj,eng", ["PROJ", "ENG"]),
        ("PROJ, ,ENG,", ["PROJ", "ENG"]),
    ],
)
def test_parse_projects(value, expected):
    assert _parse_projects(value) == expected
