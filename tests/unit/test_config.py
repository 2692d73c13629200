"""Tests for SyncConfig loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from reviewsync.config import SOURCE_GERRIT, SOURCE_GITHUB, SyncConfig, get_config, reset_config


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Run each test from an empty directory so no .env file is picked up."""
    monkeypatch.chdir(tmp_path)
    for name in (
        "SOURCE",
        "GITHUB_TOKEN",
        "GITHUB_REPO",
        "GERRIT_BRANCHES",
        "GERRIT_STATUSES",
        "DIFF_EXCLUDE_PATHS",
        "SYNC_SAFETY_WINDOW_MINUTES",
        "SYNC_DEFAULT_WINDOW_DAYS",
    ):
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_defaults(self):
        config = SyncConfig()
        assert config.source == SOURCE_GERRIT
        assert config.gerrit_base_url == "https://go-review.googlesource.com"
        assert config.gerrit_project == "go"
        assert config.gerrit_branches == ["master", "release-branch.go1.*"]
        assert config.gerrit_statuses == ["open", "merged"]
        assert config.sync_default_window_days == 30
        assert config.sync_safety_window_minutes == 10
        assert config.sync_max_concurrency == 3
        assert config.sync_timeout_seconds == 600
        assert config.sync_full_timeout_seconds == 900
        assert config.diff_max_size_bytes == 512000
        assert config.update_check_ttl_seconds == 60
        assert config.analysis_max_retries == 3
        assert config.database_path == Path("reviewsync.db")

    def test_repository_name_follows_source(self):
        assert SyncConfig().repository_name == "go"
        config = SyncConfig(source="github", github_token="t", github_repo="owner/repo")
        assert config.repository_name == "owner/repo"

    def test_frozen(self):
        config = SyncConfig()
        with pytest.raises(ValidationError):
            config.sync_max_concurrency = 5


class TestEnvironment:
    def test_comma_separated_lists(self, monkeypatch):
        monkeypatch.setenv("GERRIT_BRANCHES", "master, dev.* ,")
        monkeypatch.setenv("DIFF_EXCLUDE_PATHS", "vendor/,testdata/")
        config = SyncConfig()
        assert config.gerrit_branches == ["master", "dev.*"]
        assert config.diff_exclude_paths == ["vendor/", "testdata/"]

    def test_json_list(self, monkeypatch):
        monkeypatch.setenv("GERRIT_STATUSES", '["open"]')
        assert SyncConfig().gerrit_statuses == ["open"]

    def test_source_normalised(self, monkeypatch):
        monkeypatch.setenv("SOURCE", " Gerrit ")
        assert SyncConfig().source == SOURCE_GERRIT

    def test_env_file(self, tmp_path):
        (tmp_path / ".env").write_text("GERRIT_PROJECT=tools\nSYNC_MAX_CONCURRENCY=5\n")
        config = SyncConfig()
        assert config.gerrit_project == "tools"
        assert config.sync_max_concurrency == 5


class TestValidation:
    def test_unknown_source(self):
        with pytest.raises(ValidationError, match="gerrit or github"):
            SyncConfig(source="gitlab")

    def test_github_requires_token(self):
        with pytest.raises(ValidationError, match="GITHUB_TOKEN"):
            SyncConfig(source=SOURCE_GITHUB, github_repo="owner/repo")

    def test_github_requires_owner_repo(self):
        with pytest.raises(ValidationError, match="owner/repo"):
            SyncConfig(source=SOURCE_GITHUB, github_token="t", github_repo="repo")

    def test_safety_window_shorter_than_default_window(self):
        with pytest.raises(ValidationError, match="SYNC_SAFETY_WINDOW_MINUTES"):
            SyncConfig(sync_default_window_days=1, sync_safety_window_minutes=1440)

    def test_full_timeout_not_below_timeout(self):
        with pytest.raises(ValidationError, match="SYNC_FULL_TIMEOUT_SECONDS"):
            SyncConfig(sync_timeout_seconds=900, sync_full_timeout_seconds=600)

    @pytest.mark.parametrize("value", [0, 33])
    def test_concurrency_bounds(self, value):
        with pytest.raises(ValidationError):
            SyncConfig(sync_max_concurrency=value)


def test_get_config_is_cached():
    first = get_config()
    assert get_config() is first
    reset_config()
    assert get_config() is not first
