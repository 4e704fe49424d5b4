"""Tests for mbconfig.py settings and logging setup."""

import os
from pathlib import Path

import pytest
import structlog

from mbconfig import Settings, configure_logging, get_settings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("MASTERBASE_") or name in ("SITE_ID", "NETLIFY_AUTH_TOKEN"):
            monkeypatch.delenv(name)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


class TestSettings:

    def test_defaults(self, clean_env):
        settings = Settings()
        assert settings.chunk_capacity == 4000
        assert settings.key_prefix == "indexes/"
        assert settings.blob_store_name == "master-games"
        assert settings.throttle_seconds == 2.0
        assert settings.remote_dir is None

    def test_prefixed_environment(self, clean_env):
        clean_env.setenv("MASTERBASE_CHUNK_CAPACITY", "500")
        clean_env.setenv("MASTERBASE_ROOT_DIR", "/data/master")
        settings = Settings()
        assert settings.chunk_capacity == 500
        assert settings.index_dir == Path("/data/master/indexes")
        assert settings.backups_dir == Path("/data/master/backups")

    def test_deploy_credential_names(self, clean_env):
        clean_env.setenv("SITE_ID", "site-123")
        clean_env.setenv("NETLIFY_AUTH_TOKEN", "secret")
        settings = Settings()
        assert settings.site_id == "site-123"
        assert settings.auth_token == "secret"

    def test_prefix_gets_trailing_slash(self, clean_env):
        assert Settings(key_prefix="games").key_prefix == "games/"

    def test_capacity_must_be_positive(self, clean_env):
        with pytest.raises(ValueError):
            Settings(chunk_capacity=0)

    def test_relative_eco_path_is_under_root(self, clean_env):
        settings = Settings(root_dir=Path("/ws"), eco_path=Path("eco"))
        assert settings.resolve_eco_path() == Path("/ws/eco")
        assert Settings(eco_path=Path("/opt/eco")).resolve_eco_path() == Path("/opt/eco")

    def test_env_file(self, clean_env, tmp_path):
        (tmp_path / ".env").write_text("MASTERBASE_KEY_PREFIX=staging/\n", encoding="utf-8")
        assert Settings().key_prefix == "staging/"

    def test_get_settings_is_cached(self, clean_env):
        assert get_settings() is get_settings()


class TestLogging:

    def test_json_output(self, capsys):
        configure_logging("DEBUG", json_output=True)
        structlog.get_logger("test").info("chunk_written", chunk_id=3)
        err = capsys.readouterr().err
        assert '"event": "chunk_written"' in err
        assert '"chunk_id": 3' in err

    def test_level_filters(self, capsys):
        configure_logging("WARNING", json_output=True)
        structlog.get_logger("test").info("hidden")
        assert "hidden" not in capsys.readouterr().err
        configure_logging("INFO")
