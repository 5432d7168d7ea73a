"""
Tests for settings, .env loading and the object store document I/O.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from threatmatch.config import ENV_PREFIX, Settings, get_settings
from threatmatch.env import load_env
from threatmatch.errors import ConfigurationError, StorageUnavailableError
from threatmatch.storage import diff_dict, empty_store, load_store, save_store


SETTING_NAMES = [
    "ENVIRONMENT", "PRIMARY_BACKEND", "DATABASE_URL", "OBJECT_STORE_PATH", "REPORTING_ROOT",
    "START_MONTH", "END_MONTH", "WORKERS", "COMMIT_RETRIES", "RETRY_BASE_DELAY",
    "LOG_LEVEL", "LOG_DIR",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Unset every THREATMATCH_* variable, and unset it again after the test.

    Values a .env file writes straight into os.environ are removed on undo too.
    """
    for name in SETTING_NAMES:
        monkeypatch.setenv(ENV_PREFIX + name, "")
        monkeypatch.delenv(ENV_PREFIX + name)
    return monkeypatch


class TestSettings:
    """Validation and environment overrides."""

    def test_defaults(self, clean_env):
        """Unset variables fall back to the documented defaults."""
        settings = Settings()
        assert settings.primary_backend == "sql"
        assert settings.start_month == "2019-01"
        assert settings.end_month == "2020-07"
        assert settings.workers == 1

    @pytest.mark.parametrize("changes", [
        {"environment": "staging"},
        {"primary_backend": "cassandra"},
        {"log_level": "LOUD"},
        {"workers": 0},
        {"commit_retries": -1},
        {"retry_base_delay": -0.1},
    ])
    def test_invalid_values(self, clean_env, changes):
        """Out-of-range or unknown values are rejected by the model."""
        with pytest.raises(ValidationError):
            Settings(**changes)

    @pytest.mark.parametrize("changes", [
        {"primary_backend": "cassandra"},
        {"workers": 0},
    ])
    def test_invalid_overrides(self, clean_env, changes):
        """Bad CLI overrides surface as ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Invalid settings"):
            Settings().with_overrides(**changes)

    def test_with_overrides_ignores_none(self, clean_env):
        """None means the flag was not given."""
        settings = Settings().with_overrides(primary_backend="object", workers=None)
        assert settings.primary_backend == "object"
        assert settings.workers == 1

    def test_settings_are_immutable(self, clean_env):
        """Settings are built once at startup and never mutated."""
        with pytest.raises(ValidationError):
            Settings().workers = 5

    def test_from_environment(self, clean_env, tmp_path):
        """THREATMATCH_* variables are typed; empty values are ignored."""
        clean_env.setenv("THREATMATCH_PRIMARY_BACKEND", "object")
        clean_env.setenv("THREATMATCH_OBJECT_STORE_PATH", str(tmp_path / "store.json"))
        clean_env.setenv("THREATMATCH_WORKERS", "4")
        clean_env.setenv("THREATMATCH_RETRY_BASE_DELAY", "0.25")
        clean_env.setenv("THREATMATCH_LOG_LEVEL", "debug")
        clean_env.setenv("THREATMATCH_START_MONTH", "")

        settings = get_settings(load_dotenv_file=False)

        assert settings.primary_backend == "object"
        assert settings.object_store_path == tmp_path / "store.json"
        assert settings.workers == 4
        assert settings.retry_base_delay == 0.25
        assert settings.log_level == "DEBUG"
        assert settings.start_month == "2019-01"

    def test_non_integer_environment_value(self, clean_env):
        """Parse failures name the offending variable."""
        clean_env.setenv("THREATMATCH_WORKERS", "many")
        with pytest.raises(ConfigurationError, match="THREATMATCH_WORKERS"):
            get_settings(load_dotenv_file=False)

    def test_dotenv_file(self, clean_env, tmp_path):
        """A .env file seeds the environment without overriding it."""
        env_file = tmp_path / ".env"
        env_file.write_text("THREATMATCH_PRIMARY_BACKEND=object\nTHREATMATCH_WORKERS=2\n")
        clean_env.setenv("THREATMATCH_WORKERS", "3")
        clean_env.chdir(tmp_path)

        settings = get_settings()

        assert settings.primary_backend == "object"
        # Process environment wins over the file
        assert settings.workers == 3

    def test_load_env_missing_file(self, tmp_path):
        """No .env file is not an error."""
        assert load_env(tmp_path / ".env") is False


class TestObjectStoreDocument:
    """JSON document I/O."""

    def test_missing_file_is_empty(self, tmp_path):
        """A store that was never written reads as empty."""
        assert load_store(tmp_path / "missing.json") == empty_store()

    def test_empty_file_is_empty(self, tmp_path):
        """A zero-byte store reads as empty."""
        path = tmp_path / "store.json"
        path.write_text("")
        assert load_store(path) == empty_store()

    def test_save_and_load(self, tmp_path):
        """Saving creates parent directories and leaves no temp file behind."""
        path = tmp_path / "nested" / "store.json"
        store = {"version": 2, "entities": {"Domain": {"1-COM": {"repo_id": "1-COM"}}}}

        save_store(path, store)

        assert load_store(path) == store
        assert not Path(str(path) + ".tmp").exists()

    def test_corrupt_file(self, tmp_path):
        """Unreadable JSON means the backend is unavailable."""
        path = tmp_path / "store.json"
        path.write_text("[1, 2")
        with pytest.raises(StorageUnavailableError, match="corrupt"):
            load_store(path)

    def test_diff_dict(self):
        """Changed and added keys are reported with old and new values."""
        changed = diff_dict({"a": 1, "b": 2}, {"a": 1, "b": 3, "c": 4})
        assert changed == {"b": {"old": 2, "new": 3}, "c": {"old": None, "new": 4}}
