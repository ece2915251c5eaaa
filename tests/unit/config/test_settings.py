"""Tests for settings loading and fallbacks."""

import pytest

from tunescan.config import SCAN_DIRECTORY_JOB_TYPE, DatabaseSettings, JobSettings, Settings


class TestJobSettingsDefaults:
    """Test the documented defaults."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Unset env gives the documented limits."""
        for name in (
            "MAX_CONCURRENT_JOBS",
            "QUEUE_MAX_LENGTH",
            "JOB_LEASE_DURATION_SECONDS",
            "MAX_JOB_RUNTIME_MS",
            "JOB_POLL_INTERVAL_MS",
        ):
            monkeypatch.delenv(name, raising=False)

        settings = JobSettings(_env_file=None)

        assert settings.max_concurrent_jobs == 2
        assert settings.max_concurrent_scan_jobs == 1
        assert settings.max_db_batch_size == 500
        assert settings.max_fs_concurrency == 8
        assert settings.max_scan_depth == 32
        assert settings.max_files_per_scan == 200_000
        assert settings.max_job_runtime_seconds == 1800
        assert settings.queue_max_length == 1000
        assert settings.queue_max_inflight == 8
        assert settings.job_lease_duration_seconds == 45
        assert settings.job_poll_interval_seconds == 0.75
        assert settings.job_retry_backoff_cap_seconds == 60

    def test_heartbeat_is_a_third_of_the_lease(self) -> None:
        """Heartbeat interval stays well inside the lease."""
        settings = JobSettings(_env_file=None, job_lease_duration_seconds=30)
        assert settings.heartbeat_interval_seconds == 10


class TestJobSettingsFallbacks:
    """Test that garbage env values fall back to defaults."""

    @pytest.mark.parametrize("raw", ["abc", "0", "-5", ""])
    def test_invalid_values_use_default(
        self, monkeypatch: pytest.MonkeyPatch, raw: str
    ) -> None:
        """Non-numeric and non-positive values never reach the limits."""
        monkeypatch.setenv("MAX_DB_BATCH_SIZE", raw)
        monkeypatch.setenv("QUEUE_MAX_LENGTH", raw)

        settings = JobSettings(_env_file=None)

        assert settings.max_db_batch_size == 500
        assert settings.queue_max_length == 1000

    def test_valid_env_value_is_used(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """A positive integer from the environment overrides the default."""
        monkeypatch.setenv("MAX_DB_BATCH_SIZE", "250")
        assert JobSettings(_env_file=None).max_db_batch_size == 250


class TestMillisecondAliases:
    """Test the *_MS duration names older deployments set."""

    def test_millisecond_names_are_converted(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("MAX_JOB_RUNTIME_SECONDS", raising=False)
        monkeypatch.delenv("JOB_POLL_INTERVAL_SECONDS", raising=False)
        monkeypatch.setenv("MAX_JOB_RUNTIME_MS", "60000")
        monkeypatch.setenv("JOB_POLL_INTERVAL_MS", "250")

        settings = JobSettings(_env_file=None)

        assert settings.max_job_runtime_seconds == 60
        assert settings.job_poll_interval_seconds == 0.25

    def test_seconds_name_wins(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_JOB_RUNTIME_MS", "60000")
        monkeypatch.setenv("MAX_JOB_RUNTIME_SECONDS", "90")

        assert JobSettings(_env_file=None).max_job_runtime_seconds == 90

    @pytest.mark.parametrize("raw", ["abc", "0", "-1"])
    def test_invalid_millis_are_ignored(self, monkeypatch: pytest.MonkeyPatch, raw: str) -> None:
        monkeypatch.delenv("JOB_POLL_INTERVAL_SECONDS", raising=False)
        monkeypatch.setenv("JOB_POLL_INTERVAL_MS", raw)

        settings = JobSettings(_env_file=None)

        assert settings.job_poll_interval_ms is None
        assert settings.job_poll_interval_seconds == 0.75


class TestConcurrencyFor:
    """Test per-type concurrency resolution."""

    def test_scan_jobs_use_scan_limit(self) -> None:
        settings = JobSettings(_env_file=None, max_concurrent_scan_jobs=3)
        assert settings.concurrency_for(SCAN_DIRECTORY_JOB_TYPE) == 3

    def test_unknown_types_default_to_one(self) -> None:
        assert JobSettings(_env_file=None).concurrency_for("something.else") == 1

    def test_override_wins_and_invalid_overrides_are_dropped(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """PER_TYPE_CONCURRENCY is a JSON map; non-positive entries are ignored."""
        monkeypatch.setenv("PER_TYPE_CONCURRENCY", '{"scan.directory": 4, "other": 0}')

        settings = JobSettings(_env_file=None)

        assert settings.concurrency_for(SCAN_DIRECTORY_JOB_TYPE) == 4
        assert "other" not in settings.per_type_concurrency


class TestDatabaseSettings:
    """Test SQLite path helpers."""

    def test_sqlite_path(self) -> None:
        settings = DatabaseSettings(_env_file=None, url="sqlite+aiosqlite:///./data/db.sqlite")
        assert settings.is_sqlite
        assert str(settings.get_sqlite_path()) == "data/db.sqlite"

    def test_memory_database_has_no_path(self) -> None:
        settings = DatabaseSettings(_env_file=None, url="sqlite+aiosqlite:///:memory:")
        assert settings.get_sqlite_path() is None

    def test_postgres_has_no_sqlite_path(self) -> None:
        settings = DatabaseSettings(
            _env_file=None, url="postgresql+asyncpg://user:pw@localhost/tunescan"
        )
        assert not settings.is_sqlite
        assert settings.get_sqlite_path() is None


def test_settings_groups_are_nested() -> None:
    """Top-level settings carry database and job groups."""
    settings = Settings(_env_file=None)
    assert isinstance(settings.database, DatabaseSettings)
    assert isinstance(settings.jobs, JobSettings)
