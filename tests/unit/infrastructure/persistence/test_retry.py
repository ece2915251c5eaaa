"""Tests for the database lock retry decorator."""

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from tunescan.infrastructure.persistence.retry import is_lock_error, with_db_retry


def _operational(message: str) -> OperationalError:
    return OperationalError("INSERT INTO scan_files ...", {}, Exception(message))


class Flaky:
    """Raises the given errors in order, then returns 'ok'."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def call(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestIsLockError:
    """Test lock error detection."""

    def test_locked_and_busy_are_lock_errors(self):
        assert is_lock_error(_operational("database is locked"))
        assert is_lock_error(_operational("database is busy"))

    def test_other_errors_are_not(self):
        assert not is_lock_error(_operational("no such table: scan_files"))
        assert not is_lock_error(ValueError("locked"))


class TestWithDbRetry:
    """Test retry behaviour."""

    @pytest.mark.asyncio
    async def test_retries_lock_errors_until_success(self):
        flaky = Flaky(_operational("database is locked"), _operational("database is locked"))
        wrapped = with_db_retry(max_attempts=3, initial_delay=0)(flaky.call)

        assert await wrapped() == "ok"
        assert flaky.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        flaky = Flaky(*[_operational("database is locked") for _ in range(3)])
        wrapped = with_db_retry(max_attempts=3, initial_delay=0)(flaky.call)

        with pytest.raises(OperationalError):
            await wrapped()
        assert flaky.calls == 3

    @pytest.mark.asyncio
    async def test_non_lock_operational_error_is_not_retried(self):
        flaky = Flaky(_operational("disk I/O error"))
        wrapped = with_db_retry(max_attempts=3, initial_delay=0)(flaky.call)

        with pytest.raises(OperationalError):
            await wrapped()
        assert flaky.calls == 1

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate(self):
        flaky = Flaky(IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")))
        wrapped = with_db_retry(max_attempts=3, initial_delay=0)(flaky.call)

        with pytest.raises(IntegrityError):
            await wrapped()
        assert flaky.calls == 1
