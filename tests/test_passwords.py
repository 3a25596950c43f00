"""Password verification and consecutive-failure lockout."""

from datetime import timedelta

import pytest

from officegate.service.errors import AccountLockedError, InvalidCredentialsError
from officegate.service.passwords import PasswordEngine
from officegate.storage.models import UserStatus

PASSWORD = "Correct-horse-42"


@pytest.fixture
def engine(memory_store, clock):
    return PasswordEngine(
        memory_store, max_attempts=5, lockout=timedelta(minutes=30), clock=clock
    )


@pytest.fixture
def user(memory_store, engine):
    return memory_store.create_user(
        "owner@example.com", engine.hash_password(PASSWORD), status=UserStatus.ACTIVE
    )


def attempt(engine, store, password):
    """Run one login attempt against the freshest stored row."""
    return engine.verify(store.get_user_by_email("owner@example.com"), password)


def fail_times(engine, store, count):
    for _ in range(count):
        with pytest.raises(InvalidCredentialsError):
            attempt(engine, store, "wrong-password-1")


class TestHashing:
    def test_hash_is_argon2id_and_salted(self, engine):
        first = engine.hash_password(PASSWORD)
        second = engine.hash_password(PASSWORD)

        assert first.startswith("$argon2id$")
        assert first != second
        assert PASSWORD not in first

    def test_unusable_hash_counts_as_mismatch(self, memory_store, engine):
        broken = memory_store.create_user(
            "broken@example.com", "not-a-real-hash", status=UserStatus.ACTIVE
        )

        with pytest.raises(InvalidCredentialsError):
            engine.verify(broken, PASSWORD)
        assert memory_store.get_user(broken.id).failed_login_attempts == 1


class TestSuccessfulLogin:
    def test_success_returns_user_and_stamps_last_login(self, memory_store, engine, user, clock):
        verified = attempt(engine, memory_store, PASSWORD)

        assert verified.id == user.id
        assert verified.failed_login_attempts == 0
        assert verified.last_login_at == clock.now

    def test_success_resets_counter(self, memory_store, engine, user):
        """Two failures, a success, then four failures must not lock."""
        fail_times(engine, memory_store, 2)
        assert memory_store.get_user(user.id).failed_login_attempts == 2

        attempt(engine, memory_store, PASSWORD)
        assert memory_store.get_user(user.id).failed_login_attempts == 0

        fail_times(engine, memory_store, 4)
        stored = memory_store.get_user(user.id)
        assert stored.failed_login_attempts == 4
        assert stored.locked_until is None
        assert stored.status == UserStatus.ACTIVE

    def test_pending_users_may_log_in(self, memory_store, engine):
        pending = memory_store.create_user("new@example.com", engine.hash_password(PASSWORD))

        assert engine.verify(pending, PASSWORD).status == UserStatus.PENDING


class TestLockout:
    def test_fifth_failure_locks_for_thirty_minutes(self, memory_store, engine, user, clock):
        fail_times(engine, memory_store, 5)

        stored = memory_store.get_user(user.id)
        assert stored.failed_login_attempts == 5
        assert stored.status == UserStatus.LOCKED
        assert stored.locked_until == clock.now + timedelta(minutes=30)

    def test_correct_password_rejected_while_locked(self, memory_store, engine, user):
        fail_times(engine, memory_store, 5)

        with pytest.raises(AccountLockedError) as excinfo:
            attempt(engine, memory_store, PASSWORD)

        assert excinfo.value.retry_after_minutes == 30
        assert excinfo.value.detail == {"retry_after_minutes": 30}
        assert excinfo.value.status_code == 401

    def test_attempts_during_lock_do_not_increment(self, memory_store, engine, user):
        fail_times(engine, memory_store, 5)

        for _ in range(3):
            with pytest.raises(AccountLockedError):
                attempt(engine, memory_store, "wrong-password-1")

        assert memory_store.get_user(user.id).failed_login_attempts == 5

    def test_retry_after_rounds_up(self, memory_store, engine, user, clock):
        fail_times(engine, memory_store, 5)
        clock.advance(minutes=29, seconds=30)

        with pytest.raises(AccountLockedError) as excinfo:
            attempt(engine, memory_store, PASSWORD)

        assert excinfo.value.retry_after_minutes == 1

    def test_expired_lock_allows_correct_password(self, memory_store, engine, user, clock):
        fail_times(engine, memory_store, 5)
        clock.advance(minutes=31)

        verified = attempt(engine, memory_store, PASSWORD)

        assert verified.status == UserStatus.ACTIVE
        assert verified.failed_login_attempts == 0
        assert verified.locked_until is None

    def test_failure_after_expired_lock_relocks(self, memory_store, engine, user, clock):
        fail_times(engine, memory_store, 5)
        clock.advance(minutes=31)

        fail_times(engine, memory_store, 1)

        stored = memory_store.get_user(user.id)
        assert stored.failed_login_attempts == 6
        assert stored.locked_until == clock.now + timedelta(minutes=30)


class TestInactiveAccounts:
    def test_inactive_user_rejected_with_correct_password(self, memory_store, engine, user):
        memory_store.set_user_status(user.id, UserStatus.INACTIVE)

        with pytest.raises(InvalidCredentialsError):
            attempt(engine, memory_store, PASSWORD)

        assert memory_store.get_user(user.id).last_login_at is None
