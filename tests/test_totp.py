"""TOTP code generation, window checks and the enrollment lifecycle."""

import base64
from datetime import datetime, timezone

import pytest

from officegate.service.errors import (
    MfaAlreadyEnabledError,
    MfaInvalidCodeError,
    MfaNotEnabledError,
    MfaNotEnrolledError,
)
from officegate.service.totp import TotpEngine, generate_code, generate_secret

# RFC 6238 appendix B seed for SHA1
RFC_SECRET = base64.b32encode(b"12345678901234567890").decode()
NOW = 1_700_000_010.0


@pytest.fixture
def engine(memory_store):
    return TotpEngine(memory_store, issuer="Officegate", time_source=lambda: NOW)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("mfa@example.com", "argon2-hash-placeholder")


def enroll(engine, store, user):
    enrollment = engine.begin_enrollment(user)
    pending = store.get_user(user.id)
    return enrollment, engine.confirm_enrollment(pending, generate_code(enrollment.secret, NOW))


class TestCodeGeneration:
    def test_rfc6238_vectors(self):
        assert generate_code(RFC_SECRET, 59, digits=8) == "94287082"
        assert generate_code(RFC_SECRET, 1111111109, digits=8) == "07081804"
        assert generate_code(RFC_SECRET, 59) == "287082"

    def test_secret_is_base32_without_padding(self):
        secret = generate_secret()

        assert "=" not in secret
        assert len(base64.b32decode(secret + "=" * ((8 - len(secret) % 8) % 8))) == 20

    def test_invalid_secret_yields_no_code(self):
        assert generate_code("not base32 !!", NOW) == ""


class TestWindow:
    def test_current_and_adjacent_steps_accepted(self, engine):
        for offset in (-30, 0, 30):
            code = generate_code(RFC_SECRET, NOW + offset)
            assert engine.check_code(RFC_SECRET, code, at=NOW)

    def test_codes_three_steps_away_rejected(self, engine):
        for offset in (-90, 90):
            code = generate_code(RFC_SECRET, NOW + offset)
            assert not engine.check_code(RFC_SECRET, code, at=NOW)

    def test_malformed_codes_rejected(self, engine):
        assert not engine.check_code(RFC_SECRET, "", at=NOW)
        assert not engine.check_code(RFC_SECRET, "12345", at=NOW)
        assert not engine.check_code(RFC_SECRET, "abcdef", at=NOW)

    def test_same_code_accepted_twice_within_window(self, engine):
        code = generate_code(RFC_SECRET, NOW)

        assert engine.check_code(RFC_SECRET, code, at=NOW)
        assert engine.check_code(RFC_SECRET, code, at=NOW + 1)


class TestEnrollment:
    def test_begin_returns_uri_and_qr(self, engine, memory_store, user):
        enrollment = engine.begin_enrollment(user)

        assert enrollment.otpauth_uri.startswith("otpauth://totp/Officegate:mfa@example.com?")
        assert f"secret={enrollment.secret}" in enrollment.otpauth_uri
        assert "issuer=Officegate" in enrollment.otpauth_uri
        assert enrollment.qr_code.startswith("data:image/png;base64,")

        stored = memory_store.get_user(user.id)
        assert stored.mfa_secret == enrollment.secret
        assert not stored.mfa_enabled
        assert engine.status(stored).pending

    def test_secret_encrypted_at_rest(self, engine, memory_store, user):
        enrollment = engine.begin_enrollment(user)

        assert memory_store.users[user.id].mfa_secret != enrollment.secret

    def test_confirm_enables(self, engine, memory_store, user):
        _, enabled = enroll(engine, memory_store, user)

        assert enabled.mfa_enabled
        status = engine.status(enabled)
        assert status.enabled
        assert status.activated_at == datetime.fromtimestamp(NOW, tz=timezone.utc)
        assert not status.pending

    def test_confirm_with_bad_code_keeps_pending(self, engine, memory_store, user):
        enrollment = engine.begin_enrollment(user)
        pending = memory_store.get_user(user.id)

        with pytest.raises(MfaInvalidCodeError):
            engine.confirm_enrollment(pending, generate_code(enrollment.secret, NOW + 300))

        assert not memory_store.get_user(user.id).mfa_enabled

    def test_confirm_without_setup(self, engine, user):
        with pytest.raises(MfaNotEnrolledError):
            engine.confirm_enrollment(user, "123456")

    def test_setup_refused_when_enabled(self, engine, memory_store, user):
        _, enabled = enroll(engine, memory_store, user)

        with pytest.raises(MfaAlreadyEnabledError):
            engine.begin_enrollment(enabled)

    def test_setup_again_replaces_pending_secret(self, engine, memory_store, user):
        first = engine.begin_enrollment(user)
        second = engine.begin_enrollment(memory_store.get_user(user.id))

        assert first.secret != second.secret
        assert memory_store.get_user(user.id).mfa_secret == second.secret

    def test_cancel_clears_pending_secret(self, engine, memory_store, user):
        engine.begin_enrollment(user)

        cleared = engine.cancel_enrollment(memory_store.get_user(user.id))

        assert cleared.mfa_secret is None
        assert not engine.status(cleared).pending


class TestLoginAndDisable:
    def test_verify_login(self, engine, memory_store, user):
        enrollment, enabled = enroll(engine, memory_store, user)

        engine.verify_login(enabled, generate_code(enrollment.secret, NOW - 30))
        with pytest.raises(MfaInvalidCodeError):
            engine.verify_login(enabled, generate_code(enrollment.secret, NOW + 90))

    def test_verify_login_requires_enabled_factor(self, engine, user):
        with pytest.raises(MfaNotEnabledError):
            engine.verify_login(user, "123456")

    def test_disable_with_bad_code_stays_enabled(self, engine, memory_store, user):
        enrollment, enabled = enroll(engine, memory_store, user)

        with pytest.raises(MfaInvalidCodeError):
            engine.disable(enabled, generate_code(enrollment.secret, NOW + 600))

        assert memory_store.get_user(user.id).mfa_enabled

    def test_disable_clears_secret_and_timestamp(self, engine, memory_store, user):
        enrollment, enabled = enroll(engine, memory_store, user)

        disabled = engine.disable(enabled, generate_code(enrollment.secret, NOW))

        assert not disabled.mfa_enabled
        assert disabled.mfa_secret is None
        assert disabled.mfa_enabled_at is None

    def test_disable_when_not_enabled(self, engine, user):
        with pytest.raises(MfaNotEnabledError):
            engine.disable(user, "123456")
