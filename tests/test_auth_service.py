"""Login orchestration across the password, TOTP and token engines."""

import pytest

from officegate.service.auth import AuthService
from officegate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    MfaInvalidCodeError,
    MfaRequiredError,
)
from officegate.service.roles import Role
from officegate.service.tokens import Principal
from officegate.service.totp import generate_code
from officegate.storage.models import UserStatus

PASSWORD = "Ledger-2024-ok"


@pytest.fixture
def auth(memory_store, settings, clock):
    return AuthService(memory_store, settings, clock=clock)


async def register(auth, email="ana@example.com"):
    return await auth.register(email, PASSWORD, "Ana Client")


async def enable_mfa(auth, result, clock):
    principal = auth.tokens.authenticate(result.tokens.access_token)
    enrollment = await auth.begin_mfa_enrollment(principal)
    await auth.confirm_mfa_enrollment(
        principal, generate_code(enrollment.secret, clock.now.timestamp())
    )
    return enrollment.secret


class TestRegister:
    async def test_register_creates_pending_client_with_session(self, auth, memory_store):
        result = await register(auth, "Ana@Example.com")

        assert result.user.email == "ana@example.com"
        assert result.user.role == Role.CLIENT.value
        assert result.user.status == UserStatus.PENDING
        assert len(memory_store.list_sessions(result.user.id)) == 1

    async def test_registration_tokens_refresh(self, auth):
        result = await register(auth)

        refreshed = await auth.refresh(result.tokens.refresh_token)

        assert refreshed.session.id == result.session.id

    async def test_duplicate_email_conflicts(self, auth):
        await register(auth)

        with pytest.raises(ConflictError):
            await register(auth, "ANA@example.com")


class TestLogin:
    async def test_login_issues_tokens(self, auth, clock):
        await register(auth)

        result = await auth.login("ana@example.com", PASSWORD, ip_addr="127.0.0.1")

        assert result.user.last_login_at == clock.now
        assert auth.authenticate(f"Bearer {result.tokens.access_token}").email == "ana@example.com"

    async def test_unknown_email_and_wrong_password_look_alike(self, auth):
        await register(auth)

        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth.login("nobody@example.com", PASSWORD)
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth.login("ana@example.com", "Wrong-pass-1")

        assert unknown.value.message == wrong.value.message

    async def test_lockout_blocks_login(self, auth):
        await register(auth)
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("ana@example.com", "Wrong-pass-1")

        with pytest.raises(AccountLockedError):
            await auth.login("ana@example.com", PASSWORD)

    async def test_failed_code_still_resets_password_counter(self, auth, memory_store, clock):
        result = await register(auth)
        await enable_mfa(auth, result, clock)
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth.login("ana@example.com", "Wrong-pass-1")

        with pytest.raises(MfaInvalidCodeError):
            await auth.login("ana@example.com", PASSWORD, mfa_code="000000")

        assert memory_store.get_user(result.user.id).failed_login_attempts == 0


class TestMfaLogin:
    async def test_password_only_login_returns_challenge(self, auth, memory_store, clock):
        result = await register(auth)
        await enable_mfa(auth, result, clock)
        sessions_before = len(memory_store.list_sessions(result.user.id))

        with pytest.raises(MfaRequiredError) as excinfo:
            await auth.login("ana@example.com", PASSWORD)

        assert set(excinfo.value.detail) == {"mfa_token", "expires_in"}
        assert excinfo.value.detail["expires_in"] == 300
        assert len(memory_store.list_sessions(result.user.id)) == sessions_before

    async def test_complete_with_challenge_token(self, auth, clock):
        result = await register(auth)
        secret = await enable_mfa(auth, result, clock)
        with pytest.raises(MfaRequiredError) as excinfo:
            await auth.login("ana@example.com", PASSWORD)

        completed = await auth.complete_mfa_login(
            excinfo.value.detail["mfa_token"], generate_code(secret, clock.now.timestamp())
        )

        assert completed.user.id == result.user.id
        assert completed.session.id != result.session.id

    async def test_inline_code_logs_in_directly(self, auth, clock):
        result = await register(auth)
        secret = await enable_mfa(auth, result, clock)

        completed = await auth.login(
            "ana@example.com", PASSWORD, mfa_code=generate_code(secret, clock.now.timestamp())
        )

        assert completed.user.mfa_enabled

    async def test_expired_challenge_rejected(self, auth, clock):
        result = await register(auth)
        secret = await enable_mfa(auth, result, clock)
        with pytest.raises(MfaRequiredError) as excinfo:
            await auth.login("ana@example.com", PASSWORD)
        clock.advance(minutes=6)

        with pytest.raises(MfaRequiredError):
            await auth.complete_mfa_login(
                excinfo.value.detail["mfa_token"], generate_code(secret, clock.now.timestamp())
            )

    async def test_challenge_is_not_a_bearer_token(self, auth, clock):
        result = await register(auth)
        await enable_mfa(auth, result, clock)
        with pytest.raises(MfaRequiredError) as excinfo:
            await auth.login("ana@example.com", PASSWORD)

        with pytest.raises(AuthenticationError):
            auth.authenticate(f"Bearer {excinfo.value.detail['mfa_token']}")


class TestAccountManagement:
    async def test_deactivate_ends_sessions_and_blocks_login(self, auth):
        result = await register(auth)

        user = await auth.deactivate_user(result.user.id)

        assert user.status == UserStatus.INACTIVE
        with pytest.raises(InvalidRefreshTokenError):
            await auth.refresh(result.tokens.refresh_token)
        with pytest.raises(InvalidCredentialsError):
            await auth.login("ana@example.com", PASSWORD)

    async def test_logout_all_counts_sessions(self, auth):
        result = await register(auth)
        await auth.login("ana@example.com", PASSWORD)
        principal = auth.authenticate(f"Bearer {result.tokens.access_token}")

        assert await auth.logout_all(principal) == 2

    async def test_profile_and_mfa_status(self, auth, clock):
        result = await register(auth)
        principal = auth.authenticate(f"Bearer {result.tokens.access_token}")

        assert auth.profile(principal).name == "Ana Client"
        assert not auth.mfa_status(principal).enabled

        await enable_mfa(auth, result, clock)
        assert auth.mfa_status(principal).enabled

    def test_authorize_delegates_to_role_table(self, auth):
        staff = Principal(user_id="u1", email="s@example.com", role=Role.COLLABORATOR)
        assert auth.authorize(staff, [Role.COLLABORATOR])
        assert not auth.authorize(staff, [Role.OFFICE_ADMIN])
