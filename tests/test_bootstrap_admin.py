from scripts.bootstrap_admin import bootstrap_admin, main, validate_password

from officegate.service.runtime import get_runtime
from officegate.storage.models import UserStatus


class TestBootstrapAdmin:
    def test_creates_active_admin_with_generated_password(self):
        result = bootstrap_admin("Root@Example.com", None)

        user = get_runtime().store.get_user_by_email("root@example.com")
        assert result["status"] == "created"
        assert validate_password(result["generated_password"])
        assert user.role == "system_admin"
        assert user.status == UserStatus.ACTIVE
        get_runtime().auth.passwords.verify(user, result["generated_password"])

    def test_promotes_existing_user(self):
        store = get_runtime().store
        existing = store.create_user("ops@example.com", "hash", role="collaborator")

        result = bootstrap_admin("ops@example.com", None)

        assert result == {"user_id": existing.id, "email": "ops@example.com", "status": "promoted"}
        promoted = store.get_user(existing.id)
        assert promoted.role == "system_admin"
        assert promoted.status == UserStatus.ACTIVE
        assert bootstrap_admin("ops@example.com", None)["status"] == "already_admin"

    def test_dry_run_changes_nothing(self):
        result = bootstrap_admin("root@example.com", "Sup3rsecret", dry_run=True)

        assert result["status"] == "dry_run"
        assert get_runtime().store.get_user_by_email("root@example.com") is None

    def test_cli_rejects_weak_password(self, capsys):
        assert main(["--email", "root@example.com", "--password", "weak"]) == 1
        assert "letter and a digit" in capsys.readouterr().err

    def test_password_for_existing_user_reported_not_applied(self, capsys):
        store = get_runtime().store
        passwords = get_runtime().auth.passwords
        existing = store.create_user(
            "ops@example.com", passwords.hash_password("Original-pass-1"), role="collaborator"
        )

        assert main(["--email", "ops@example.com", "--password", "Replacement-pass-2"]) == 0

        captured = capsys.readouterr()
        assert "promoted: ops@example.com" in captured.out
        assert "--password was not applied" in captured.err
        kept = store.get_user(existing.id)
        assert kept.role == "system_admin"
        passwords.verify(kept, "Original-pass-1")
