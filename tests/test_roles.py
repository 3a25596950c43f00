import pytest

from officegate.service.roles import AccessScope, Role, authorize, parse_role, scope_for


class TestAuthorize:
    def test_empty_requirement_admits_any_role(self):
        assert authorize(Role.CLIENT, [])
        assert authorize("collaborator", ())

    def test_listed_role_admitted(self):
        assert authorize(Role.OFFICE_ADMIN, [Role.OFFICE_ADMIN, Role.COLLABORATOR])
        assert authorize("collaborator", ["office_admin", "collaborator"])

    def test_unlisted_role_refused(self):
        assert not authorize(Role.CLIENT, [Role.OFFICE_ADMIN])
        assert not authorize(Role.COLLABORATOR, [Role.OFFICE_ADMIN])

    @pytest.mark.parametrize("required", [[Role.CLIENT], [Role.OFFICE_ADMIN], ["collaborator"]])
    def test_system_admin_admitted_everywhere(self, required):
        assert authorize(Role.SYSTEM_ADMIN, required)

    def test_unknown_role_refused(self):
        assert not authorize("superuser", [Role.CLIENT])
        assert not authorize(None, [Role.CLIENT])


class TestScopes:
    def test_precedence_table(self):
        assert scope_for(Role.SYSTEM_ADMIN) is AccessScope.ALL
        assert scope_for("office_admin") is AccessScope.OFFICE
        assert scope_for("collaborator") is AccessScope.OFFICE
        assert scope_for("client") is AccessScope.COMPANY_LINKS
        assert scope_for("auditor") is None

    def test_parse_role_normalises(self):
        assert parse_role(" Client ") is Role.CLIENT
        assert parse_role("") is None
