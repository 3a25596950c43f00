from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, List, Optional, Protocol

from officegate.logging import get_logger
from officegate.service.errors import ForbiddenError, NotFoundError
from officegate.service.roles import AccessScope, scope_for
from officegate.service.tokens import Principal
from officegate.storage.models import Company, CompanyMembership, OfficeMembership

logger = get_logger(__name__)


class MembershipStore(Protocol):
    def get_company(self, company_id: str) -> Optional[Company]: ...

    def get_office_membership(self, user_id: str) -> Optional[OfficeMembership]: ...

    def get_company_membership(
        self, user_id: str, company_id: str
    ) -> Optional[CompanyMembership]: ...

    def list_company_ids_for_office(self, office_id: str) -> List[str]: ...

    def list_company_ids_for_member(
        self, user_id: str, *, active_only: bool = True
    ) -> List[str]: ...


@dataclass(frozen=True)
class CompanyScope:
    """Companies a principal may act on; ``all_companies`` is the wildcard."""

    all_companies: bool = False
    company_ids: FrozenSet[str] = field(default_factory=frozenset)

    def __contains__(self, company_id: object) -> bool:
        return self.all_companies or company_id in self.company_ids

    def as_dict(self) -> dict:
        return {"all": self.all_companies, "company_ids": sorted(self.company_ids)}


ALL_COMPANIES = CompanyScope(all_companies=True)
NO_COMPANIES = CompanyScope()


class TenantAccessResolver:
    """Decides which tenant companies a principal may touch.

    ``can_access`` resolves only the one company's edges; it never builds
    the full accessible set, since every company-scoped read and write
    calls it.
    """

    def __init__(self, store: MembershipStore) -> None:
        self.store = store
        self.logger = logger

    def _office_membership(self, principal: Principal) -> Optional[OfficeMembership]:
        membership = self.store.get_office_membership(principal.user_id)
        if not membership or not membership.active:
            return None
        return membership

    def accessible_companies(self, principal: Principal) -> CompanyScope:
        scope = scope_for(principal.role)
        if scope is AccessScope.ALL:
            return ALL_COMPANIES
        if scope is AccessScope.OFFICE:
            membership = self._office_membership(principal)
            if not membership:
                return NO_COMPANIES
            return CompanyScope(
                company_ids=frozenset(self.store.list_company_ids_for_office(membership.office_id))
            )
        if scope is AccessScope.COMPANY_LINKS:
            return CompanyScope(
                company_ids=frozenset(
                    self.store.list_company_ids_for_member(principal.user_id, active_only=True)
                )
            )
        return NO_COMPANIES

    def can_access(self, principal: Principal, company_id: str) -> bool:
        scope = scope_for(principal.role)
        if scope is AccessScope.ALL:
            return True
        if scope is AccessScope.OFFICE:
            membership = self._office_membership(principal)
            if not membership:
                return False
            company = self.store.get_company(company_id)
            return bool(company) and company.office_id == membership.office_id
        if scope is AccessScope.COMPANY_LINKS:
            link = self.store.get_company_membership(principal.user_id, company_id)
            return bool(link and link.active)
        return False

    def require_company_access(self, principal: Principal, company_id: str) -> None:
        """Raise ``NotFoundError`` or ``ForbiddenError`` unless access is allowed."""
        if scope_for(principal.role) is AccessScope.ALL:
            return
        if self.store.get_company(company_id) is None:
            raise NotFoundError("company not found", detail={"company_id": company_id})
        if not self.can_access(principal, company_id):
            self.logger.warning(
                "company_access_denied",
                user_id=principal.user_id,
                role=principal.role.value,
                company_id=company_id,
            )
            raise ForbiddenError("no access to this company", detail={"company_id": company_id})
