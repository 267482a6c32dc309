from __future__ import annotations

import pytest

from whisprnet.apps.api.deps import Principal, ensure_organization_scope
from whisprnet.core.errors import NotFoundError
from whisprnet.domain.models import Insight
from whisprnet.persistence.guards import OrganizationPredicateError, tenant_predicate
from whisprnet.persistence.repos import insights as insights_repo
from whisprnet.persistence.repos.insights import InsightFilters
from whisprnet.services.integrations import store


def _principal(role: str, organization_id: str | None) -> Principal:
    return Principal(
        subject_id="user-1",
        organization_id=organization_id,
        role=role,
        session_id="session-1",
        audience="user",
        email="user@example.com",
    )


def test_tenant_predicate_requires_organization() -> None:
    with pytest.raises(OrganizationPredicateError):
        tenant_predicate(Insight, "")
    assert tenant_predicate(Insight, "org-1") is not None


@pytest.mark.asyncio
async def test_repos_require_organization_predicate() -> None:
    # Guards fire while the statement is built, before any session is touched.
    with pytest.raises(OrganizationPredicateError):
        await insights_repo.list_insights(None, None, InsightFilters(), limit=10, offset=0)  # type: ignore[arg-type]
    with pytest.raises(OrganizationPredicateError):
        await insights_repo.get_insight(None, None, "insight-1")  # type: ignore[arg-type]
    with pytest.raises(OrganizationPredicateError):
        await store.get_config(None, None, "github")  # type: ignore[arg-type]


def test_cross_organization_scope_is_not_found() -> None:
    ensure_organization_scope(_principal("org_admin", "org-1"), "org-1")
    with pytest.raises(NotFoundError):
        ensure_organization_scope(_principal("org_admin", "org-1"), "org-2")
    with pytest.raises(NotFoundError):
        ensure_organization_scope(_principal("user", "org-1"), "org-2")


def test_super_admin_spans_organizations() -> None:
    ensure_organization_scope(_principal("super_admin", None), "org-2")
