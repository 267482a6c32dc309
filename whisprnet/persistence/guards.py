from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class OrganizationPredicateError(RuntimeError):
    # Raised when an org-scoped query is built without an organization id.
    message: str


def require_organization_id(organization_id: str | None) -> None:
    if not organization_id:
        raise OrganizationPredicateError("Organization predicate required but organization_id is missing")


def tenant_predicate(model, organization_id: str) -> object:
    # Build organization predicates through a single helper to guarantee guard coverage.
    require_organization_id(organization_id)
    return model.organization_id == organization_id
