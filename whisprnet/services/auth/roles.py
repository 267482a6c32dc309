from __future__ import annotations


ROLE_ORDER: dict[str, int] = {
    "user": 1,
    "org_admin": 2,
    "super_admin": 3,
}

# Roles allowed to sign in through the administrative login path.
ADMIN_ROLES = frozenset({"org_admin", "super_admin"})


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)
