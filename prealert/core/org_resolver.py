# prealert/core/org_resolver.py
"""
Inbound address → organization.

Only the FIRST recipient of the ``to`` field is considered. Several
recipients would make the target organization ambiguous, so the policy
is to route by the first one and ignore the rest.
"""
from __future__ import annotations

from prealert.core.errors import OrgNotFoundError
from prealert.core.ports import OrganizationRepository


def org_key_from_recipients(email_to: str) -> str:
    """``"boone@alerts.example, x@y"`` → ``"boone"``"""
    first = (email_to or "").split(",")[0].strip()
    return first.split("@")[0]


async def resolve_org_id(repo: OrganizationRepository, email_to: str) -> str:
    """Return the org_id whose org_key matches the first recipient's local-part."""
    org_key = org_key_from_recipients(email_to)
    if not org_key:
        raise OrgNotFoundError(org_key)

    org = await repo.get_by_key(org_key)
    if org is None:
        raise OrgNotFoundError(org_key)
    return org.org_id
