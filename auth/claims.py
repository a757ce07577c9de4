"""
auth/claims.py -- Claim merging and the claim-set authorization predicate.

A user's effective claims are the union of their role's claims and the claims
assigned to them directly, deduplicated by NAME (two Claim rows that share a
name count once). The returned list comes from a set: callers may only test
membership, never rely on order.

authorize() is pure: it has no notion of "unauthenticated". Whether a verified
claim set exists at all is decided earlier, at the request boundary.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.models import Claim, User

# Lets an admin replace any user's direct claims. Seeded on the admin role.
MANAGE_CLAIMS = "users.manage_claims"


def merge_claims(role_claims: Iterable[Claim], user_claims: Iterable[Claim]) -> list[str]:
    names = {claim.name for claim in role_claims}
    names.update(claim.name for claim in user_claims)
    return list(names)


def effective_claims(user: User) -> list[str]:
    """Merged claim names for a user hydrated with its role."""
    role_claims = user.role.claims if user.role is not None else []
    return merge_claims(role_claims, user.claims)


def authorize(granted: Iterable[str], required: Iterable[str]) -> bool:
    """Allow iff every required claim is in the granted set."""
    return set(required) <= set(granted)
