"""
auth/roles.py -- Role ladder and permission comparison.

Roles form a total order: user < collaborator < admin. A subject satisfies a
requirement when its rank is at least the required rank.

Unknown roles are handled asymmetrically so that typos fail closed on both
sides: an unknown *subject* role ranks below every known role, and an unknown
*required* role ranks above every known role (nobody satisfies it).
"""

from __future__ import annotations

import math
from enum import Enum


class Role(str, Enum):
    user = "user"
    collaborator = "collaborator"
    admin = "admin"


_RANKS: dict[str, int] = {
    Role.user.value: 0,
    Role.collaborator.value: 1,
    Role.admin.value: 2,
}


def _value(role: str | Role) -> str:
    return role.value if isinstance(role, Role) else role


def subject_rank(role: str | Role) -> float:
    """Rank of a role held by a subject. Unknown roles rank -1."""
    return _RANKS.get(_value(role), -1)


def required_rank(role: str | Role) -> float:
    """Rank demanded by a requirement. Unknown requirements are unsatisfiable."""
    return _RANKS.get(_value(role), math.inf)


def has_permission(user_role: str | Role, required_role: str | Role) -> bool:
    """Return True if ``user_role`` is at or above ``required_role`` on the ladder."""
    return subject_rank(user_role) >= required_rank(required_role)
