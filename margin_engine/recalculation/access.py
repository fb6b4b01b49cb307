"""
Recalculation Access Control

Only Owner, Manager and Service roles may enqueue a margin recalculation.
Hiding the control client-side is not a security boundary; the service
enforces the same check.
"""

from enum import Enum
from typing import FrozenSet, Optional


class Role(str, Enum):
    """Cabinet member roles"""
    OWNER = "Owner"
    MANAGER = "Manager"
    SERVICE = "Service"
    ANALYST = "Analyst"


RECALCULATION_ROLES: FrozenSet[Role] = frozenset({Role.OWNER, Role.MANAGER, Role.SERVICE})


class RecalculationForbidden(PermissionError):
    """Raised when a role without recalculation rights asks for one"""

    def __init__(self, role: Optional[str]):
        self.role = role
        super().__init__(f"Role {role!r} may not trigger margin recalculation")


def can_trigger_recalculation(role: Optional[str]) -> bool:
    """Capability check; unknown and missing roles are denied"""
    if not role:
        return False
    try:
        return Role(role) in RECALCULATION_ROLES
    except ValueError:
        return False


def require_recalculation_role(role: Optional[str]) -> None:
    """Raise RecalculationForbidden unless ``role`` may recalculate"""
    if not can_trigger_recalculation(role):
        raise RecalculationForbidden(role)
