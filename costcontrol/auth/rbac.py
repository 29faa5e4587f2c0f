"""Role based access policy for every state-changing financial operation."""

from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy.orm import Session

from ..core.errors import NotFoundError, PermissionDeniedError
from ..models.models import User


class Role(str, Enum):
    OWNER = "OWNER"
    PROJECT_MANAGER = "PROJECT_MANAGER"
    ACCOUNTANT = "ACCOUNTANT"
    CLERK = "CLERK"
    SUPERVISOR = "SUPERVISOR"
    SUPPLIER = "SUPPLIER"
    INVESTOR = "INVESTOR"


class Action(str, Enum):
    VIEW_FINANCES = "view_finances"
    MANAGE_PROJECT = "manage_project"
    ARCHIVE_PROJECT = "archive_project"
    DELETE_PROJECT = "delete_project"
    MANAGE_PHASES = "manage_phases"
    MANAGE_PHASE_BUDGET = "manage_phase_budget"
    MANAGE_FLOORS = "manage_floors"
    RECORD_SPENDING = "record_spending"
    APPROVE_SPENDING = "approve_spending"
    CREATE_MATERIAL_REQUEST = "create_material_request"
    APPROVE_MATERIAL_REQUEST = "approve_material_request"
    CREATE_PURCHASE_ORDER = "create_purchase_order"
    CONFIRM_DELIVERY = "confirm_delivery"
    REQUEST_CONTINGENCY_DRAW = "request_contingency_draw"
    APPROVE_CONTINGENCY_DRAW = "approve_contingency_draw"
    REQUEST_BUDGET_CHANGE = "request_budget_change"
    APPROVE_BUDGET_CHANGE = "approve_budget_change"
    MANAGE_INVESTORS = "manage_investors"
    RECALCULATE_FINANCES = "recalculate_finances"


_MANAGEMENT = frozenset({Role.OWNER, Role.PROJECT_MANAGER})
_FINANCE = frozenset({Role.OWNER, Role.PROJECT_MANAGER, Role.ACCOUNTANT})
_SITE = frozenset({Role.OWNER, Role.PROJECT_MANAGER, Role.CLERK, Role.SUPERVISOR})

POLICY: Dict[Action, FrozenSet[Role]] = {
    Action.VIEW_FINANCES: _FINANCE | {Role.INVESTOR},
    Action.MANAGE_PROJECT: _MANAGEMENT,
    Action.ARCHIVE_PROJECT: frozenset({Role.OWNER}),
    Action.DELETE_PROJECT: frozenset({Role.OWNER}),
    Action.MANAGE_PHASES: _MANAGEMENT,
    Action.MANAGE_PHASE_BUDGET: _MANAGEMENT,
    Action.MANAGE_FLOORS: _MANAGEMENT,
    Action.RECORD_SPENDING: _SITE | {Role.ACCOUNTANT},
    Action.APPROVE_SPENDING: _FINANCE,
    Action.CREATE_MATERIAL_REQUEST: _SITE,
    Action.APPROVE_MATERIAL_REQUEST: _MANAGEMENT,
    Action.CREATE_PURCHASE_ORDER: _FINANCE,
    Action.CONFIRM_DELIVERY: _SITE,
    Action.REQUEST_CONTINGENCY_DRAW: _FINANCE,
    Action.APPROVE_CONTINGENCY_DRAW: frozenset({Role.OWNER}),
    Action.REQUEST_BUDGET_CHANGE: _FINANCE,
    Action.APPROVE_BUDGET_CHANGE: frozenset({Role.OWNER}),
    Action.MANAGE_INVESTORS: frozenset({Role.OWNER, Role.ACCOUNTANT}),
    Action.RECALCULATE_FINANCES: _FINANCE,
}


def _role_of(actor: User) -> Optional[Role]:
    try:
        return Role((actor.role or "").upper())
    except ValueError:
        return None


def has_permission(actor: Optional[User], action: Action) -> bool:
    if actor is None or not actor.is_active:
        return False
    role = _role_of(actor)
    if role is None:
        return False
    return role in POLICY.get(action, frozenset())


def ensure_permission(actor: Optional[User], action: Action) -> None:
    if not has_permission(actor, action):
        raise PermissionDeniedError(
            "Operation not permitted for your role",
            action=action.value,
        )


def get_user_profile(session: Session, actor_id: int) -> User:
    user = session.get(User, actor_id)
    if user is None:
        raise NotFoundError("User not found", user_id=actor_id)
    return user
