"""Budget transfers between categories and adjustments to a category's ceiling."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from sqlalchemy.orm import Session

from ..auth.rbac import Action, Role, ensure_permission
from ..constants import ADJUSTMENT_TYPES, BUDGET_CATEGORIES, BUDGET_CATEGORY_COLUMNS, BUDGET_CATEGORY_LABELS
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.models import BudgetAdjustment, BudgetTransfer, Project, User
from ..utils.money import ZERO, as_decimal, floor_zero, format_amount, money_sum, quantize
from .audit import audit_log
from .budget_model import budget_from_project
from .consistency import commitment_guard
from .finance import active_phases, calculate_total_phase_budgets, get_budget_category_spending, get_project
from .notifications import notify_roles
from .recalculation_queue import schedule_recalculation

logger = logging.getLogger(__name__)

BudgetChange = Union[BudgetTransfer, BudgetAdjustment]

# category key -> EnhancedBudget field
_BUDGET_FIELDS = {
    "dcc": "direct_construction_costs",
    "preconstruction": "pre_construction_costs",
    "indirect": "indirect_costs",
    "contingency": "contingency_reserve",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _require_budget(project: Project) -> None:
    if budget_from_project(project).total <= ZERO:
        raise ValidationError("Project has no budget to change", project_id=project.id)


def _check_category(category: Any, field: str) -> str:
    if category not in BUDGET_CATEGORIES:
        raise ValidationError(f"Unknown budget category for {field}", **{field: category})
    return category


def _category_budget(project: Project, category: str) -> Decimal:
    return quantize(as_decimal(getattr(project, BUDGET_CATEGORY_COLUMNS[category])))


def _category_floor(session: Session, project: Project, category: str, spending: Dict[str, Decimal]) -> Decimal:
    """Lowest ceiling a category may have: its spend, and for dcc also what phases hold."""
    if category == "dcc":
        return max(spending["dcc"], calculate_total_phase_budgets(session, project.id))
    return spending[category]


def get_category_summary(session: Session, project_id: int) -> Dict[str, dict]:
    project = get_project(session, project_id)
    spending = get_budget_category_spending(session, project.id)
    allocated = calculate_total_phase_budgets(session, project.id)
    summary = {}
    for category in BUDGET_CATEGORIES:
        budget = _category_budget(project, category)
        floor = _category_floor(session, project, category, spending)
        summary[category] = {
            "label": BUDGET_CATEGORY_LABELS[category],
            "budget": budget,
            "spent": spending[category],
            "allocated_to_phases": allocated if category == "dcc" else None,
            "remaining": quantize(floor_zero(budget - floor)),
        }
    return summary


def _positive_amount(value: Any) -> Decimal:
    amount = quantize(as_decimal(value))
    if amount <= ZERO:
        raise ValidationError("Amount must be greater than zero")
    return amount


def _reason(payload: Mapping[str, Any]) -> str:
    reason = (payload.get("reason") or "").strip()
    if not reason:
        raise ValidationError("A reason is required")
    return reason


def _validate_transfer(session: Session, project: Project, source: str, destination: str, amount: Decimal) -> None:
    if source == destination:
        raise ValidationError("Source and destination categories must differ", category=source)
    if destination == "contingency":
        raise ValidationError("Budget cannot be transferred into the contingency reserve")
    summary = get_category_summary(session, project.id)
    if source == "contingency" and summary["contingency"]["spent"] > ZERO:
        raise ValidationError(
            "Contingency cannot be transferred once it has been drawn on",
            contingency_used=summary["contingency"]["spent"],
        )
    remaining = summary[source]["remaining"]
    if amount > remaining:
        raise ValidationError(
            f"Insufficient {BUDGET_CATEGORY_LABELS[source]} budget. "
            f"available: {format_amount(remaining)}, required: {format_amount(amount)}",
            available=remaining,
            required=amount,
            category=source,
        )


def _affected_phases(session: Session, project_id: int, *categories: str) -> List[int]:
    if "dcc" not in categories:
        return []
    return [phase.id for phase in active_phases(session, project_id)]


def _get_change(session: Session, model, change_id: int) -> BudgetChange:
    change = session.get(model, change_id)
    if change is None:
        raise NotFoundError("Budget change not found", change_id=change_id)
    return change


def _ensure_pending(change: BudgetChange) -> None:
    if change.status != "pending":
        raise ConflictError(f"Budget change is already {change.status}", change_id=change.id, status=change.status)


def _notify_requester(session: Session, change: BudgetChange, kind: str, outcome: str) -> None:
    notify_roles(
        session,
        label=f"budget_{kind}.{outcome}",
        title=f"Budget {kind} {outcome}",
        message=f"Your budget {kind} of {format_amount(change.amount)} was {outcome}.",
        role_names=[],
        user_ids=[change.requested_by_user_id],
        category="budget",
        link_url=f"/budget-{kind}s/{change.id}",
    )


def request_budget_transfer(
    session: Session, actor: User, project_id: int, payload: Mapping[str, Any]
) -> BudgetTransfer:
    ensure_permission(actor, Action.REQUEST_BUDGET_CHANGE)
    project = get_project(session, project_id, include_archived=False)
    _require_budget(project)
    source = _check_category(payload.get("from_category"), "from_category")
    destination = _check_category(payload.get("to_category"), "to_category")
    amount = _positive_amount(payload.get("amount"))
    reason = _reason(payload)
    _validate_transfer(session, project, source, destination, amount)

    now = _utcnow()
    transfer = BudgetTransfer(
        project_id=project.id,
        from_category=source,
        to_category=destination,
        amount=amount,
        reason=reason,
        status="pending",
        requested_by_user_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    session.add(transfer)
    session.commit()
    session.refresh(transfer)
    audit_log(
        session,
        actor.id,
        "budget_transfer.request",
        "budget_transfer",
        transfer.id,
        project_id=project.id,
        changes={"from": source, "to": destination, "amount": amount},
    )
    notify_roles(
        session,
        label="budget_transfer.requested",
        title="Budget transfer awaiting approval",
        message=(
            f"{format_amount(amount)} from {BUDGET_CATEGORY_LABELS[source]} "
            f"to {BUDGET_CATEGORY_LABELS[destination]}: {reason}"
        ),
        role_names=[Role.OWNER.value],
        category="budget",
        link_url=f"/budget-transfers/{transfer.id}",
    )
    return transfer


def approve_budget_transfer(
    session: Session, actor: User, transfer_id: int, notes: Optional[str] = None
) -> BudgetTransfer:
    """Approve and execute a transfer. The project total is unchanged."""
    ensure_permission(actor, Action.APPROVE_BUDGET_CHANGE)
    transfer = _get_change(session, BudgetTransfer, transfer_id)
    _ensure_pending(transfer)
    project = get_project(session, transfer.project_id, include_archived=False)
    amount = quantize(as_decimal(transfer.amount))

    with commitment_guard.hold(project.id):
        _validate_transfer(session, project, transfer.from_category, transfer.to_category, amount)
        before = budget_from_project(project).as_dict()
        source_column = BUDGET_CATEGORY_COLUMNS[transfer.from_category]
        destination_column = BUDGET_CATEGORY_COLUMNS[transfer.to_category]
        setattr(project, source_column, _category_budget(project, transfer.from_category) - amount)
        setattr(project, destination_column, _category_budget(project, transfer.to_category) + amount)

        now = _utcnow()
        project.updated_at = now
        transfer.status = "approved"
        transfer.approved_by_user_id = actor.id
        transfer.decision_notes = notes
        transfer.approved_at = now
        transfer.executed_at = now
        transfer.updated_at = now
        session.commit()
        session.refresh(transfer)

    audit_log(
        session,
        actor.id,
        "budget_transfer.approve",
        "budget_transfer",
        transfer.id,
        project_id=project.id,
        changes={"before": before, "after": budget_from_project(project).as_dict()},
    )
    schedule_recalculation(
        session, phases=_affected_phases(session, project.id, transfer.from_category, transfer.to_category)
    )
    _notify_requester(session, transfer, "transfer", "approved")
    return transfer


def reject_budget_transfer(
    session: Session, actor: User, transfer_id: int, notes: Optional[str] = None
) -> BudgetTransfer:
    ensure_permission(actor, Action.APPROVE_BUDGET_CHANGE)
    transfer = _get_change(session, BudgetTransfer, transfer_id)
    _ensure_pending(transfer)
    now = _utcnow()
    transfer.status = "rejected"
    transfer.approved_by_user_id = actor.id
    transfer.decision_notes = notes
    transfer.rejected_at = now
    transfer.updated_at = now
    session.commit()
    session.refresh(transfer)
    audit_log(
        session,
        actor.id,
        "budget_transfer.reject",
        "budget_transfer",
        transfer.id,
        project_id=transfer.project_id,
        changes={"notes": notes},
    )
    _notify_requester(session, transfer, "transfer", "rejected")
    return transfer


def _adjusted_budget(
    session: Session, project: Project, category: str, adjustment_type: str, amount: Decimal
) -> Decimal:
    current = _category_budget(project, category)
    if adjustment_type == "increase":
        return quantize(current + amount)
    new_budget = quantize(current - amount)
    floor = _category_floor(session, project, category, get_budget_category_spending(session, project.id))
    if new_budget < floor:
        raise ValidationError(
            f"{BUDGET_CATEGORY_LABELS[category]} cannot be reduced below {format_amount(floor)} already spent or allocated. "
            f"available: {format_amount(floor_zero(current - floor))}, required: {format_amount(amount)}",
            available=floor_zero(current - floor),
            required=amount,
            category=category,
        )
    return new_budget


def request_budget_adjustment(
    session: Session, actor: User, project_id: int, payload: Mapping[str, Any]
) -> BudgetAdjustment:
    ensure_permission(actor, Action.REQUEST_BUDGET_CHANGE)
    project = get_project(session, project_id, include_archived=False)
    _require_budget(project)
    category = _check_category(payload.get("category"), "category")
    adjustment_type = payload.get("adjustment_type")
    if adjustment_type not in ADJUSTMENT_TYPES:
        raise ValidationError("Adjustment type must be increase or decrease", adjustment_type=adjustment_type)
    amount = _positive_amount(payload.get("amount"))
    reason = _reason(payload)
    new_budget = _adjusted_budget(session, project, category, adjustment_type, amount)

    now = _utcnow()
    adjustment = BudgetAdjustment(
        project_id=project.id,
        category=category,
        adjustment_type=adjustment_type,
        amount=amount,
        current_budget=_category_budget(project, category),
        new_budget=new_budget,
        reason=reason,
        status="pending",
        requested_by_user_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    session.add(adjustment)
    session.commit()
    session.refresh(adjustment)
    audit_log(
        session,
        actor.id,
        "budget_adjustment.request",
        "budget_adjustment",
        adjustment.id,
        project_id=project.id,
        changes={"category": category, "type": adjustment_type, "amount": amount, "new_budget": new_budget},
    )
    notify_roles(
        session,
        label="budget_adjustment.requested",
        title="Budget adjustment awaiting approval",
        message=f"{adjustment_type.capitalize()} {BUDGET_CATEGORY_LABELS[category]} by {format_amount(amount)}: {reason}",
        role_names=[Role.OWNER.value],
        category="budget",
        link_url=f"/budget-adjustments/{adjustment.id}",
    )
    return adjustment


def approve_budget_adjustment(
    session: Session, actor: User, adjustment_id: int, notes: Optional[str] = None
) -> BudgetAdjustment:
    """Approve and execute an adjustment. The project total moves by the same amount."""
    ensure_permission(actor, Action.APPROVE_BUDGET_CHANGE)
    adjustment = _get_change(session, BudgetAdjustment, adjustment_id)
    _ensure_pending(adjustment)
    project = get_project(session, adjustment.project_id, include_archived=False)
    amount = quantize(as_decimal(adjustment.amount))
    signed = amount if adjustment.adjustment_type == "increase" else -amount

    with commitment_guard.hold(project.id):
        new_budget = _adjusted_budget(session, project, adjustment.category, adjustment.adjustment_type, amount)
        before = budget_from_project(project).as_dict()
        setattr(project, BUDGET_CATEGORY_COLUMNS[adjustment.category], new_budget)
        project.budget_total = quantize(as_decimal(project.budget_total) + signed)

        now = _utcnow()
        project.updated_at = now
        adjustment.current_budget = before[_BUDGET_FIELDS[adjustment.category]]
        adjustment.new_budget = new_budget
        adjustment.status = "approved"
        adjustment.approved_by_user_id = actor.id
        adjustment.decision_notes = notes
        adjustment.approved_at = now
        adjustment.executed_at = now
        adjustment.updated_at = now
        session.commit()
        session.refresh(adjustment)

    audit_log(
        session,
        actor.id,
        "budget_adjustment.approve",
        "budget_adjustment",
        adjustment.id,
        project_id=project.id,
        changes={"before": before, "after": budget_from_project(project).as_dict()},
    )
    schedule_recalculation(session, phases=_affected_phases(session, project.id, adjustment.category))
    _notify_requester(session, adjustment, "adjustment", "approved")
    return adjustment


def reject_budget_adjustment(
    session: Session, actor: User, adjustment_id: int, notes: Optional[str] = None
) -> BudgetAdjustment:
    ensure_permission(actor, Action.APPROVE_BUDGET_CHANGE)
    adjustment = _get_change(session, BudgetAdjustment, adjustment_id)
    _ensure_pending(adjustment)
    now = _utcnow()
    adjustment.status = "rejected"
    adjustment.approved_by_user_id = actor.id
    adjustment.decision_notes = notes
    adjustment.rejected_at = now
    adjustment.updated_at = now
    session.commit()
    session.refresh(adjustment)
    audit_log(
        session,
        actor.id,
        "budget_adjustment.reject",
        "budget_adjustment",
        adjustment.id,
        project_id=adjustment.project_id,
        changes={"notes": notes},
    )
    _notify_requester(session, adjustment, "adjustment", "rejected")
    return adjustment


def get_transfer_history(session: Session, project_id: int) -> dict:
    get_project(session, project_id)
    transfers = (
        session.query(BudgetTransfer)
        .filter(BudgetTransfer.project_id == project_id)
        .order_by(BudgetTransfer.created_at.desc())
        .all()
    )
    executed = [transfer for transfer in transfers if transfer.status == "approved"]
    net = {category: ZERO for category in BUDGET_CATEGORIES}
    for transfer in executed:
        amount = as_decimal(transfer.amount)
        net[transfer.from_category] -= amount
        net[transfer.to_category] += amount
    return {
        "project_id": project_id,
        "transfers": transfers,
        "pending_count": sum(1 for transfer in transfers if transfer.status == "pending"),
        "total_transferred": money_sum(transfer.amount for transfer in executed),
        "net_by_category": {category: quantize(value) for category, value in net.items()},
    }


def get_adjustment_history(session: Session, project_id: int) -> dict:
    get_project(session, project_id)
    adjustments = (
        session.query(BudgetAdjustment)
        .filter(BudgetAdjustment.project_id == project_id)
        .order_by(BudgetAdjustment.created_at.desc())
        .all()
    )
    executed = [adjustment for adjustment in adjustments if adjustment.status == "approved"]
    increases = money_sum(a.amount for a in executed if a.adjustment_type == "increase")
    decreases = money_sum(a.amount for a in executed if a.adjustment_type == "decrease")
    return {
        "project_id": project_id,
        "adjustments": adjustments,
        "pending_count": sum(1 for adjustment in adjustments if adjustment.status == "pending"),
        "total_increases": increases,
        "total_decreases": decreases,
        "net_change": quantize(increases - decreases),
    }
