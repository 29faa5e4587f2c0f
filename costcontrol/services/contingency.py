from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from ..auth.rbac import Action, Role, ensure_permission
from ..config import settings
from ..constants import CONTINGENCY_DRAW_TYPES
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.models import ContingencyDraw, User
from ..utils.money import ZERO, as_decimal, format_amount, money_sum, percent_of, quantize
from .audit import audit_log
from .budget_model import budget_from_project
from .capital import validate_capital_availability
from .consistency import commitment_guard
from .finance import calculate_contingency_used, get_project, refresh_project_finances
from .notifications import notify_roles

logger = logging.getLogger(__name__)

DRAW_TRANSITIONS: Dict[str, set] = {
    "pending": {"approved", "rejected"},
    "approved": set(),
    "rejected": set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_draw(session: Session, draw_id: int) -> ContingencyDraw:
    draw = session.get(ContingencyDraw, draw_id)
    if draw is None or draw.deleted_at is not None:
        raise NotFoundError("Contingency draw not found", draw_id=draw_id)
    return draw


def _transition(draw: ContingencyDraw, target: str) -> None:
    if target not in DRAW_TRANSITIONS.get(draw.status, set()):
        raise ConflictError(f"Contingency draw is already {draw.status}", draw_id=draw.id, status=draw.status)
    draw.status = target
    draw.updated_at = _utcnow()


def get_contingency_summary(session: Session, project_id: int) -> dict:
    project = get_project(session, project_id)
    budgeted = budget_from_project(project).contingency_reserve
    used = calculate_contingency_used(session, project.id)
    pending = money_sum(
        row[0]
        for row in session.query(ContingencyDraw.amount).filter(
            ContingencyDraw.project_id == project.id,
            ContingencyDraw.deleted_at.is_(None),
            ContingencyDraw.status == "pending",
        )
    )
    remaining = quantize(budgeted - used)
    return {
        "project_id": project.id,
        "budgeted": budgeted,
        "used": used,
        "pending": pending,
        "remaining": remaining,
        "usage_percent": percent_of(used, budgeted),
    }


def _check_amount(summary: dict, amount: Decimal) -> Optional[str]:
    """Raise when the draw does not fit; return a warning inside the warning band."""
    remaining = summary["remaining"]
    if amount > remaining:
        raise ValidationError(
            f"Insufficient contingency. available: {format_amount(remaining)}, required: {format_amount(amount)}",
            available=remaining,
            required=amount,
            budgeted=summary["budgeted"],
            used=summary["used"],
        )
    usage_after = percent_of(summary["used"] + amount, summary["budgeted"])
    threshold = Decimal(settings.contingency_warning_threshold)
    if threshold <= usage_after < Decimal("100"):
        return (
            f"This draw brings contingency usage to {format_amount(usage_after)}% "
            f"of the {format_amount(summary['budgeted'])} reserve"
        )
    return None


def request_contingency_draw(
    session: Session, actor: User, project_id: int, payload: Mapping[str, Any]
) -> Tuple[ContingencyDraw, Optional[str]]:
    ensure_permission(actor, Action.REQUEST_CONTINGENCY_DRAW)
    project = get_project(session, project_id, include_archived=False)
    draw_type = payload.get("draw_type")
    if draw_type not in CONTINGENCY_DRAW_TYPES:
        raise ValidationError("Unknown contingency draw type", draw_type=draw_type)
    amount = quantize(as_decimal(payload.get("amount")))
    if amount <= ZERO:
        raise ValidationError("Draw amount must be greater than zero")
    reason = (payload.get("reason") or "").strip()
    if not reason:
        raise ValidationError("A reason is required for a contingency draw")

    summary = get_contingency_summary(session, project.id)
    if summary["budgeted"] <= ZERO:
        raise ValidationError("Project has no contingency reserve", project_id=project.id)
    warning = _check_amount(summary, amount)

    now = _utcnow()
    draw = ContingencyDraw(
        project_id=project.id,
        draw_type=draw_type,
        amount=amount,
        reason=reason,
        status="pending",
        warning=warning,
        requested_by_user_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    session.add(draw)
    session.commit()
    session.refresh(draw)
    audit_log(
        session,
        actor.id,
        "contingency_draw.request",
        "contingency_draw",
        draw.id,
        project_id=project.id,
        changes={"draw_type": draw_type, "amount": amount, "warning": warning},
    )
    notify_roles(
        session,
        label="contingency_draw.requested",
        title="Contingency draw awaiting approval",
        message=f"{draw_type.replace('_', ' ').capitalize()} draw of {format_amount(amount)}: {reason}",
        role_names=[Role.OWNER.value],
        level="warning" if warning else "info",
        category="contingency",
        link_url=f"/contingency-draws/{draw.id}",
    )
    return draw, warning


def approve_contingency_draw(
    session: Session, actor: User, draw_id: int, notes: Optional[str] = None
) -> Tuple[ContingencyDraw, Optional[str]]:
    """Approve a draw. Approved draws feed contingency_used only, so the capital check is advisory."""
    ensure_permission(actor, Action.APPROVE_CONTINGENCY_DRAW)
    draw = get_draw(session, draw_id)
    if "approved" not in DRAW_TRANSITIONS.get(draw.status, set()):
        raise ConflictError(f"Contingency draw is already {draw.status}", draw_id=draw.id, status=draw.status)
    get_project(session, draw.project_id, include_archived=False)
    amount = quantize(as_decimal(draw.amount))

    with commitment_guard.hold(draw.project_id):
        # Figures may have moved since the request was filed.
        warning = _check_amount(get_contingency_summary(session, draw.project_id), amount)
        capital = validate_capital_availability(session, draw.project_id, amount)
        if not capital.is_valid:
            raise ValidationError(
                capital.message,
                available=capital.available,
                required=capital.required,
                shortfall=capital.shortfall,
            )
        commitment_guard.claim(session, draw.project_id, capital.snapshot_version)

        _transition(draw, "approved")
        draw.approved_by_user_id = actor.id
        draw.approved_at = _utcnow()
        draw.decision_notes = notes
        draw.warning = warning
        session.commit()
        session.refresh(draw)
        refresh_project_finances(session, draw.project_id)

    audit_log(
        session,
        actor.id,
        "contingency_draw.approve",
        "contingency_draw",
        draw.id,
        project_id=draw.project_id,
        changes={"amount": amount, "notes": notes},
    )
    notify_roles(
        session,
        label="contingency_draw.approved",
        title="Contingency draw approved",
        message=f"Your {draw.draw_type.replace('_', ' ')} draw of {format_amount(amount)} was approved.",
        role_names=[],
        user_ids=[draw.requested_by_user_id],
        category="contingency",
        link_url=f"/contingency-draws/{draw.id}",
    )
    return draw, warning


def reject_contingency_draw(
    session: Session, actor: User, draw_id: int, notes: Optional[str] = None
) -> ContingencyDraw:
    ensure_permission(actor, Action.APPROVE_CONTINGENCY_DRAW)
    draw = get_draw(session, draw_id)
    _transition(draw, "rejected")
    draw.approved_by_user_id = actor.id
    draw.rejected_at = _utcnow()
    draw.decision_notes = notes
    session.commit()
    session.refresh(draw)
    audit_log(
        session,
        actor.id,
        "contingency_draw.reject",
        "contingency_draw",
        draw.id,
        project_id=draw.project_id,
        changes={"notes": notes},
    )
    return draw


def list_draws(session: Session, project_id: int, status: Optional[str] = None) -> List[ContingencyDraw]:
    query = session.query(ContingencyDraw).filter(
        ContingencyDraw.project_id == project_id, ContingencyDraw.deleted_at.is_(None)
    )
    if status:
        query = query.filter(ContingencyDraw.status == status)
    return query.order_by(ContingencyDraw.created_at.desc()).all()
