from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Mapping

from sqlalchemy.orm import Session

from ..auth.rbac import Action, ensure_permission
from ..constants import INVESTMENT_TYPES
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.models import Investor, InvestorAllocation, User
from ..utils.money import ZERO, as_decimal, quantize
from .audit import audit_log
from .capital import validate_capital_removal
from .consistency import commitment_guard
from .finance import get_project, refresh_project_finances
from .recalculation_queue import schedule_recalculation

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_investor(session: Session, investor_id: int) -> Investor:
    investor = session.get(Investor, investor_id)
    if investor is None or investor.deleted_at is not None:
        raise NotFoundError("Investor not found", investor_id=investor_id)
    return investor


def list_investors(session: Session, include_archived: bool = False) -> List[Investor]:
    query = session.query(Investor).filter(Investor.deleted_at.is_(None))
    if not include_archived:
        query = query.filter(Investor.status != "archived")
    return query.order_by(Investor.name).all()


def create_investor(session: Session, actor: User, payload: Mapping[str, Any]) -> Investor:
    ensure_permission(actor, Action.MANAGE_INVESTORS)
    name = (payload.get("name") or "").strip()
    if not name:
        raise ValidationError("Investor name is required")
    investor = Investor(name=name, email=payload.get("email"), status="active", created_at=_utcnow())
    session.add(investor)
    session.commit()
    session.refresh(investor)
    audit_log(session, actor.id, "investor.create", "investor", investor.id, changes={"name": name})
    return investor


def allocate_capital(session: Session, actor: User, investor_id: int, payload: Mapping[str, Any]) -> InvestorAllocation:
    ensure_permission(actor, Action.MANAGE_INVESTORS)
    investor = get_investor(session, investor_id)
    if investor.status == "archived":
        raise ConflictError("Archived investors cannot fund projects", investor_id=investor.id)
    project = get_project(session, int(payload["project_id"]), include_archived=False)
    amount = quantize(as_decimal(payload.get("amount")))
    if amount <= ZERO:
        raise ValidationError("Allocation amount must be greater than zero")
    investment_type = payload.get("investment_type") or "equity"
    if investment_type not in INVESTMENT_TYPES:
        raise ValidationError("Investment type must be loan or equity", investment_type=investment_type)

    allocation = InvestorAllocation(
        investor_id=investor.id,
        project_id=project.id,
        amount=amount,
        investment_type=investment_type,
        notes=payload.get("notes"),
        created_at=_utcnow(),
    )
    session.add(allocation)
    session.commit()
    session.refresh(allocation)
    audit_log(
        session,
        actor.id,
        "investor.allocate",
        "investor_allocation",
        allocation.id,
        project_id=project.id,
        changes={"investor_id": investor.id, "amount": amount, "investment_type": investment_type},
    )
    refresh_project_finances(session, project.id)
    return allocation


def remove_allocation(session: Session, actor: User, allocation_id: int) -> None:
    """Withdraw an allocation, refusing when the remaining capital cannot cover spend and commitments."""
    ensure_permission(actor, Action.MANAGE_INVESTORS)
    allocation = session.get(InvestorAllocation, allocation_id)
    if allocation is None:
        raise NotFoundError("Allocation not found", allocation_id=allocation_id)
    project_id = allocation.project_id
    amount = quantize(as_decimal(allocation.amount))

    with commitment_guard.hold(project_id):
        check = validate_capital_removal(session, project_id, amount)
        if not check.is_valid:
            raise ValidationError(
                check.message,
                available=check.available,
                required=check.required,
                shortfall=check.shortfall,
            )
        commitment_guard.claim(session, project_id, check.snapshot_version)
        session.delete(allocation)
        session.commit()
        refresh_project_finances(session, project_id)

    audit_log(
        session,
        actor.id,
        "investor.allocation.remove",
        "investor_allocation",
        allocation_id,
        project_id=project_id,
        changes={"amount": amount},
    )


def _funded_projects(investor: Investor) -> List[int]:
    return list(dict.fromkeys(allocation.project_id for allocation in investor.allocations))


def archive_investor(session: Session, actor: User, investor_id: int) -> Investor:
    """Archive an investor. Every project it funded is recalculated in the background."""
    ensure_permission(actor, Action.MANAGE_INVESTORS)
    investor = get_investor(session, investor_id)
    if investor.status == "archived":
        raise ConflictError("Investor is already archived", investor_id=investor.id)
    investor.status = "archived"
    investor.archived_at = _utcnow()
    session.commit()
    session.refresh(investor)
    project_ids = _funded_projects(investor)
    audit_log(
        session,
        actor.id,
        "investor.archive",
        "investor",
        investor.id,
        changes={"projects": project_ids},
    )
    schedule_recalculation(session, projects=project_ids)
    return investor


def restore_investor(session: Session, actor: User, investor_id: int) -> Investor:
    ensure_permission(actor, Action.MANAGE_INVESTORS)
    investor = get_investor(session, investor_id)
    if investor.status != "archived":
        raise ConflictError("Investor is not archived", investor_id=investor.id)
    investor.status = "active"
    investor.archived_at = None
    session.commit()
    session.refresh(investor)
    project_ids = _funded_projects(investor)
    audit_log(session, actor.id, "investor.restore", "investor", investor.id, changes={"projects": project_ids})
    schedule_recalculation(session, projects=project_ids)
    return investor
