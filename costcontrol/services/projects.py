from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Tuple

from sqlalchemy.orm import Session

from ..auth.rbac import Action, ensure_permission
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.models import (
    ContingencyDraw,
    Expense,
    Floor,
    InvestorAllocation,
    LabourBatch,
    Material,
    MaterialRequest,
    Phase,
    Project,
    ProjectFinances,
    PurchaseOrder,
    SubcontractorPayment,
    User,
)
from ..utils.money import ZERO, as_decimal, format_amount, quantize
from .audit import audit_log
from .budget_model import apply_budget, budget_from_project, resolve_budget, validate_budget
from .finance import active_floors, active_phases, calculate_total_phase_budgets, get_project, refresh_project_finances
from .phases import rescale_phase_budgets
from .recalculation_queue import schedule_recalculation

logger = logging.getLogger(__name__)

# Leaf collections that follow their project through archive and restore.
ARCHIVE_CASCADE_MODELS = (Material, Expense, LabourBatch, SubcontractorPayment)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def resolve_scope(
    session: Session,
    project_id: int,
    phase_id: Optional[int] = None,
    floor_id: Optional[int] = None,
) -> Tuple[Project, Optional[Phase], Optional[Floor]]:
    """Load an active project and make sure the phase and floor belong to it."""
    project = get_project(session, project_id, include_archived=False)
    phase = None
    floor = None
    if phase_id is not None:
        phase = session.get(Phase, phase_id)
        if phase is None or phase.deleted_at is not None or phase.project_id != project.id:
            raise NotFoundError("Phase not found for this project", phase_id=phase_id)
    if floor_id is not None:
        floor = session.get(Floor, floor_id)
        if floor is None or floor.deleted_at is not None or floor.project_id != project.id:
            raise NotFoundError("Floor not found for this project", floor_id=floor_id)
    return project, phase, floor


def create_project(session: Session, actor: User, payload: Mapping[str, Any]) -> Tuple[Project, List[str]]:
    ensure_permission(actor, Action.MANAGE_PROJECT)
    project_code = payload["project_code"].strip().upper()
    if session.query(Project).filter(Project.project_code == project_code).first():
        raise ConflictError("Project code already in use", project_code=project_code)

    validation = validate_budget(resolve_budget(payload.get("budget")))
    now = _utcnow()
    project = Project(
        project_code=project_code,
        name=payload["name"],
        status=payload.get("status") or "active",
        created_by_user_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    apply_budget(project, validation.budget)
    session.add(project)
    session.commit()
    session.refresh(project)

    audit_log(
        session,
        actor.id,
        "project.create",
        "project",
        project.id,
        project_id=project.id,
        changes={"project_code": project.project_code, "budget": validation.budget.as_dict()},
    )
    refresh_project_finances(session, project.id)
    return project, validation.warnings


def update_project_budget(
    session: Session,
    actor: User,
    project_id: int,
    budget_payload: Any,
    *,
    reallocate_phases: bool = False,
) -> Tuple[Project, List[str]]:
    ensure_permission(actor, Action.MANAGE_PROJECT)
    project = get_project(session, project_id, include_archived=False)
    validation = validate_budget(resolve_budget(budget_payload))
    old_budget = budget_from_project(project)
    new_dcc = validation.budget.direct_construction_costs
    warnings = list(validation.warnings)

    rescaled = []
    if reallocate_phases:
        rescaled = rescale_phase_budgets(session, project.id, old_budget.direct_construction_costs, new_dcc)
        if rescaled:
            warnings.append(f"Rescaled {len(rescaled)} phase allocation(s) to the new DCC budget")

    # Bootstrap allocations made under a zero DCC are never rescaled.
    allocated = calculate_total_phase_budgets(session, project.id)
    if new_dcc > ZERO and allocated > new_dcc:
        session.rollback()
        raise ValidationError(
            f"Phases already hold {format_amount(allocated)} of DCC; "
            f"new DCC budget of {format_amount(new_dcc)} is too small. Reallocate phases or reduce allocations.",
            allocated_to_phases=allocated,
            dcc_budget=new_dcc,
        )

    apply_budget(project, validation.budget)
    project.updated_at = _utcnow()
    session.commit()
    session.refresh(project)
    audit_log(
        session,
        actor.id,
        "project.budget.update",
        "project",
        project.id,
        project_id=project.id,
        changes={"before": old_budget.as_dict(), "after": validation.budget.as_dict(), "reallocated": reallocate_phases},
    )
    if rescaled:
        schedule_recalculation(session, phases=[phase.id for phase in rescaled])
    return project, warnings


def _cascade_targets(session: Session, project_id: int) -> Tuple[List[int], List[int]]:
    phase_ids = [phase.id for phase in active_phases(session, project_id)]
    floor_ids = [floor.id for floor in active_floors(session, project_id)]
    return phase_ids, floor_ids


def archive_project(session: Session, actor: User, project_id: int) -> Project:
    ensure_permission(actor, Action.ARCHIVE_PROJECT)
    project = get_project(session, project_id)
    if project.deleted_at is not None:
        raise ConflictError("Project is already archived", project_id=project.id)

    now = _utcnow()
    archived_counts = {}
    for model in ARCHIVE_CASCADE_MODELS:
        rows = (
            session.query(model)
            .filter(model.project_id == project.id, model.deleted_at.is_(None))
            .all()
        )
        for row in rows:
            row.deleted_at = now
            row.archived_with_project = True
        archived_counts[model.__tablename__] = len(rows)

    project.pre_archive_status = project.status
    project.status = "archived"
    project.archived_at = now
    project.deleted_at = now
    project.updated_at = now
    session.commit()
    session.refresh(project)

    audit_log(
        session,
        actor.id,
        "project.archive",
        "project",
        project.id,
        project_id=project.id,
        changes={"archived": archived_counts},
    )
    phase_ids, floor_ids = _cascade_targets(session, project.id)
    refresh_project_finances(session, project.id)
    schedule_recalculation(session, phases=phase_ids, floors=floor_ids)
    return project


def restore_project(session: Session, actor: User, project_id: int) -> Project:
    ensure_permission(actor, Action.ARCHIVE_PROJECT)
    project = get_project(session, project_id)
    if project.deleted_at is None:
        raise ConflictError("Project is not archived", project_id=project.id)

    restored_counts = {}
    for model in ARCHIVE_CASCADE_MODELS:
        rows = (
            session.query(model)
            .filter(model.project_id == project.id, model.archived_with_project.is_(True))
            .all()
        )
        for row in rows:
            row.deleted_at = None
            row.archived_with_project = False
        restored_counts[model.__tablename__] = len(rows)

    project.status = project.pre_archive_status or "active"
    project.pre_archive_status = None
    project.archived_at = None
    project.deleted_at = None
    project.updated_at = _utcnow()
    session.commit()
    session.refresh(project)

    audit_log(
        session,
        actor.id,
        "project.restore",
        "project",
        project.id,
        project_id=project.id,
        changes={"restored": restored_counts},
    )
    phase_ids, floor_ids = _cascade_targets(session, project.id)
    refresh_project_finances(session, project.id)
    schedule_recalculation(session, phases=phase_ids, floors=floor_ids)
    return project


def delete_project(session: Session, actor: User, project_id: int) -> None:
    """Hard delete, only allowed for a project nothing else refers to."""
    ensure_permission(actor, Action.DELETE_PROJECT)
    project = get_project(session, project_id)
    dependents = {
        "phases": session.query(Phase).filter(Phase.project_id == project.id).count(),
        "floors": session.query(Floor).filter(Floor.project_id == project.id).count(),
        "materials": session.query(Material).filter(Material.project_id == project.id).count(),
        "expenses": session.query(Expense).filter(Expense.project_id == project.id).count(),
        "labour_batches": session.query(LabourBatch).filter(LabourBatch.project_id == project.id).count(),
        "subcontractor_payments": session.query(SubcontractorPayment)
        .filter(SubcontractorPayment.project_id == project.id)
        .count(),
        "material_requests": session.query(MaterialRequest).filter(MaterialRequest.project_id == project.id).count(),
        "purchase_orders": session.query(PurchaseOrder).filter(PurchaseOrder.project_id == project.id).count(),
        "contingency_draws": session.query(ContingencyDraw).filter(ContingencyDraw.project_id == project.id).count(),
        "investor_allocations": session.query(InvestorAllocation)
        .filter(InvestorAllocation.project_id == project.id)
        .count(),
    }
    blocking = {name: count for name, count in dependents.items() if count}
    if blocking:
        raise ConflictError("Project still has dependent records; archive it instead", dependents=blocking)

    session.query(ProjectFinances).filter(ProjectFinances.project_id == project.id).delete()
    session.delete(project)
    session.commit()
    audit_log(session, actor.id, "project.delete", "project", project_id, project_id=project_id)


def create_floor(session: Session, actor: User, project_id: int, payload: Mapping[str, Any]) -> Floor:
    ensure_permission(actor, Action.MANAGE_FLOORS)
    project = get_project(session, project_id, include_archived=False)
    floor_number = int(payload["floor_number"])
    if (
        session.query(Floor)
        .filter(Floor.project_id == project.id, Floor.floor_number == floor_number)
        .first()
    ):
        raise ConflictError("Floor number already in use for this project", floor_number=floor_number)
    budget_total = quantize(as_decimal(payload.get("budget_total")))
    if budget_total < ZERO:
        raise ValidationError("Floor budget cannot be negative")
    now = _utcnow()
    floor = Floor(
        project_id=project.id,
        floor_number=floor_number,
        name=payload.get("name") or f"Floor {floor_number}",
        budget_total=budget_total,
        remaining_budget=budget_total,
        created_at=now,
        updated_at=now,
    )
    session.add(floor)
    session.commit()
    session.refresh(floor)
    audit_log(
        session,
        actor.id,
        "floor.create",
        "floor",
        floor.id,
        project_id=project.id,
        changes={"floor_number": floor_number, "budget_total": budget_total},
    )
    return floor
