"""Recomputes derived financial aggregates from leaf records.

Every aggregate here is a pure function of the current leaf rows. A
recalculation always rescans and replaces the stored figures; nothing adds to
or subtracts from a stored aggregate in place, so repeated or reordered
recalculations converge on the same result.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Query, Session

from ..constants import (
    EXPENSE_COUNTED_STATUSES,
    LABOUR_COUNTED_STATUSES,
    MATERIAL_COUNTED_STATUSES,
    SUBCONTRACTOR_COUNTED_STATUSES,
)
from ..core.errors import NotFoundError, RecalculationFailure
from ..models.models import (
    ContingencyDraw,
    Expense,
    Floor,
    Investor,
    InvestorAllocation,
    LabourBatch,
    Material,
    MaterialRequest,
    Phase,
    Project,
    ProjectFinances,
    PurchaseOrder,
    SubcontractorPayment,
)
from ..utils.money import ZERO, as_decimal, floor_zero, money_sum, quantize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FinancesSnapshot:
    project_id: int
    capital_balance: Decimal
    total_loans: Decimal
    total_equity: Decimal
    investor_count: int
    total_used: Decimal
    committed_cost: Decimal
    estimated_cost: Decimal
    available_capital: Decimal
    contingency_used: Decimal

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SpendingBreakdown:
    materials: Decimal
    labour: Decimal
    equipment: Decimal
    expenses: Decimal
    subcontractors: Decimal
    committed: Decimal
    estimated: Decimal

    @property
    def total(self) -> Decimal:
        return quantize(self.materials + self.labour + self.equipment + self.expenses + self.subcontractors)


SNAPSHOT_FIELDS = (
    "capital_balance",
    "total_loans",
    "total_equity",
    "investor_count",
    "total_used",
    "committed_cost",
    "estimated_cost",
    "available_capital",
    "contingency_used",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _total(query: Query) -> Decimal:
    return money_sum(row[0] for row in query)


def _materials(session: Session, *criteria) -> Decimal:
    return _total(
        session.query(Material.total_cost).filter(
            Material.deleted_at.is_(None),
            Material.status.in_(MATERIAL_COUNTED_STATUSES),
            *criteria,
        )
    )


def _expenses(session: Session, *criteria) -> Decimal:
    return _total(
        session.query(Expense.amount).filter(
            Expense.deleted_at.is_(None),
            Expense.status.in_(EXPENSE_COUNTED_STATUSES),
            *criteria,
        )
    )


def _labour(session: Session, *criteria) -> Decimal:
    return _total(
        session.query(LabourBatch.total_cost).filter(
            LabourBatch.deleted_at.is_(None),
            LabourBatch.status.in_(LABOUR_COUNTED_STATUSES),
            *criteria,
        )
    )


def _subcontractors(session: Session, *criteria) -> Decimal:
    return _total(
        session.query(SubcontractorPayment.amount).filter(
            SubcontractorPayment.deleted_at.is_(None),
            SubcontractorPayment.status.in_(SUBCONTRACTOR_COUNTED_STATUSES),
            *criteria,
        )
    )


def _committed(session: Session, *criteria) -> Decimal:
    # Realized orders are already counted through their material.
    return _total(
        session.query(PurchaseOrder.total_cost).filter(
            PurchaseOrder.deleted_at.is_(None),
            PurchaseOrder.financial_status == "committed",
            *criteria,
        )
    )


def _estimated(session: Session, *criteria) -> Decimal:
    return _total(
        session.query(MaterialRequest.estimated_cost).filter(
            MaterialRequest.deleted_at.is_(None),
            MaterialRequest.status == "approved",
            MaterialRequest.linked_purchase_order_id.is_(None),
            *criteria,
        )
    )


def get_project(session: Session, project_id: int, *, include_archived: bool = True) -> Project:
    project = session.get(Project, project_id)
    if project is None or (not include_archived and project.deleted_at is not None):
        raise NotFoundError("Project not found", project_id=project_id)
    return project


def calculate_total_used(session: Session, project_id: int) -> Decimal:
    return quantize(
        _materials(session, Material.project_id == project_id)
        + _expenses(session, Expense.project_id == project_id)
        + _labour(session, LabourBatch.project_id == project_id)
        + _subcontractors(session, SubcontractorPayment.project_id == project_id)
    )


def calculate_committed_cost(session: Session, project_id: int) -> Decimal:
    return _committed(session, PurchaseOrder.project_id == project_id)


def calculate_estimated_cost(session: Session, project_id: int) -> Decimal:
    return _estimated(session, MaterialRequest.project_id == project_id)


def calculate_contingency_used(session: Session, project_id: int) -> Decimal:
    return _total(
        session.query(ContingencyDraw.amount).filter(
            ContingencyDraw.project_id == project_id,
            ContingencyDraw.deleted_at.is_(None),
            ContingencyDraw.status == "approved",
        )
    )


def compute_project_finances(session: Session, project_id: int) -> FinancesSnapshot:
    get_project(session, project_id)

    allocations = (
        session.query(InvestorAllocation.investor_id, InvestorAllocation.amount, InvestorAllocation.investment_type)
        .join(Investor, Investor.id == InvestorAllocation.investor_id)
        .filter(
            InvestorAllocation.project_id == project_id,
            Investor.deleted_at.is_(None),
            Investor.status != "archived",
        )
        .all()
    )
    total_loans = money_sum(amount for _, amount, kind in allocations if kind == "loan")
    total_equity = money_sum(amount for _, amount, kind in allocations if kind != "loan")
    capital_balance = quantize(total_loans + total_equity)
    investor_count = len({investor_id for investor_id, _, _ in allocations})

    total_used = calculate_total_used(session, project_id)
    committed_cost = calculate_committed_cost(session, project_id)

    return FinancesSnapshot(
        project_id=project_id,
        capital_balance=capital_balance,
        total_loans=total_loans,
        total_equity=total_equity,
        investor_count=investor_count,
        total_used=total_used,
        committed_cost=committed_cost,
        estimated_cost=calculate_estimated_cost(session, project_id),
        available_capital=quantize(capital_balance - total_used - committed_cost),
        contingency_used=calculate_contingency_used(session, project_id),
    )


def _stored_value(record, name: str):
    value = getattr(record, name)
    if name == "investor_count":
        return int(value or 0)
    return quantize(as_decimal(value))


def _replace_fields(record, values: Dict[str, object]) -> bool:
    changed = False
    for name, value in values.items():
        if _stored_value(record, name) != value:
            setattr(record, name, value)
            changed = True
    return changed


def recalculate_project_finances(session: Session, project_id: int, *, commit: bool = True) -> ProjectFinances:
    snapshot = compute_project_finances(session, project_id)
    finances = session.query(ProjectFinances).filter(ProjectFinances.project_id == project_id).first()
    values = {name: getattr(snapshot, name) for name in SNAPSHOT_FIELDS}
    if finances is None:
        now = _utcnow()
        finances = ProjectFinances(project_id=project_id, version=1, created_at=now, updated_at=now, **values)
        session.add(finances)
    elif _replace_fields(finances, values):
        finances.version = (finances.version or 0) + 1
        finances.updated_at = _utcnow()
    if commit:
        session.commit()
    else:
        session.flush()
    return finances


def get_project_finances(session: Session, project_id: int) -> ProjectFinances:
    """Latest persisted snapshot, computed once if the project has none yet."""
    finances = session.query(ProjectFinances).filter(ProjectFinances.project_id == project_id).first()
    if finances is None:
        finances = recalculate_project_finances(session, project_id)
    return finances


def refresh_project_finances(session: Session, project_id: int) -> Optional[ProjectFinances]:
    """Primary synchronous recalculation. Failures are logged, never raised."""
    try:
        return recalculate_project_finances(session, project_id)
    except Exception as exc:
        session.rollback()
        failure = RecalculationFailure("project", project_id, str(exc))
        logger.exception("Project finance recalculation failed: %s", failure.extra)
        return None


def compute_phase_spending(session: Session, phase_id: int) -> SpendingBreakdown:
    direct = Expense.cost_category == "direct"
    return SpendingBreakdown(
        materials=_materials(session, Material.phase_id == phase_id),
        labour=_labour(session, LabourBatch.phase_id == phase_id),
        equipment=_expenses(session, Expense.phase_id == phase_id, direct, Expense.category == "equipment"),
        expenses=_expenses(session, Expense.phase_id == phase_id, direct, Expense.category != "equipment"),
        subcontractors=_subcontractors(session, SubcontractorPayment.phase_id == phase_id),
        committed=_committed(session, PurchaseOrder.phase_id == phase_id),
        estimated=_estimated(session, MaterialRequest.phase_id == phase_id),
    )


def phase_remaining(phase: Phase) -> Decimal:
    return quantize(
        floor_zero(
            as_decimal(phase.allocation_total) - as_decimal(phase.actual_total) - as_decimal(phase.committed_cost)
        )
    )


def recalculate_phase_spending(session: Session, phase_id: int, *, commit: bool = True) -> Phase:
    phase = session.get(Phase, phase_id)
    if phase is None:
        raise NotFoundError("Phase not found", phase_id=phase_id)
    spending = compute_phase_spending(session, phase_id)
    allocation_total = quantize(as_decimal(phase.allocation_total))
    values = {
        "actual_materials": spending.materials,
        "actual_labour": spending.labour,
        "actual_equipment": spending.equipment,
        "actual_expenses": spending.expenses,
        "actual_subcontractors": spending.subcontractors,
        "actual_total": spending.total,
        "committed_cost": spending.committed,
        "estimated_cost": spending.estimated,
        "remaining_budget": quantize(floor_zero(allocation_total - spending.total - spending.committed)),
    }
    if _replace_fields(phase, values):
        phase.updated_at = _utcnow()
    if commit:
        session.commit()
    else:
        session.flush()
    return phase


def compute_floor_spending(session: Session, floor_id: int) -> SpendingBreakdown:
    return SpendingBreakdown(
        materials=_materials(session, Material.floor_id == floor_id),
        labour=_labour(session, LabourBatch.floor_id == floor_id),
        equipment=ZERO,
        expenses=_expenses(session, Expense.floor_id == floor_id, Expense.cost_category == "direct"),
        subcontractors=_subcontractors(session, SubcontractorPayment.floor_id == floor_id),
        committed=_committed(session, PurchaseOrder.floor_id == floor_id),
        estimated=ZERO,
    )


def recalculate_floor_spending(session: Session, floor_id: int, *, commit: bool = True) -> Floor:
    floor = session.get(Floor, floor_id)
    if floor is None:
        raise NotFoundError("Floor not found", floor_id=floor_id)
    spending = compute_floor_spending(session, floor_id)
    budget_total = quantize(as_decimal(floor.budget_total))
    values = {
        "actual_materials": spending.materials,
        "actual_labour": spending.labour,
        "actual_expenses": spending.expenses,
        "actual_subcontractors": spending.subcontractors,
        "actual_total": spending.total,
        "committed_cost": spending.committed,
        "remaining_budget": quantize(floor_zero(budget_total - spending.total - spending.committed)),
    }
    if _replace_fields(floor, values):
        floor.updated_at = _utcnow()
    if commit:
        session.commit()
    else:
        session.flush()
    return floor


def active_phases(session: Session, project_id: int) -> List[Phase]:
    return (
        session.query(Phase)
        .filter(Phase.project_id == project_id, Phase.deleted_at.is_(None))
        .order_by(Phase.sequence)
        .all()
    )


def active_floors(session: Session, project_id: int) -> List[Floor]:
    return (
        session.query(Floor)
        .filter(Floor.project_id == project_id, Floor.deleted_at.is_(None))
        .order_by(Floor.floor_number)
        .all()
    )


def calculate_total_phase_budgets(session: Session, project_id: int, exclude_phase_id: Optional[int] = None) -> Decimal:
    phases: Iterable[Phase] = active_phases(session, project_id)
    return money_sum(phase.allocation_total for phase in phases if phase.id != exclude_phase_id)


def get_phase_summary(session: Session, project_id: int) -> dict:
    phases = active_phases(session, project_id)
    allocated = money_sum(phase.allocation_total for phase in phases)
    actual = money_sum(phase.actual_total for phase in phases)
    committed = money_sum(phase.committed_cost for phase in phases)
    remaining = money_sum(phase.remaining_budget for phase in phases)
    return {
        "project_id": project_id,
        "phase_count": len(phases),
        "total_allocated": allocated,
        "total_actual": actual,
        "total_committed": committed,
        "total_remaining": remaining,
        "by_status": {
            status: sum(1 for phase in phases if phase.status == status)
            for status in sorted({phase.status for phase in phases})
        },
    }


def get_budget_category_spending(session: Session, project_id: int) -> Dict[str, Decimal]:
    """Spend recorded against each budget category of a project."""
    direct_leaves = (
        _materials(session, Material.project_id == project_id)
        + _labour(session, LabourBatch.project_id == project_id)
        + _subcontractors(session, SubcontractorPayment.project_id == project_id)
        + _expenses(session, Expense.project_id == project_id, Expense.cost_category == "direct")
    )
    return {
        "dcc": quantize(direct_leaves),
        "preconstruction": _expenses(
            session, Expense.project_id == project_id, Expense.cost_category == "preconstruction"
        ),
        "indirect": _expenses(session, Expense.project_id == project_id, Expense.cost_category == "indirect"),
        "contingency": calculate_contingency_used(session, project_id),
    }


def recalculate_with_cascade(session: Session, project_id: int, *, cascade: bool = True) -> dict:
    """Recalculate a project and, when ``cascade`` is set, each of its phases and floors."""
    phases: List[Phase] = []
    floors: List[Floor] = []
    if cascade:
        for phase in active_phases(session, project_id):
            phases.append(recalculate_phase_spending(session, phase.id, commit=False))
        for floor in active_floors(session, project_id):
            floors.append(recalculate_floor_spending(session, floor.id, commit=False))
    finances = recalculate_project_finances(session, project_id)
    logger.info(
        "Recalculated project %s (%s phase(s), %s floor(s)); finances version %s",
        project_id,
        len(phases),
        len(floors),
        finances.version,
    )
    return {
        "project_id": project_id,
        "finances": finances,
        "phases_recalculated": len(phases),
        "floors_recalculated": len(floors),
    }
