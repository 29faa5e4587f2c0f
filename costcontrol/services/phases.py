from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from sqlalchemy.orm import Session

from ..auth.rbac import Action, ensure_permission
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.models import Phase, User
from ..utils.money import ZERO, as_decimal, floor_zero, format_amount, quantize
from .audit import audit_log
from .budget_model import budget_from_project
from .consistency import commitment_guard
from .finance import active_phases, calculate_total_phase_budgets, get_project, phase_remaining

logger = logging.getLogger(__name__)

ALLOCATION_PARTS = ("materials", "labour", "equipment", "subcontractors")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_phase(session: Session, phase_id: int) -> Phase:
    phase = session.get(Phase, phase_id)
    if phase is None or phase.deleted_at is not None:
        raise NotFoundError("Phase not found", phase_id=phase_id)
    return phase


def serialize_allocation(phase: Phase) -> Dict[str, Decimal]:
    return {
        "total": phase.allocation_total,
        "materials": phase.allocation_materials,
        "labour": phase.allocation_labour,
        "equipment": phase.allocation_equipment,
        "subcontractors": phase.allocation_subcontractors,
        "contingency": phase.allocation_contingency,
    }


def create_phase(session: Session, actor: User, project_id: int, payload: Mapping[str, Any]) -> Phase:
    ensure_permission(actor, Action.MANAGE_PHASES)
    project = get_project(session, project_id, include_archived=False)

    phase_code = payload["phase_code"].strip().upper()
    sequence = int(payload["sequence"])
    clash = (
        session.query(Phase)
        .filter(Phase.project_id == project.id)
        .filter((Phase.phase_code == phase_code) | (Phase.sequence == sequence))
        .first()
    )
    if clash is not None:
        field = "phase_code" if clash.phase_code == phase_code else "sequence"
        raise ConflictError(f"Phase {field} already in use for this project", field=field, phase_id=clash.id)

    now = _utcnow()
    phase = Phase(
        project_id=project.id,
        name=payload["name"],
        phase_code=phase_code,
        sequence=sequence,
        status=payload.get("status") or "not_started",
        planned_start_date=payload.get("planned_start_date"),
        planned_end_date=payload.get("planned_end_date"),
        depends_on=[],
        created_at=now,
        updated_at=now,
    )
    session.add(phase)
    session.flush()

    depends_on = list(payload.get("depends_on") or [])
    if depends_on:
        try:
            dependencies = validate_phase_dependencies(session, phase, depends_on)
        except ValidationError:
            session.rollback()
            raise
        phase.depends_on = [dependency.id for dependency in dependencies]
        phase.can_start_after = calculate_can_start_after(dependencies)

    session.commit()
    session.refresh(phase)
    audit_log(
        session,
        actor.id,
        "phase.create",
        "phase",
        phase.id,
        project_id=project.id,
        changes={"phase_code": phase.phase_code, "sequence": phase.sequence, "depends_on": phase.depends_on},
    )
    return phase


def _normalise_allocation(allocation: Mapping[str, Any]) -> Dict[str, Decimal]:
    parts = {name: quantize(as_decimal(allocation.get(name))) for name in ALLOCATION_PARTS}
    negatives = [name for name, value in parts.items() if value < ZERO]
    if allocation.get("total") is None:
        total = quantize(sum(parts.values(), ZERO))
    else:
        total = quantize(as_decimal(allocation.get("total")))
    if total < ZERO:
        negatives.append("total")
    if negatives:
        raise ValidationError("Allocation amounts cannot be negative", fields=negatives)
    parts_sum = quantize(sum(parts.values(), ZERO))
    if parts_sum > total:
        raise ValidationError(
            f"Allocation breakdown of {format_amount(parts_sum)} exceeds allocation total of {format_amount(total)}",
            breakdown_total=parts_sum,
            total=total,
        )
    parts["total"] = total
    return parts


def allocate_phase_budget(session: Session, actor: User, phase_id: int, allocation: Mapping[str, Any]) -> dict:
    """Allocate part of the project's direct construction budget to a phase.

    The sum of all phase allocations never exceeds the DCC budget, except while
    the DCC budget is still zero: phases may then be allocated before the
    project budget is finalised. Contingency is never delegated to a phase.
    """
    ensure_permission(actor, Action.MANAGE_PHASE_BUDGET)
    phase = get_phase(session, phase_id)
    project = get_project(session, phase.project_id, include_archived=False)
    requested = _normalise_allocation(allocation)
    requested_total = requested["total"]

    with commitment_guard.hold(project.id):
        dcc_budget = budget_from_project(project).direct_construction_costs
        current_total = quantize(as_decimal(phase.allocation_total))
        allocated_to_others = calculate_total_phase_budgets(session, project.id, exclude_phase_id=phase.id)
        available_dcc = quantize(dcc_budget - allocated_to_others)

        if dcc_budget > ZERO:
            if requested_total > available_dcc + current_total or allocated_to_others + requested_total > dcc_budget:
                raise ValidationError(
                    f"Phase allocation of {format_amount(requested_total)} exceeds available DCC budget. "
                    f"available: {format_amount(floor_zero(available_dcc))}, "
                    f"required: {format_amount(requested_total)}",
                    dcc_budget=dcc_budget,
                    allocated_to_other_phases=allocated_to_others,
                    available=floor_zero(available_dcc),
                    required=requested_total,
                )
        else:
            logger.info("DCC budget for project %s is zero; allocating phase %s without ceiling", project.id, phase.id)

        before = serialize_allocation(phase)
        phase.allocation_total = requested_total
        phase.allocation_materials = requested["materials"]
        phase.allocation_labour = requested["labour"]
        phase.allocation_equipment = requested["equipment"]
        phase.allocation_subcontractors = requested["subcontractors"]
        phase.allocation_contingency = ZERO
        phase.remaining_budget = phase_remaining(phase)
        phase.updated_at = _utcnow()
        session.commit()
        session.refresh(phase)

    audit_log(
        session,
        actor.id,
        "phase.budget.allocate",
        "phase",
        phase.id,
        project_id=project.id,
        changes={"before": before, "after": serialize_allocation(phase)},
    )
    remaining_dcc = quantize(dcc_budget - allocated_to_others - requested_total) if dcc_budget > ZERO else ZERO
    return {
        "phase": phase,
        "dcc_budget": dcc_budget,
        "allocated_to_other_phases": allocated_to_others,
        "remaining_dcc": remaining_dcc,
    }


def rescale_phase_budgets(session: Session, project_id: int, old_dcc: Decimal, new_dcc: Decimal) -> List[Phase]:
    """Scale every phase allocation by ``new_dcc / old_dcc``. Caller commits."""
    old_amount = as_decimal(old_dcc)
    if old_amount <= ZERO:
        return []
    ratio = as_decimal(new_dcc) / old_amount
    phases = active_phases(session, project_id)
    now = _utcnow()
    for phase in phases:
        phase.allocation_total = quantize(as_decimal(phase.allocation_total) * ratio)
        phase.allocation_materials = quantize(as_decimal(phase.allocation_materials) * ratio)
        phase.allocation_labour = quantize(as_decimal(phase.allocation_labour) * ratio)
        phase.allocation_equipment = quantize(as_decimal(phase.allocation_equipment) * ratio)
        phase.allocation_subcontractors = quantize(as_decimal(phase.allocation_subcontractors) * ratio)
        phase.allocation_contingency = ZERO
        phase.remaining_budget = phase_remaining(phase)
        phase.updated_at = now
    logger.info("Rescaled %s phase allocation(s) for project %s by %s", len(phases), project_id, ratio)
    return phases


def validate_phase_material_budget(session: Session, phase_id: Optional[int], amount: Any) -> dict:
    """Soft check of a material spend against the phase's materials allocation."""
    if phase_id is None:
        return {"is_within_budget": True, "available": None, "warning": None}
    phase = get_phase(session, phase_id)
    allocated = quantize(as_decimal(phase.allocation_materials))
    if allocated <= ZERO:
        return {"is_within_budget": True, "available": None, "warning": None}
    available = quantize(allocated - as_decimal(phase.actual_materials) - as_decimal(phase.committed_cost))
    required = quantize(as_decimal(amount))
    if required > available:
        return {
            "is_within_budget": False,
            "available": available,
            "warning": (
                f"Phase {phase.phase_code} materials budget exceeded. "
                f"available: {format_amount(available)}, required: {format_amount(required)}"
            ),
        }
    return {"is_within_budget": True, "available": available, "warning": None}


def _dependency_graph(session: Session, project_id: int) -> Dict[int, List[int]]:
    return {phase.id: list(phase.depends_on or []) for phase in active_phases(session, project_id)}


def _reaches(graph: Mapping[int, Iterable[int]], start: int, target: int) -> bool:
    stack = [start]
    seen: Set[int] = set()
    while stack:
        node = stack.pop()
        if node == target:
            return True
        if node in seen:
            continue
        seen.add(node)
        stack.extend(graph.get(node, ()))
    return False


def validate_phase_dependencies(session: Session, phase: Phase, depends_on: Iterable[int]) -> List[Phase]:
    dependency_ids = list(dict.fromkeys(int(value) for value in depends_on))
    if phase.id in dependency_ids:
        raise ValidationError("A phase cannot depend on itself", phase_id=phase.id)

    dependencies: List[Phase] = []
    for dependency_id in dependency_ids:
        dependency = session.get(Phase, dependency_id)
        if dependency is None or dependency.deleted_at is not None:
            raise ValidationError("Dependency phase not found", dependency_id=dependency_id)
        if dependency.project_id != phase.project_id:
            raise ValidationError("Dependencies must belong to the same project", dependency_id=dependency_id)
        dependencies.append(dependency)

    graph = _dependency_graph(session, phase.project_id)
    graph[phase.id] = dependency_ids
    for dependency_id in dependency_ids:
        if _reaches(graph, dependency_id, phase.id):
            raise ValidationError(
                "Dependency would create a cycle between phases",
                phase_id=phase.id,
                dependency_id=dependency_id,
            )
    return dependencies


def calculate_can_start_after(dependencies: Iterable[Phase]) -> Optional[date]:
    end_dates = [
        dependency.actual_end_date or dependency.planned_end_date
        for dependency in dependencies
        if (dependency.actual_end_date or dependency.planned_end_date) is not None
    ]
    return max(end_dates) if end_dates else None


def set_phase_dependencies(session: Session, actor: User, phase_id: int, depends_on: Iterable[int]) -> Phase:
    ensure_permission(actor, Action.MANAGE_PHASES)
    phase = get_phase(session, phase_id)
    dependencies = validate_phase_dependencies(session, phase, depends_on)
    before = list(phase.depends_on or [])
    phase.depends_on = [dependency.id for dependency in dependencies]
    phase.can_start_after = calculate_can_start_after(dependencies)
    phase.updated_at = _utcnow()
    session.commit()
    session.refresh(phase)
    audit_log(
        session,
        actor.id,
        "phase.dependencies.update",
        "phase",
        phase.id,
        project_id=phase.project_id,
        changes={"before": before, "after": phase.depends_on},
    )
    return phase


def refresh_dependent_start_dates(session: Session, phase: Phase) -> List[Phase]:
    """Recompute ``can_start_after`` for phases that depend on ``phase``. Caller commits."""
    updated: List[Phase] = []
    for candidate in active_phases(session, phase.project_id):
        if phase.id not in (candidate.depends_on or []):
            continue
        dependencies = [
            dependency
            for dependency in (session.get(Phase, dependency_id) for dependency_id in candidate.depends_on)
            if dependency is not None and dependency.deleted_at is None
        ]
        candidate.can_start_after = calculate_can_start_after(dependencies)
        updated.append(candidate)
    return updated


def update_phase_schedule(session: Session, actor: User, phase_id: int, payload: Mapping[str, Any]) -> Phase:
    ensure_permission(actor, Action.MANAGE_PHASES)
    phase = get_phase(session, phase_id)
    fields = ("status", "planned_start_date", "planned_end_date", "actual_start_date", "actual_end_date")
    before = {name: getattr(phase, name) for name in fields}
    for name in fields:
        if name in payload and payload[name] is not None:
            setattr(phase, name, payload[name])
    if phase.planned_start_date and phase.planned_end_date and phase.planned_end_date < phase.planned_start_date:
        raise ValidationError("Planned end date cannot be before planned start date", phase_id=phase.id)
    if phase.status == "in_progress":
        ready = can_phase_start(session, phase.id)
        if not ready["can_start"] and before["status"] != "in_progress":
            session.rollback()
            raise ValidationError(
                "Phase cannot start until its dependencies are completed",
                blocking_phases=ready["blocking_phases"],
            )
    phase.updated_at = _utcnow()
    refresh_dependent_start_dates(session, phase)
    session.commit()
    session.refresh(phase)
    audit_log(
        session,
        actor.id,
        "phase.schedule.update",
        "phase",
        phase.id,
        project_id=phase.project_id,
        changes={"before": before, "after": {name: getattr(phase, name) for name in fields}},
    )
    return phase


def can_phase_start(session: Session, phase_id: int) -> dict:
    phase = get_phase(session, phase_id)
    blocking = []
    for dependency_id in phase.depends_on or []:
        dependency = session.get(Phase, dependency_id)
        if dependency is None or dependency.deleted_at is not None:
            continue
        if dependency.status != "completed":
            blocking.append({"id": dependency.id, "phase_code": dependency.phase_code, "status": dependency.status})
    return {
        "phase_id": phase.id,
        "can_start": not blocking,
        "can_start_after": phase.can_start_after,
        "blocking_phases": blocking,
    }
