"""Lifecycle of the leaf spending records that feed every aggregate."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Type

from sqlalchemy.orm import Session

from ..auth.rbac import Action, ensure_permission
from ..constants import EXPENSE_CATEGORIES, EXPENSE_COST_CATEGORIES
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.models import Expense, LabourBatch, Material, PurchaseOrder, SubcontractorPayment, User
from ..utils.money import ZERO, as_decimal, quantize
from .audit import audit_log
from .capital import validate_capital_availability
from .consistency import commitment_guard
from .finance import get_project, refresh_project_finances
from .notifications import notify_roles
from .projects import resolve_scope
from .purchase_orders import committed_amount_for_material
from .recalculation_queue import schedule_recalculation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LeafKind:
    model: Type
    amount_attr: str
    label: str


LEAF_KINDS: Dict[str, LeafKind] = {
    "materials": LeafKind(Material, "total_cost", "material"),
    "expenses": LeafKind(Expense, "amount", "expense"),
    "labour-batches": LeafKind(LabourBatch, "total_cost", "labour_batch"),
    "subcontractor-payments": LeafKind(SubcontractorPayment, "amount", "subcontractor_payment"),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _kind(kind: str) -> LeafKind:
    try:
        return LEAF_KINDS[kind]
    except KeyError:
        raise NotFoundError(f"Unknown spending type {kind!r}") from None


def get_spending(session: Session, kind: str, record_id: int, *, include_deleted: bool = False):
    leaf = _kind(kind)
    record = session.get(leaf.model, record_id)
    if record is None or (record.deleted_at is not None and not include_deleted):
        raise NotFoundError(f"{leaf.label.replace('_', ' ').capitalize()} not found", record_id=record_id)
    return record


def _amount(record, leaf: LeafKind) -> Decimal:
    return quantize(as_decimal(getattr(record, leaf.amount_attr)))


def serialize_spending(kind: str, record) -> dict:
    leaf = _kind(kind)
    description = getattr(record, "description", None)
    if leaf.model is Material:
        description = f"{record.name} ({record.quantity} {record.unit})"
    elif leaf.model is SubcontractorPayment:
        description = record.subcontractor_name + (f": {description}" if description else "")
    return {
        "id": record.id,
        "kind": kind,
        "project_id": record.project_id,
        "phase_id": record.phase_id,
        "floor_id": record.floor_id,
        "status": record.status,
        "amount": _amount(record, leaf),
        "description": description,
        "approved_at": record.approved_at,
        "deleted_at": record.deleted_at,
        "archived_with_project": bool(record.archived_with_project),
        "created_at": record.created_at,
    }


def list_spending(session: Session, kind: str, project_id: int, *, include_archived: bool = False) -> list:
    leaf = _kind(kind)
    query = session.query(leaf.model).filter(leaf.model.project_id == project_id)
    if not include_archived:
        query = query.filter(leaf.model.deleted_at.is_(None))
    return query.order_by(leaf.model.created_at.desc()).all()


def _positive(value: Any, name: str) -> Decimal:
    amount = quantize(as_decimal(value))
    if amount <= ZERO:
        raise ValidationError(f"{name} must be greater than zero")
    return amount


def _build_record(leaf: LeafKind, payload: Mapping[str, Any]):
    if leaf.model is Material:
        quantity = as_decimal(payload.get("quantity"))
        if quantity <= ZERO:
            raise ValidationError("Quantity must be greater than zero")
        unit_cost = _positive(payload.get("unit_cost"), "Unit cost")
        return Material(
            name=payload["name"],
            unit=payload.get("unit") or "piece",
            quantity=quantity,
            unit_cost=unit_cost,
            total_cost=quantize(quantity * unit_cost),
        )
    if leaf.model is Expense:
        category = payload.get("category") or "general"
        cost_category = payload.get("cost_category") or "direct"
        if category not in EXPENSE_CATEGORIES:
            raise ValidationError("Unknown expense category", category=category)
        if cost_category not in EXPENSE_COST_CATEGORIES:
            raise ValidationError("Unknown cost category", cost_category=cost_category)
        return Expense(
            description=payload["description"],
            amount=_positive(payload.get("amount"), "Amount"),
            category=category,
            cost_category=cost_category,
        )
    if leaf.model is LabourBatch:
        return LabourBatch(
            description=payload["description"],
            worker_count=int(payload.get("worker_count") or 1),
            total_cost=_positive(payload.get("total_cost"), "Total cost"),
        )
    return SubcontractorPayment(
        subcontractor_name=payload["subcontractor_name"],
        description=payload.get("description"),
        amount=_positive(payload.get("amount"), "Amount"),
    )


def _cascade(session: Session, record) -> None:
    refresh_project_finances(session, record.project_id)
    schedule_recalculation(session, phases=[record.phase_id], floors=[record.floor_id])


def record_spending(session: Session, actor: User, kind: str, project_id: int, payload: Mapping[str, Any]):
    ensure_permission(actor, Action.RECORD_SPENDING)
    leaf = _kind(kind)
    resolve_scope(session, project_id, payload.get("phase_id"), payload.get("floor_id"))
    record = _build_record(leaf, payload)
    if leaf.model is Material and payload.get("linked_purchase_order_id") is not None:
        order = session.get(PurchaseOrder, int(payload["linked_purchase_order_id"]))
        if order is None or order.deleted_at is not None or order.project_id != project_id:
            raise NotFoundError(
                "Purchase order not found for this project",
                purchase_order_id=payload["linked_purchase_order_id"],
            )
        record.linked_purchase_order_id = order.id
        record.material_request_id = order.material_request_id
    now = _utcnow()
    record.project_id = project_id
    record.phase_id = payload.get("phase_id")
    record.floor_id = payload.get("floor_id")
    record.status = "pending"
    record.recorded_by_user_id = actor.id
    record.created_at = now
    record.updated_at = now
    session.add(record)
    session.commit()
    session.refresh(record)
    audit_log(
        session,
        actor.id,
        f"{leaf.label}.create",
        leaf.label,
        record.id,
        project_id=project_id,
        changes={"amount": _amount(record, leaf), "phase_id": record.phase_id, "floor_id": record.floor_id},
    )
    _cascade(session, record)
    return record


def approve_spending(session: Session, actor: User, kind: str, record_id: int):
    """Approve a pending leaf after checking it fits the available capital.

    For a material delivered against a committed purchase order, the order's
    committed amount is already reserved, so only the difference is checked and
    the order is realised together with the approval.
    """
    ensure_permission(actor, Action.APPROVE_SPENDING)
    leaf = _kind(kind)
    record = get_spending(session, kind, record_id)
    if record.status != "pending":
        raise ConflictError(f"Cannot approve a record that is {record.status}", record_id=record.id)
    get_project(session, record.project_id, include_archived=False)

    amount = _amount(record, leaf)
    reserved = committed_amount_for_material(session, record) if leaf.model is Material else ZERO
    required = quantize(amount - reserved)

    with commitment_guard.hold(record.project_id):
        capital = None
        if required > ZERO:
            capital = validate_capital_availability(session, record.project_id, required)
            if not capital.is_valid:
                raise ValidationError(
                    capital.message,
                    available=capital.available,
                    required=capital.required,
                    shortfall=capital.shortfall,
                )
            commitment_guard.claim(session, record.project_id, capital.snapshot_version)

        now = _utcnow()
        record.status = "approved"
        record.approved_by_user_id = actor.id
        record.approved_at = now
        record.updated_at = now
        if reserved > ZERO:
            order = session.get(PurchaseOrder, record.linked_purchase_order_id)
            order.financial_status = "realized"
            order.realized_at = now
            order.linked_material_id = record.id
            if order.status == "accepted":
                order.status = "converted"
        session.commit()
        session.refresh(record)
        refresh_project_finances(session, record.project_id)

    audit_log(
        session,
        actor.id,
        f"{leaf.label}.approve",
        leaf.label,
        record.id,
        project_id=record.project_id,
        changes={"amount": amount, "capital_checked": required, "reserved_by_order": reserved},
    )
    schedule_recalculation(session, phases=[record.phase_id], floors=[record.floor_id])
    notify_roles(
        session,
        label=f"{leaf.label}.approved",
        title=f"{leaf.label.replace('_', ' ').capitalize()} approved",
        message=f"A {leaf.label.replace('_', ' ')} of {amount} was approved.",
        role_names=[],
        user_ids=[record.recorded_by_user_id],
        category="spending",
    )
    return record


def reject_spending(session: Session, actor: User, kind: str, record_id: int, reason: Optional[str] = None):
    ensure_permission(actor, Action.APPROVE_SPENDING)
    leaf = _kind(kind)
    record = get_spending(session, kind, record_id)
    if record.status != "pending":
        raise ConflictError(f"Cannot reject a record that is {record.status}", record_id=record.id)
    record.status = "rejected"
    record.updated_at = _utcnow()
    session.commit()
    session.refresh(record)
    audit_log(
        session,
        actor.id,
        f"{leaf.label}.reject",
        leaf.label,
        record.id,
        project_id=record.project_id,
        changes={"reason": reason},
    )
    return record


def update_spending_amount(session: Session, actor: User, kind: str, record_id: int, payload: Mapping[str, Any]):
    """Correct the cost of a leaf record. Increases on approved records are capital-checked."""
    ensure_permission(actor, Action.RECORD_SPENDING)
    leaf = _kind(kind)
    record = get_spending(session, kind, record_id)
    if record.status == "rejected":
        raise ConflictError("Rejected records cannot be edited", record_id=record.id)
    before = _amount(record, leaf)

    if leaf.model is Material:
        quantity = as_decimal(payload.get("quantity", record.quantity))
        unit_cost = _positive(payload.get("unit_cost", record.unit_cost), "Unit cost")
        if quantity <= ZERO:
            raise ValidationError("Quantity must be greater than zero")
        new_amount = quantize(quantity * unit_cost)
    else:
        new_amount = _positive(payload.get("amount", payload.get("total_cost")), "Amount")

    with commitment_guard.hold(record.project_id):
        delta = quantize(new_amount - before)
        if record.status != "pending" and delta > ZERO:
            capital = validate_capital_availability(session, record.project_id, delta)
            if not capital.is_valid:
                raise ValidationError(
                    capital.message,
                    available=capital.available,
                    required=capital.required,
                    shortfall=capital.shortfall,
                )
            commitment_guard.claim(session, record.project_id, capital.snapshot_version)
        if leaf.model is Material:
            record.quantity = quantity
            record.unit_cost = unit_cost
        setattr(record, leaf.amount_attr, new_amount)
        record.updated_at = _utcnow()
        session.commit()
        session.refresh(record)
        refresh_project_finances(session, record.project_id)

    audit_log(
        session,
        actor.id,
        f"{leaf.label}.update",
        leaf.label,
        record.id,
        project_id=record.project_id,
        changes={"before": before, "after": new_amount},
    )
    schedule_recalculation(session, phases=[record.phase_id], floors=[record.floor_id])
    return record


def archive_spending(session: Session, actor: User, kind: str, record_id: int):
    ensure_permission(actor, Action.APPROVE_SPENDING)
    leaf = _kind(kind)
    record = get_spending(session, kind, record_id)
    record.deleted_at = _utcnow()
    record.updated_at = record.deleted_at
    session.commit()
    session.refresh(record)
    audit_log(session, actor.id, f"{leaf.label}.archive", leaf.label, record.id, project_id=record.project_id)
    _cascade(session, record)
    return record


def restore_spending(session: Session, actor: User, kind: str, record_id: int):
    ensure_permission(actor, Action.APPROVE_SPENDING)
    leaf = _kind(kind)
    record = get_spending(session, kind, record_id, include_deleted=True)
    if record.deleted_at is None:
        raise ConflictError("Record is not archived", record_id=record.id)
    if record.archived_with_project:
        raise ConflictError("Record was archived with its project; restore the project instead", record_id=record.id)
    get_project(session, record.project_id, include_archived=False)
    record.deleted_at = None
    record.updated_at = _utcnow()
    session.commit()
    session.refresh(record)
    audit_log(session, actor.id, f"{leaf.label}.restore", leaf.label, record.id, project_id=record.project_id)
    _cascade(session, record)
    return record
