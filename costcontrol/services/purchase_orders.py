"""Purchase orders: the commitment ledger.

A purchase order is created at most once per idempotency key. The order, the
link on its material request and the audit entry are committed together;
recalculation and notifications only happen after that commit and can never
undo it.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth.rbac import Action, Role, ensure_permission
from ..core.errors import ConflictError, CostControlError, NotFoundError, TransactionFailure, ValidationError
from ..models.models import Material, PurchaseOrder, Supplier, User
from ..utils.money import ZERO, as_decimal, format_amount, quantize
from .audit import audit_log
from .capital import CapitalCheck, validate_capital_availability
from .consistency import commitment_guard
from .finance import refresh_project_finances
from .material_requests import get_batch, get_material_request, refresh_batch_status
from .notifications import notify_roles
from .phases import validate_phase_material_budget
from .projects import resolve_scope
from .recalculation_queue import schedule_recalculation

logger = logging.getLogger(__name__)

PO_TRANSITIONS: Dict[str, set] = {
    "order_sent": {"accepted", "rejected"},
    "accepted": {"converted"},
    "rejected": set(),
    "converted": set(),
}

FINANCIAL_STATUS_FOR = {
    "order_sent": "not_committed",
    "accepted": "committed",
    "rejected": "not_committed",
    "converted": "realized",
}


@dataclass
class PurchaseOrderResult:
    order: PurchaseOrder
    is_existing: bool
    capital: Optional[CapitalCheck] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class BulkOrderResult:
    batch_id: int
    batch_status: Optional[str]
    created: List[PurchaseOrderResult]
    failures: List[dict]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _canonical_number(value: Any) -> str:
    return format(as_decimal(value).normalize(), "f")


def _as_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError as exc:
            raise ValidationError("Delivery date must be an ISO date", delivery_date=value) from exc
    raise ValidationError("Delivery date is required")


def compute_idempotency_key(
    material_request_id: int,
    supplier_id: int,
    quantity_ordered: Any,
    unit_cost: Any,
    delivery_date: Any,
) -> str:
    """Deterministic hash of the fields that define one commitment."""
    parts = (
        str(int(material_request_id)),
        str(int(supplier_id)),
        _canonical_number(quantity_ordered),
        _canonical_number(unit_cost),
        _as_date(delivery_date).isoformat(),
    )
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def get_purchase_order(session: Session, purchase_order_id: int) -> PurchaseOrder:
    order = session.get(PurchaseOrder, purchase_order_id)
    if order is None or order.deleted_at is not None:
        raise NotFoundError("Purchase order not found", purchase_order_id=purchase_order_id)
    return order


def _check_transition(order: PurchaseOrder, target: str) -> None:
    if target not in PO_TRANSITIONS.get(order.status, set()):
        raise ConflictError(
            f"Purchase order cannot move from {order.status} to {target}",
            purchase_order_id=order.id,
            status=order.status,
        )


def _transition(order: PurchaseOrder, target: str) -> None:
    _check_transition(order, target)
    order.status = target
    order.financial_status = FINANCIAL_STATUS_FOR[target]
    order.updated_at = _utcnow()


def _next_order_number(session: Session) -> str:
    prefix = f"PO-{_utcnow().strftime('%Y%m%d')}-"
    count = session.query(PurchaseOrder).filter(PurchaseOrder.purchase_order_number.like(f"{prefix}%")).count()
    return f"{prefix}{count + 1:03d}"


def _find_existing(session: Session, key: str) -> Optional[PurchaseOrder]:
    return (
        session.query(PurchaseOrder)
        .filter(PurchaseOrder.idempotency_key == key, PurchaseOrder.deleted_at.is_(None))
        .order_by(PurchaseOrder.id.desc())
        .first()
    )


def _commit_or_fail(session: Session, description: str, **context: Any) -> None:
    try:
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Ledger transaction failed while %s", description)
        raise TransactionFailure(f"Could not commit {description}; retry the request", **context) from exc


def create_purchase_order(
    session: Session,
    actor: User,
    payload: Mapping[str, Any],
    *,
    notify: bool = True,
) -> PurchaseOrderResult:
    ensure_permission(actor, Action.CREATE_PURCHASE_ORDER)
    request = get_material_request(session, int(payload["material_request_id"]))
    supplier_id = int(payload["supplier_id"])
    quantity = quantize(as_decimal(payload.get("quantity_ordered")))
    unit_cost = quantize(as_decimal(payload.get("unit_cost")))
    delivery_date = _as_date(payload.get("delivery_date"))

    key = compute_idempotency_key(request.id, supplier_id, quantity, unit_cost, delivery_date)
    existing = _find_existing(session, key)
    if existing is not None:
        if request.linked_purchase_order_id == existing.id:
            logger.info("Returning existing purchase order %s for idempotency key %s", existing.id, key)
            return PurchaseOrderResult(order=existing, is_existing=True)
        logger.warning(
            "Orphaned purchase order %s matches idempotency key %s but material request %s links to %s; "
            "creating a new order",
            existing.id,
            key,
            request.id,
            request.linked_purchase_order_id,
        )

    if request.status == "converted_to_order" or request.linked_purchase_order_id is not None:
        raise ConflictError(
            "Material request has already been converted to a purchase order",
            material_request_id=request.id,
            linked_purchase_order_id=request.linked_purchase_order_id,
        )
    if request.status != "approved":
        raise ValidationError(
            f"Material request must be approved before ordering (status: {request.status})",
            material_request_id=request.id,
        )
    if quantity <= ZERO:
        raise ValidationError("Quantity ordered must be greater than zero")
    if unit_cost <= ZERO:
        raise ValidationError("Unit cost must be greater than zero")
    if delivery_date < _utcnow().date():
        raise ValidationError("Delivery date cannot be in the past", delivery_date=delivery_date)

    supplier = session.get(Supplier, supplier_id)
    if supplier is None or supplier.deleted_at is not None:
        raise NotFoundError("Supplier not found", supplier_id=supplier_id)
    if supplier.status != "active":
        raise ValidationError("Supplier is not active", supplier_id=supplier_id)

    project, _, _ = resolve_scope(session, request.project_id, request.phase_id, request.floor_id)
    total_cost = quantize(quantity * unit_cost)
    warnings: List[str] = []

    with commitment_guard.hold(project.id):
        capital = validate_capital_availability(session, project.id, total_cost)
        if not capital.is_valid:
            logger.info("Purchase order for request %s rejected: %s", request.id, capital.message)
            raise ValidationError(
                capital.message,
                available=capital.available,
                required=capital.required,
                shortfall=capital.shortfall,
            )
        phase_check = validate_phase_material_budget(session, request.phase_id, total_cost)
        if phase_check["warning"]:
            warnings.append(phase_check["warning"])

        now = _utcnow()
        try:
            order = PurchaseOrder(
                purchase_order_number=_next_order_number(session),
                project_id=project.id,
                phase_id=request.phase_id,
                floor_id=request.floor_id,
                material_request_id=request.id,
                batch_id=request.batch_id,
                supplier_id=supplier.id,
                material_name=request.material_name,
                unit=request.unit,
                quantity_ordered=quantity,
                unit_cost=unit_cost,
                total_cost=total_cost,
                delivery_date=delivery_date,
                terms=payload.get("terms"),
                notes=payload.get("notes"),
                status="order_sent",
                financial_status="not_committed",
                idempotency_key=key,
                response_token=secrets.token_urlsafe(32),
                sent_at=now,
                created_by_user_id=actor.id,
                created_at=now,
                updated_at=now,
            )
            session.add(order)
            session.flush()
            commitment_guard.claim(session, project.id, capital.snapshot_version)

            request.status = "converted_to_order"
            request.linked_purchase_order_id = order.id
            request.updated_at = now
            refresh_batch_status(session, request.batch_id)

            audit_log(
                session,
                actor.id,
                "purchase_order.create",
                "purchase_order",
                order.id,
                project_id=project.id,
                changes={
                    "purchase_order_number": order.purchase_order_number,
                    "material_request_id": request.id,
                    "supplier_id": supplier.id,
                    "total_cost": total_cost,
                    "idempotency_key": key,
                },
                commit=False,
            )
        except CostControlError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception("Ledger transaction failed while creating purchase order for request %s", request.id)
            raise TransactionFailure(
                "Could not commit purchase order; retry the request",
                material_request_id=request.id,
            ) from exc
        _commit_or_fail(session, "purchase order", material_request_id=request.id)
        session.refresh(order)
        refresh_project_finances(session, project.id)

    schedule_recalculation(session, phases=[order.phase_id], floors=[order.floor_id])
    if notify:
        _notify_order_sent(session, order, supplier, request.requested_by_user_id)
    return PurchaseOrderResult(order=order, is_existing=False, capital=capital, warnings=warnings)


def _notify_order_sent(session: Session, order: PurchaseOrder, supplier: Supplier, requester_id: Optional[int]) -> None:
    notify_roles(
        session,
        label="purchase_order.supplier",
        title=f"New purchase order {order.purchase_order_number}",
        message=(
            f"{order.material_name}: {order.quantity_ordered} {order.unit} at {format_amount(order.unit_cost)} "
            f"for delivery on {order.delivery_date.isoformat()}."
        ),
        role_names=[],
        user_ids=[supplier.user_id],
        category="purchase_order",
        link_url=f"/purchase-orders/respond/{order.response_token}",
    )
    notify_roles(
        session,
        label="purchase_order.requester",
        title="Material request ordered",
        message=f"{order.material_name} was ordered from {supplier.name} ({order.purchase_order_number}).",
        role_names=[],
        user_ids=[requester_id],
        category="purchase_order",
        link_url=f"/purchase-orders/{order.id}",
    )


def create_bulk_purchase_orders(
    session: Session,
    actor: User,
    batch_id: int,
    assignments: Iterable[Mapping[str, Any]],
) -> BulkOrderResult:
    """Create one order per supplier assignment, collecting failures.

    The call only fails when no order at all could be created.
    """
    ensure_permission(actor, Action.CREATE_PURCHASE_ORDER)
    batch = get_batch(session, batch_id)
    if batch.status not in ("approved", "partially_ordered"):
        raise ValidationError(f"Batch must be approved before ordering (status: {batch.status})", batch_id=batch.id)

    created: List[PurchaseOrderResult] = []
    failures: List[dict] = []
    for index, assignment in enumerate(assignments):
        request_id = assignment.get("material_request_id")
        supplier_id = assignment.get("supplier_id")
        try:
            request = get_material_request(session, int(request_id))
            if request.batch_id != batch.id:
                raise ValidationError("Material request does not belong to this batch", material_request_id=request.id)
            quantity = assignment.get("quantity_ordered")
            unit_cost = assignment.get("unit_cost")
            payload = {
                "material_request_id": request.id,
                "supplier_id": supplier_id,
                "quantity_ordered": request.quantity_needed if quantity is None else quantity,
                "unit_cost": request.estimated_unit_cost if unit_cost is None else unit_cost,
                "delivery_date": assignment.get("delivery_date"),
                "terms": assignment.get("terms"),
                "notes": assignment.get("notes"),
            }
            created.append(create_purchase_order(session, actor, payload, notify=False))
        except CostControlError as exc:
            logger.info("Bulk order assignment %s for batch %s failed: %s", index, batch.id, exc.detail)
            failures.append(
                {
                    "index": index,
                    "material_request_id": request_id,
                    "supplier_id": supplier_id,
                    "error": exc.detail,
                    "status_code": exc.status_code,
                }
            )

    if not created:
        raise ValidationError("No purchase orders were created", batch_id=batch.id, failures=failures)

    batch = get_batch(session, batch_id)
    status = refresh_batch_status(session, batch.id)
    session.commit()
    audit_log(
        session,
        actor.id,
        "purchase_order.bulk_create",
        "material_request_batch",
        batch.id,
        project_id=batch.project_id,
        changes={
            "created": [result.order.id for result in created],
            "failed": len(failures),
            "batch_status": status,
        },
    )
    for result in created:
        order = result.order
        supplier = session.get(Supplier, order.supplier_id)
        request = order.material_request
        _notify_order_sent(session, order, supplier, request.requested_by_user_id if request else None)
    return BulkOrderResult(batch_id=batch.id, batch_status=status, created=created, failures=failures)


def respond_to_purchase_order(
    session: Session,
    token: str,
    action: str,
    notes: Optional[str] = None,
) -> PurchaseOrder:
    """Supplier accept/reject, authorised by the order's response token."""
    order = (
        session.query(PurchaseOrder)
        .filter(PurchaseOrder.response_token == token, PurchaseOrder.deleted_at.is_(None))
        .first()
    )
    if order is None:
        raise NotFoundError("Purchase order not found for this response link")
    if action not in ("accept", "reject"):
        raise ValidationError("Response must be 'accept' or 'reject'", action=action)

    target = "accepted" if action == "accept" else "rejected"
    previous = order.status
    _check_transition(order, target)

    with commitment_guard.hold(order.project_id):
        capital: Optional[CapitalCheck] = None
        if target == "accepted":
            # Acceptance is the write that commits the order's cost.
            capital = validate_capital_availability(session, order.project_id, order.total_cost)
            if not capital.is_valid:
                logger.info("Acceptance of purchase order %s rejected: %s", order.id, capital.message)
                raise ValidationError(
                    capital.message,
                    purchase_order_id=order.id,
                    available=capital.available,
                    required=capital.required,
                    shortfall=capital.shortfall,
                )

        _transition(order, target)
        now = _utcnow()
        order.supplier_responded_at = now
        order.supplier_notes = notes
        try:
            if capital is not None:
                order.committed_at = now
                commitment_guard.claim(session, order.project_id, capital.snapshot_version)
            else:
                request = order.material_request
                if request is not None and request.linked_purchase_order_id == order.id:
                    # Frees the request for reordering from another supplier.
                    request.status = "approved"
                    request.linked_purchase_order_id = None
                    request.updated_at = now
                    refresh_batch_status(session, request.batch_id)
        except CostControlError:
            session.rollback()
            raise

        audit_log(
            session,
            None,
            f"purchase_order.supplier_{action}",
            "purchase_order",
            order.id,
            project_id=order.project_id,
            changes={
                "before": previous,
                "after": order.status,
                "financial_status": order.financial_status,
                "notes": notes,
            },
            commit=False,
        )
        _commit_or_fail(session, "supplier response", purchase_order_id=order.id)
        session.refresh(order)
        refresh_project_finances(session, order.project_id)

    schedule_recalculation(session, phases=[order.phase_id], floors=[order.floor_id])
    notify_roles(
        session,
        label=f"purchase_order.{target}",
        title=f"Purchase order {order.purchase_order_number} {target}",
        message=f"The supplier {target} the order for {order.material_name}."
        + (f" Notes: {notes}" if notes else ""),
        role_names=[Role.PROJECT_MANAGER.value],
        user_ids=[order.created_by_user_id],
        level="info" if target == "accepted" else "warning",
        category="purchase_order",
        link_url=f"/purchase-orders/{order.id}",
    )
    return order


def confirm_delivery(session: Session, actor: User, purchase_order_id: int) -> Material:
    """Realise an accepted order as a received material."""
    ensure_permission(actor, Action.CONFIRM_DELIVERY)
    order = get_purchase_order(session, purchase_order_id)
    _transition(order, "converted")
    now = _utcnow()
    material = Material(
        project_id=order.project_id,
        phase_id=order.phase_id,
        floor_id=order.floor_id,
        material_request_id=order.material_request_id,
        linked_purchase_order_id=order.id,
        name=order.material_name,
        unit=order.unit,
        quantity=order.quantity_ordered,
        unit_cost=order.unit_cost,
        total_cost=order.total_cost,
        status="received",
        recorded_by_user_id=actor.id,
        approved_by_user_id=actor.id,
        approved_at=now,
        created_at=now,
        updated_at=now,
    )
    try:
        session.add(material)
        session.flush()
        order.linked_material_id = material.id
        order.realized_at = now
        audit_log(
            session,
            actor.id,
            "purchase_order.deliver",
            "purchase_order",
            order.id,
            project_id=order.project_id,
            changes={"material_id": material.id, "total_cost": order.total_cost},
            commit=False,
        )
    except SQLAlchemyError as exc:
        session.rollback()
        raise TransactionFailure("Could not record delivery; retry the request", purchase_order_id=order.id) from exc
    _commit_or_fail(session, "delivery", purchase_order_id=order.id)
    session.refresh(material)

    refresh_project_finances(session, order.project_id)
    schedule_recalculation(session, phases=[order.phase_id], floors=[order.floor_id])
    return material


def committed_amount_for_material(session: Session, material: Material) -> Decimal:
    """Amount already reserved for a material through its committed order."""
    if material.linked_purchase_order_id is None:
        return ZERO
    order = session.get(PurchaseOrder, material.linked_purchase_order_id)
    if order is None or order.deleted_at is not None or order.financial_status != "committed":
        return ZERO
    return quantize(as_decimal(order.total_cost))
