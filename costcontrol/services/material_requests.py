from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, List, Mapping, Optional

from sqlalchemy.orm import Session

from ..auth.rbac import Action, Role, ensure_permission
from ..core.errors import ConflictError, NotFoundError, ValidationError
from ..models.models import MaterialRequest, MaterialRequestBatch, User
from ..utils.money import ZERO, as_decimal, quantize
from .audit import audit_log
from .finance import refresh_project_finances
from .notifications import notify_roles
from .projects import resolve_scope
from .recalculation_queue import schedule_recalculation

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def get_material_request(session: Session, request_id: int) -> MaterialRequest:
    request = session.get(MaterialRequest, request_id)
    if request is None or request.deleted_at is not None:
        raise NotFoundError("Material request not found", material_request_id=request_id)
    return request


def get_batch(session: Session, batch_id: int) -> MaterialRequestBatch:
    batch = session.get(MaterialRequestBatch, batch_id)
    if batch is None or batch.deleted_at is not None:
        raise NotFoundError("Material request batch not found", batch_id=batch_id)
    return batch


def _build_request(
    session: Session,
    actor: User,
    project_id: int,
    payload: Mapping[str, Any],
    batch_id: Optional[int] = None,
) -> MaterialRequest:
    resolve_scope(session, project_id, payload.get("phase_id"), payload.get("floor_id"))
    quantity = as_decimal(payload.get("quantity_needed"))
    if quantity <= ZERO:
        raise ValidationError("Quantity needed must be greater than zero")
    unit_cost = payload.get("estimated_unit_cost")
    if unit_cost is not None and as_decimal(unit_cost) < ZERO:
        raise ValidationError("Estimated unit cost cannot be negative")
    estimated = quantize(quantity * as_decimal(unit_cost)) if unit_cost is not None else ZERO
    now = _utcnow()
    request = MaterialRequest(
        project_id=project_id,
        phase_id=payload.get("phase_id"),
        floor_id=payload.get("floor_id"),
        batch_id=batch_id,
        material_name=payload["material_name"],
        unit=payload.get("unit") or "piece",
        quantity_needed=quantity,
        estimated_unit_cost=None if unit_cost is None else quantize(as_decimal(unit_cost)),
        estimated_cost=estimated,
        status="pending",
        requested_by_user_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    session.add(request)
    return request


def create_material_request(
    session: Session, actor: User, project_id: int, payload: Mapping[str, Any]
) -> MaterialRequest:
    ensure_permission(actor, Action.CREATE_MATERIAL_REQUEST)
    request = _build_request(session, actor, project_id, payload)
    session.commit()
    session.refresh(request)
    audit_log(
        session,
        actor.id,
        "material_request.create",
        "material_request",
        request.id,
        project_id=project_id,
        changes={"material_name": request.material_name, "estimated_cost": request.estimated_cost},
    )
    notify_roles(
        session,
        label="material_request.created",
        title="Material request awaiting approval",
        message=f"{request.material_name} ({request.quantity_needed} {request.unit}) was requested.",
        role_names=[Role.PROJECT_MANAGER.value, Role.OWNER.value],
        category="material_request",
        link_url=f"/material-requests/{request.id}",
    )
    return request


def _next_batch_number(session: Session) -> str:
    stamp = _utcnow().strftime("%Y%m%d")
    prefix = f"MRB-{stamp}-"
    count = session.query(MaterialRequestBatch).filter(MaterialRequestBatch.batch_number.like(f"{prefix}%")).count()
    return f"{prefix}{count + 1:03d}"


def create_material_request_batch(
    session: Session, actor: User, project_id: int, requests: Iterable[Mapping[str, Any]]
) -> MaterialRequestBatch:
    ensure_permission(actor, Action.CREATE_MATERIAL_REQUEST)
    payloads = list(requests)
    if not payloads:
        raise ValidationError("A batch needs at least one material request")
    resolve_scope(session, project_id)
    now = _utcnow()
    batch = MaterialRequestBatch(
        project_id=project_id,
        batch_number=_next_batch_number(session),
        status="pending",
        created_by_user_id=actor.id,
        created_at=now,
        updated_at=now,
    )
    session.add(batch)
    session.flush()
    try:
        for payload in payloads:
            _build_request(session, actor, project_id, payload, batch_id=batch.id)
    except (ValidationError, NotFoundError):
        session.rollback()
        raise
    session.commit()
    session.refresh(batch)
    audit_log(
        session,
        actor.id,
        "material_request_batch.create",
        "material_request_batch",
        batch.id,
        project_id=project_id,
        changes={"batch_number": batch.batch_number, "request_count": len(payloads)},
    )
    return batch


def _approve(request: MaterialRequest, actor: User, now: datetime) -> None:
    if request.status != "pending":
        raise ConflictError(
            f"Material request is already {request.status}",
            material_request_id=request.id,
            status=request.status,
        )
    request.status = "approved"
    request.approved_by_user_id = actor.id
    request.approved_at = now
    request.updated_at = now


def approve_material_request(session: Session, actor: User, request_id: int) -> MaterialRequest:
    ensure_permission(actor, Action.APPROVE_MATERIAL_REQUEST)
    request = get_material_request(session, request_id)
    _approve(request, actor, _utcnow())
    session.commit()
    session.refresh(request)
    audit_log(
        session,
        actor.id,
        "material_request.approve",
        "material_request",
        request.id,
        project_id=request.project_id,
        changes={"status": "approved"},
    )
    refresh_project_finances(session, request.project_id)
    schedule_recalculation(session, phases=[request.phase_id])
    notify_roles(
        session,
        label="material_request.approved",
        title="Material request approved",
        message=f"Your request for {request.material_name} was approved.",
        role_names=[],
        user_ids=[request.requested_by_user_id],
        category="material_request",
        link_url=f"/material-requests/{request.id}",
    )
    return request


def reject_material_request(
    session: Session, actor: User, request_id: int, reason: Optional[str] = None
) -> MaterialRequest:
    ensure_permission(actor, Action.APPROVE_MATERIAL_REQUEST)
    request = get_material_request(session, request_id)
    if request.status not in ("pending", "approved"):
        raise ConflictError(f"Material request is already {request.status}", material_request_id=request.id)
    previous = request.status
    request.status = "rejected"
    request.updated_at = _utcnow()
    session.commit()
    session.refresh(request)
    audit_log(
        session,
        actor.id,
        "material_request.reject",
        "material_request",
        request.id,
        project_id=request.project_id,
        changes={"before": previous, "after": "rejected", "reason": reason},
    )
    if previous == "approved":
        refresh_project_finances(session, request.project_id)
        schedule_recalculation(session, phases=[request.phase_id])
    return request


def approve_batch(session: Session, actor: User, batch_id: int) -> MaterialRequestBatch:
    ensure_permission(actor, Action.APPROVE_MATERIAL_REQUEST)
    batch = get_batch(session, batch_id)
    if batch.status != "pending":
        raise ConflictError(f"Batch is already {batch.status}", batch_id=batch.id)
    now = _utcnow()
    approved: List[MaterialRequest] = []
    for request in batch.requests:
        if request.deleted_at is None and request.status == "pending":
            _approve(request, actor, now)
            approved.append(request)
    batch.status = "approved"
    batch.approved_by_user_id = actor.id
    batch.approved_at = now
    session.commit()
    session.refresh(batch)
    audit_log(
        session,
        actor.id,
        "material_request_batch.approve",
        "material_request_batch",
        batch.id,
        project_id=batch.project_id,
        changes={"approved_requests": [request.id for request in approved]},
    )
    refresh_project_finances(session, batch.project_id)
    schedule_recalculation(session, phases=[request.phase_id for request in approved if request.phase_id])
    return batch


def refresh_batch_status(session: Session, batch_id: Optional[int]) -> Optional[str]:
    """Derive a batch's ordering status from its requests. Caller commits."""
    if batch_id is None:
        return None
    batch = session.get(MaterialRequestBatch, batch_id)
    if batch is None:
        return None
    requests = [request for request in batch.requests if request.deleted_at is None]
    converted = [request for request in requests if request.status == "converted_to_order"]
    if requests and len(converted) == len(requests):
        batch.status = "fully_ordered"
    elif converted:
        batch.status = "partially_ordered"
    elif batch.status in ("partially_ordered", "fully_ordered"):
        batch.status = "approved"
    batch.updated_at = _utcnow()
    return batch.status
