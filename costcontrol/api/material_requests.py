from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user
from ..auth.rbac import Action, ensure_permission
from ..models.models import MaterialRequest, MaterialRequestBatch, User
from ..schemas.schemas import (
    DecisionNotes,
    MaterialRequestBatchCreate,
    MaterialRequestBatchRead,
    MaterialRequestCreate,
    MaterialRequestRead,
)
from ..services import material_requests as request_service

router = APIRouter(prefix="/material-requests", tags=["material-requests"])


@router.post("/batches", response_model=MaterialRequestBatchRead, status_code=201)
def create_batch(
    payload: MaterialRequestBatchCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> MaterialRequestBatch:
    items = [item.model_dump() for item in payload.requests]
    return request_service.create_material_request_batch(db, user, payload.project_id, items)


@router.get("/batches/{batch_id}", response_model=MaterialRequestBatchRead)
def read_batch(batch_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> MaterialRequestBatch:
    ensure_permission(user, Action.VIEW_FINANCES)
    return request_service.get_batch(db, batch_id)


@router.post("/batches/{batch_id}/approve", response_model=MaterialRequestBatchRead)
def approve_batch(
    batch_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> MaterialRequestBatch:
    return request_service.approve_batch(db, user, batch_id)


@router.get("/", response_model=List[MaterialRequestRead])
def list_requests(
    project_id: int,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> List[MaterialRequest]:
    ensure_permission(user, Action.VIEW_FINANCES)
    query = db.query(MaterialRequest).filter(
        MaterialRequest.project_id == project_id, MaterialRequest.deleted_at.is_(None)
    )
    if status:
        query = query.filter(MaterialRequest.status == status)
    return query.order_by(MaterialRequest.created_at.desc()).all()


@router.post("/", response_model=MaterialRequestRead, status_code=201)
def create_request(
    payload: MaterialRequestCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> MaterialRequest:
    return request_service.create_material_request(db, user, payload.project_id, payload.model_dump())


@router.get("/{request_id}", response_model=MaterialRequestRead)
def read_request(request_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> MaterialRequest:
    ensure_permission(user, Action.VIEW_FINANCES)
    return request_service.get_material_request(db, request_id)


@router.post("/{request_id}/approve", response_model=MaterialRequestRead)
def approve_request(
    request_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> MaterialRequest:
    return request_service.approve_material_request(db, user, request_id)


@router.post("/{request_id}/reject", response_model=MaterialRequestRead)
def reject_request(
    request_id: int,
    payload: DecisionNotes,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> MaterialRequest:
    return request_service.reject_material_request(db, user, request_id, payload.notes)
