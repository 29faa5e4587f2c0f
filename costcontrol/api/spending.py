from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user
from ..auth.rbac import Action, ensure_permission
from ..models.models import User
from ..schemas.schemas import DecisionNotes, SpendingCreate, SpendingRead, SpendingUpdate
from ..services import spending as spending_service
from ..services.finance import get_project

router = APIRouter(prefix="/spending", tags=["spending"])


@router.get("/{kind}", response_model=List[SpendingRead])
def list_spending(
    kind: str,
    project_id: int,
    include_archived: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> List[dict]:
    ensure_permission(user, Action.VIEW_FINANCES)
    get_project(db, project_id)
    records = spending_service.list_spending(db, kind, project_id, include_archived=include_archived)
    return [spending_service.serialize_spending(kind, record) for record in records]


@router.post("/{kind}", response_model=SpendingRead, status_code=201)
def record_spending(
    kind: str,
    payload: SpendingCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    record = spending_service.record_spending(db, user, kind, payload.project_id, payload.model_dump())
    return spending_service.serialize_spending(kind, record)


@router.get("/{kind}/{record_id}", response_model=SpendingRead)
def read_spending(
    kind: str, record_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> dict:
    ensure_permission(user, Action.VIEW_FINANCES)
    return spending_service.serialize_spending(kind, spending_service.get_spending(db, kind, record_id))


@router.patch("/{kind}/{record_id}", response_model=SpendingRead)
def update_spending(
    kind: str,
    record_id: int,
    payload: SpendingUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    record = spending_service.update_spending_amount(db, user, kind, record_id, payload.model_dump(exclude_none=True))
    return spending_service.serialize_spending(kind, record)


@router.post("/{kind}/{record_id}/approve", response_model=SpendingRead)
def approve_spending(
    kind: str, record_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> dict:
    return spending_service.serialize_spending(kind, spending_service.approve_spending(db, user, kind, record_id))


@router.post("/{kind}/{record_id}/reject", response_model=SpendingRead)
def reject_spending(
    kind: str,
    record_id: int,
    payload: DecisionNotes,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    record = spending_service.reject_spending(db, user, kind, record_id, payload.notes)
    return spending_service.serialize_spending(kind, record)


@router.post("/{kind}/{record_id}/archive", response_model=SpendingRead)
def archive_spending(
    kind: str, record_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> dict:
    return spending_service.serialize_spending(kind, spending_service.archive_spending(db, user, kind, record_id))


@router.post("/{kind}/{record_id}/restore", response_model=SpendingRead)
def restore_spending(
    kind: str, record_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> dict:
    return spending_service.serialize_spending(kind, spending_service.restore_spending(db, user, kind, record_id))
