from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user
from ..auth.rbac import Action, ensure_permission
from ..models.models import ContingencyDraw, User
from ..schemas.schemas import ContingencyDrawCreate, ContingencyDrawRead, ContingencySummary, DecisionNotes
from ..services import contingency as contingency_service

router = APIRouter(prefix="/contingency-draws", tags=["contingency"])


@router.get("/", response_model=List[ContingencyDrawRead])
def list_draws(
    project_id: int,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> List[ContingencyDraw]:
    ensure_permission(user, Action.VIEW_FINANCES)
    return contingency_service.list_draws(db, project_id, status)


@router.get("/summary/{project_id}", response_model=ContingencySummary)
def read_summary(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    ensure_permission(user, Action.VIEW_FINANCES)
    return contingency_service.get_contingency_summary(db, project_id)


@router.post("/", response_model=ContingencyDrawRead, status_code=201)
def request_draw(
    payload: ContingencyDrawCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ContingencyDraw:
    draw, _ = contingency_service.request_contingency_draw(db, user, payload.project_id, payload.model_dump())
    return draw


@router.get("/{draw_id}", response_model=ContingencyDrawRead)
def read_draw(draw_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> ContingencyDraw:
    ensure_permission(user, Action.VIEW_FINANCES)
    return contingency_service.get_draw(db, draw_id)


@router.post("/{draw_id}/approve", response_model=ContingencyDrawRead)
def approve_draw(
    draw_id: int,
    payload: DecisionNotes,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ContingencyDraw:
    draw, _ = contingency_service.approve_contingency_draw(db, user, draw_id, payload.notes)
    return draw


@router.post("/{draw_id}/reject", response_model=ContingencyDrawRead)
def reject_draw(
    draw_id: int,
    payload: DecisionNotes,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ContingencyDraw:
    return contingency_service.reject_contingency_draw(db, user, draw_id, payload.notes)
