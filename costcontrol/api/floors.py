from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user
from ..auth.rbac import Action, ensure_permission
from ..core.errors import NotFoundError
from ..models.models import Floor, User
from ..schemas.schemas import FloorCreate, FloorRead
from ..services.finance import active_floors, get_project, recalculate_floor_spending
from ..services.projects import create_floor as create_floor_record

router = APIRouter(prefix="/floors", tags=["floors"])


@router.get("/", response_model=List[FloorRead])
def list_floors(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> List[Floor]:
    ensure_permission(user, Action.VIEW_FINANCES)
    get_project(db, project_id)
    return active_floors(db, project_id)


@router.post("/", response_model=FloorRead, status_code=201)
def create_floor(payload: FloorCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Floor:
    return create_floor_record(db, user, payload.project_id, payload.model_dump())


@router.post("/{floor_id}/recalculate", response_model=FloorRead)
def recalculate(floor_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Floor:
    ensure_permission(user, Action.RECALCULATE_FINANCES)
    floor = db.get(Floor, floor_id)
    if floor is None or floor.deleted_at is not None:
        raise NotFoundError("Floor not found", floor_id=floor_id)
    return recalculate_floor_spending(db, floor_id)
