from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user
from ..auth.rbac import Action, ensure_permission
from ..models.models import Phase, User
from ..schemas.schemas import (
    PhaseAllocation,
    PhaseAllocationResult,
    PhaseCreate,
    PhaseDependencies,
    PhaseRead,
    PhaseScheduleUpdate,
)
from ..services import phases as phase_service
from ..services.finance import active_phases, get_project, recalculate_phase_spending

router = APIRouter(prefix="/phases", tags=["phases"])


@router.get("/", response_model=List[PhaseRead])
def list_phases(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> List[Phase]:
    ensure_permission(user, Action.VIEW_FINANCES)
    get_project(db, project_id)
    return active_phases(db, project_id)


@router.post("/", response_model=PhaseRead, status_code=201)
def create_phase(payload: PhaseCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Phase:
    return phase_service.create_phase(db, user, payload.project_id, payload.model_dump())


@router.get("/{phase_id}", response_model=PhaseRead)
def read_phase(phase_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Phase:
    ensure_permission(user, Action.VIEW_FINANCES)
    return phase_service.get_phase(db, phase_id)


@router.put("/{phase_id}/budget", response_model=PhaseAllocationResult)
def allocate_budget(
    phase_id: int,
    payload: PhaseAllocation,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    return phase_service.allocate_phase_budget(db, user, phase_id, payload.model_dump())


@router.put("/{phase_id}/dependencies", response_model=PhaseRead)
def set_dependencies(
    phase_id: int,
    payload: PhaseDependencies,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Phase:
    return phase_service.set_phase_dependencies(db, user, phase_id, payload.depends_on)


@router.patch("/{phase_id}/schedule", response_model=PhaseRead)
def update_schedule(
    phase_id: int,
    payload: PhaseScheduleUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> Phase:
    return phase_service.update_phase_schedule(db, user, phase_id, payload.model_dump(exclude_unset=True))


@router.get("/{phase_id}/can-start")
def can_start(phase_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    ensure_permission(user, Action.VIEW_FINANCES)
    return phase_service.can_phase_start(db, phase_id)


@router.post("/{phase_id}/recalculate", response_model=PhaseRead)
def recalculate(phase_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Phase:
    ensure_permission(user, Action.RECALCULATE_FINANCES)
    phase_service.get_phase(db, phase_id)
    return recalculate_phase_spending(db, phase_id)
