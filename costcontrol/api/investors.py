from typing import List

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user
from ..auth.rbac import Action, ensure_permission
from ..models.models import Investor, InvestorAllocation, User
from ..schemas.schemas import AllocationCreate, AllocationRead, InvestorCreate, InvestorRead
from ..services import investors as investor_service

router = APIRouter(prefix="/investors", tags=["investors"])


@router.get("/", response_model=List[InvestorRead])
def list_investors(
    include_archived: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> List[Investor]:
    ensure_permission(user, Action.VIEW_FINANCES)
    return investor_service.list_investors(db, include_archived=include_archived)


@router.post("/", response_model=InvestorRead, status_code=201)
def create_investor(payload: InvestorCreate, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Investor:
    return investor_service.create_investor(db, user, payload.model_dump())


@router.get("/{investor_id}/allocations", response_model=List[AllocationRead])
def list_allocations(
    investor_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> List[InvestorAllocation]:
    ensure_permission(user, Action.VIEW_FINANCES)
    return list(investor_service.get_investor(db, investor_id).allocations)


@router.post("/{investor_id}/allocations", response_model=AllocationRead, status_code=201)
def allocate_capital(
    investor_id: int,
    payload: AllocationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> InvestorAllocation:
    return investor_service.allocate_capital(db, user, investor_id, payload.model_dump())


@router.delete("/allocations/{allocation_id}", status_code=204)
def remove_allocation(
    allocation_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> Response:
    investor_service.remove_allocation(db, user, allocation_id)
    return Response(status_code=204)


@router.post("/{investor_id}/archive", response_model=InvestorRead)
def archive_investor(investor_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Investor:
    return investor_service.archive_investor(db, user, investor_id)


@router.post("/{investor_id}/restore", response_model=InvestorRead)
def restore_investor(investor_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Investor:
    return investor_service.restore_investor(db, user, investor_id)
