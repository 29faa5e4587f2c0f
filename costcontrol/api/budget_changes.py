from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user
from ..auth.rbac import Action, ensure_permission
from ..models.models import BudgetAdjustment, BudgetTransfer, User
from ..schemas.schemas import (
    BudgetAdjustmentCreate,
    BudgetAdjustmentRead,
    BudgetTransferCreate,
    BudgetTransferRead,
    DecisionNotes,
)
from ..services import budget_changes as change_service

transfers_router = APIRouter(prefix="/budget-transfers", tags=["budget-transfers"])
adjustments_router = APIRouter(prefix="/budget-adjustments", tags=["budget-adjustments"])


@transfers_router.post("/", response_model=BudgetTransferRead, status_code=201)
def request_transfer(
    payload: BudgetTransferCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BudgetTransfer:
    return change_service.request_budget_transfer(db, user, payload.project_id, payload.model_dump())


@transfers_router.get("/history/{project_id}")
def transfer_history(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    ensure_permission(user, Action.VIEW_FINANCES)
    history = change_service.get_transfer_history(db, project_id)
    history["transfers"] = [BudgetTransferRead.model_validate(item) for item in history["transfers"]]
    return history


@transfers_router.post("/{transfer_id}/approve", response_model=BudgetTransferRead)
def approve_transfer(
    transfer_id: int,
    payload: DecisionNotes,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BudgetTransfer:
    return change_service.approve_budget_transfer(db, user, transfer_id, payload.notes)


@transfers_router.post("/{transfer_id}/reject", response_model=BudgetTransferRead)
def reject_transfer(
    transfer_id: int,
    payload: DecisionNotes,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BudgetTransfer:
    return change_service.reject_budget_transfer(db, user, transfer_id, payload.notes)


@adjustments_router.post("/", response_model=BudgetAdjustmentRead, status_code=201)
def request_adjustment(
    payload: BudgetAdjustmentCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BudgetAdjustment:
    return change_service.request_budget_adjustment(db, user, payload.project_id, payload.model_dump())


@adjustments_router.get("/history/{project_id}")
def adjustment_history(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    ensure_permission(user, Action.VIEW_FINANCES)
    history = change_service.get_adjustment_history(db, project_id)
    history["adjustments"] = [BudgetAdjustmentRead.model_validate(item) for item in history["adjustments"]]
    return history


@adjustments_router.post("/{adjustment_id}/approve", response_model=BudgetAdjustmentRead)
def approve_adjustment(
    adjustment_id: int,
    payload: DecisionNotes,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BudgetAdjustment:
    return change_service.approve_budget_adjustment(db, user, adjustment_id, payload.notes)


@adjustments_router.post("/{adjustment_id}/reject", response_model=BudgetAdjustmentRead)
def reject_adjustment(
    adjustment_id: int,
    payload: DecisionNotes,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BudgetAdjustment:
    return change_service.reject_budget_adjustment(db, user, adjustment_id, payload.notes)
