from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user
from ..auth.rbac import Action, ensure_permission
from ..models.models import Project, User
from ..schemas.schemas import (
    CapitalCheckRead,
    ProjectBudgetUpdate,
    ProjectCreate,
    ProjectFinancesRead,
    ProjectRead,
    ProjectWithWarnings,
    RecalculationResult,
)
from ..services import projects as project_service
from ..services.budget_changes import get_category_summary
from ..services.capital import get_financial_overview, validate_capital_availability
from ..services.finance import get_phase_summary, get_project, get_project_finances, recalculate_with_cascade

router = APIRouter(prefix="/projects", tags=["projects"])


@router.get("/", response_model=List[ProjectRead])
def list_projects(
    include_archived: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> List[Project]:
    ensure_permission(user, Action.VIEW_FINANCES)
    query = db.query(Project)
    if not include_archived:
        query = query.filter(Project.deleted_at.is_(None))
    return query.order_by(Project.project_code).all()


@router.post("/", response_model=ProjectWithWarnings, status_code=201)
def create_project(
    payload: ProjectCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ProjectWithWarnings:
    data = payload.model_dump()
    data["budget"] = payload.budget
    project, warnings = project_service.create_project(db, user, data)
    return ProjectWithWarnings(project=ProjectRead.model_validate(project), warnings=warnings)


@router.get("/{project_id}", response_model=ProjectRead)
def read_project(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Project:
    ensure_permission(user, Action.VIEW_FINANCES)
    return get_project(db, project_id)


@router.put("/{project_id}/budget", response_model=ProjectWithWarnings)
def update_budget(
    project_id: int,
    payload: ProjectBudgetUpdate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> ProjectWithWarnings:
    project, warnings = project_service.update_project_budget(
        db, user, project_id, payload.budget, reallocate_phases=payload.reallocate_phases
    )
    return ProjectWithWarnings(project=ProjectRead.model_validate(project), warnings=warnings)


@router.post("/{project_id}/archive", response_model=ProjectRead)
def archive_project(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Project:
    return project_service.archive_project(db, user, project_id)


@router.post("/{project_id}/restore", response_model=ProjectRead)
def restore_project(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Project:
    return project_service.restore_project(db, user, project_id)


@router.delete("/{project_id}", status_code=204)
def delete_project(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> Response:
    project_service.delete_project(db, user, project_id)
    return Response(status_code=204)


@router.get("/{project_id}/finances", response_model=ProjectFinancesRead)
def read_finances(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)):
    ensure_permission(user, Action.VIEW_FINANCES)
    return get_project_finances(db, project_id)


@router.get("/{project_id}/overview")
def read_overview(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    ensure_permission(user, Action.VIEW_FINANCES)
    return get_financial_overview(db, project_id)


@router.get("/{project_id}/capital-check", response_model=CapitalCheckRead)
def capital_check(
    project_id: int,
    amount: Decimal = Query(...),
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    ensure_permission(user, Action.VIEW_FINANCES)
    get_project(db, project_id)
    return validate_capital_availability(db, project_id, amount).as_dict()


@router.post("/{project_id}/recalculate", response_model=RecalculationResult)
def recalculate(
    project_id: int,
    cascade: bool = True,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> dict:
    ensure_permission(user, Action.RECALCULATE_FINANCES)
    get_project(db, project_id)
    return recalculate_with_cascade(db, project_id, cascade=cascade)


@router.get("/{project_id}/phase-summary")
def phase_summary(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    ensure_permission(user, Action.VIEW_FINANCES)
    get_project(db, project_id)
    return get_phase_summary(db, project_id)


@router.get("/{project_id}/budget-categories")
def budget_categories(project_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)) -> dict:
    ensure_permission(user, Action.VIEW_FINANCES)
    return get_category_summary(db, project_id)
