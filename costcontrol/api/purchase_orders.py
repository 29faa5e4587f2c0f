from typing import List, Optional

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from ..api.dependencies import get_db
from ..auth.jwt import get_current_user
from ..auth.rbac import Action, ensure_permission
from ..models.models import PurchaseOrder, User
from ..schemas.schemas import (
    BulkPurchaseOrderCreate,
    BulkPurchaseOrderRead,
    PurchaseOrderCreate,
    PurchaseOrderCreated,
    PurchaseOrderRead,
    SpendingRead,
    SupplierResponse,
)
from ..services import purchase_orders as order_service
from ..services.purchase_orders import PurchaseOrderResult
from ..services.spending import serialize_spending

router = APIRouter(prefix="/purchase-orders", tags=["purchase-orders"])


def _created(result: PurchaseOrderResult) -> PurchaseOrderCreated:
    return PurchaseOrderCreated(
        order=PurchaseOrderRead.model_validate(result.order),
        is_existing=result.is_existing,
        capital=result.capital.as_dict() if result.capital else None,
        warnings=result.warnings,
    )


@router.get("/", response_model=List[PurchaseOrderRead])
def list_orders(
    project_id: int,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> List[PurchaseOrder]:
    ensure_permission(user, Action.VIEW_FINANCES)
    query = db.query(PurchaseOrder).filter(PurchaseOrder.project_id == project_id, PurchaseOrder.deleted_at.is_(None))
    if status:
        query = query.filter(PurchaseOrder.status == status)
    return query.order_by(PurchaseOrder.created_at.desc()).all()


@router.post("/", response_model=PurchaseOrderCreated, status_code=201)
def create_order(
    payload: PurchaseOrderCreate,
    response: Response,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> PurchaseOrderCreated:
    result = order_service.create_purchase_order(db, user, payload.model_dump())
    if result.is_existing:
        response.status_code = 200
    return _created(result)


@router.post("/bulk", response_model=BulkPurchaseOrderRead, status_code=201)
def create_bulk_orders(
    payload: BulkPurchaseOrderCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> BulkPurchaseOrderRead:
    assignments = [assignment.model_dump() for assignment in payload.assignments]
    result = order_service.create_bulk_purchase_orders(db, user, payload.batch_id, assignments)
    return BulkPurchaseOrderRead(
        batch_id=result.batch_id,
        batch_status=result.batch_status,
        created=[_created(item) for item in result.created],
        failures=result.failures,
    )


@router.post("/respond/{token}", response_model=PurchaseOrderRead)
def supplier_response(token: str, payload: SupplierResponse, db: Session = Depends(get_db)) -> PurchaseOrder:
    """Supplier accept/reject link; the response token is the credential."""
    return order_service.respond_to_purchase_order(db, token, payload.action, payload.notes)


@router.get("/{purchase_order_id}", response_model=PurchaseOrderRead)
def read_order(
    purchase_order_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> PurchaseOrder:
    ensure_permission(user, Action.VIEW_FINANCES)
    return order_service.get_purchase_order(db, purchase_order_id)


@router.post("/{purchase_order_id}/deliver", response_model=SpendingRead, status_code=201)
def confirm_delivery(
    purchase_order_id: int, db: Session = Depends(get_db), user: User = Depends(get_current_user)
) -> dict:
    material = order_service.confirm_delivery(db, user, purchase_order_id)
    return serialize_spending("materials", material)
