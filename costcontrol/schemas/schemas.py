from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

Money = Decimal
BudgetCategory = Literal["dcc", "preconstruction", "indirect", "contingency"]


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UserRead(ORMModel):
    id: int
    email: str
    full_name: Optional[str] = None
    role: str
    is_active: bool


class BudgetIn(BaseModel):
    """Either shape of project budget.

    The enhanced shape names the four categories; the legacy shape only has
    ``total`` plus optional ``materials``, ``labour`` and ``contingency``.
    """

    model_config = ConfigDict(extra="forbid")

    total: Optional[Money] = None
    direct_construction_costs: Optional[Money] = None
    pre_construction_costs: Optional[Money] = None
    indirect_costs: Optional[Money] = None
    contingency_reserve: Optional[Money] = None
    materials: Optional[Money] = None
    labour: Optional[Money] = None
    contingency: Optional[Money] = None


class BudgetRead(BaseModel):
    total: Money
    direct_construction_costs: Money
    pre_construction_costs: Money
    indirect_costs: Money
    contingency_reserve: Money


class ProjectCreate(BaseModel):
    project_code: str = Field(min_length=1, max_length=32)
    name: str = Field(min_length=1)
    status: Optional[Literal["planning", "active", "on_hold", "completed"]] = None
    budget: Optional[BudgetIn] = None


class ProjectBudgetUpdate(BaseModel):
    budget: BudgetIn
    reallocate_phases: bool = False


class ProjectRead(ORMModel):
    id: int
    project_code: str
    name: str
    status: str
    budget_total: Money
    budget_direct_construction: Money
    budget_pre_construction: Money
    budget_indirect: Money
    budget_contingency: Money
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ProjectWithWarnings(BaseModel):
    project: ProjectRead
    warnings: List[str] = []


class ProjectFinancesRead(ORMModel):
    project_id: int
    capital_balance: Money
    total_loans: Money
    total_equity: Money
    investor_count: int
    total_used: Money
    committed_cost: Money
    estimated_cost: Money
    available_capital: Money
    contingency_used: Money
    version: int
    updated_at: datetime


class CapitalCheckRead(BaseModel):
    is_valid: bool
    available: Money
    required: Money
    shortfall: Money
    message: str


class PhaseCreate(BaseModel):
    project_id: int
    name: str = Field(min_length=1)
    phase_code: str = Field(min_length=1, max_length=32)
    sequence: int = Field(ge=1)
    status: Optional[Literal["not_started", "in_progress", "on_hold", "completed"]] = None
    planned_start_date: Optional[date] = None
    planned_end_date: Optional[date] = None
    depends_on: List[int] = []


class PhaseAllocation(BaseModel):
    total: Optional[Money] = None
    materials: Optional[Money] = None
    labour: Optional[Money] = None
    equipment: Optional[Money] = None
    subcontractors: Optional[Money] = None


class PhaseDependencies(BaseModel):
    depends_on: List[int]


class PhaseScheduleUpdate(BaseModel):
    status: Optional[Literal["not_started", "in_progress", "on_hold", "completed"]] = None
    planned_start_date: Optional[date] = None
    planned_end_date: Optional[date] = None
    actual_start_date: Optional[date] = None
    actual_end_date: Optional[date] = None


class PhaseRead(ORMModel):
    id: int
    project_id: int
    name: str
    phase_code: str
    sequence: int
    status: str
    planned_start_date: Optional[date] = None
    planned_end_date: Optional[date] = None
    actual_start_date: Optional[date] = None
    actual_end_date: Optional[date] = None
    depends_on: List[int] = []
    can_start_after: Optional[date] = None
    allocation_total: Money
    allocation_materials: Money
    allocation_labour: Money
    allocation_equipment: Money
    allocation_subcontractors: Money
    allocation_contingency: Money
    actual_total: Money
    actual_materials: Money
    actual_labour: Money
    actual_equipment: Money
    actual_expenses: Money
    actual_subcontractors: Money
    committed_cost: Money
    estimated_cost: Money
    remaining_budget: Money

    @field_validator("depends_on", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return value or []


class PhaseAllocationResult(BaseModel):
    phase: PhaseRead
    dcc_budget: Money
    allocated_to_other_phases: Money
    remaining_dcc: Money


class FloorCreate(BaseModel):
    project_id: int
    floor_number: int
    name: Optional[str] = None
    budget_total: Money = Decimal("0")


class FloorRead(ORMModel):
    id: int
    project_id: int
    floor_number: int
    name: str
    budget_total: Money
    actual_total: Money
    actual_materials: Money
    actual_labour: Money
    actual_expenses: Money
    actual_subcontractors: Money
    committed_cost: Money
    remaining_budget: Money


class InvestorCreate(BaseModel):
    name: str = Field(min_length=1)
    email: Optional[str] = None


class InvestorRead(ORMModel):
    id: int
    name: str
    email: Optional[str] = None
    status: str
    archived_at: Optional[datetime] = None
    created_at: datetime


class AllocationCreate(BaseModel):
    project_id: int
    amount: Money = Field(gt=0)
    investment_type: Literal["loan", "equity"] = "equity"
    notes: Optional[str] = None


class AllocationRead(ORMModel):
    id: int
    investor_id: int
    project_id: int
    amount: Money
    investment_type: str
    notes: Optional[str] = None
    created_at: datetime


class MaterialRequestItem(BaseModel):
    phase_id: Optional[int] = None
    floor_id: Optional[int] = None
    material_name: str = Field(min_length=1)
    unit: Optional[str] = None
    quantity_needed: Decimal = Field(gt=0)
    estimated_unit_cost: Optional[Money] = None


class MaterialRequestCreate(MaterialRequestItem):
    project_id: int


class MaterialRequestBatchCreate(BaseModel):
    project_id: int
    requests: List[MaterialRequestItem] = Field(min_length=1)


class MaterialRequestRead(ORMModel):
    id: int
    project_id: int
    phase_id: Optional[int] = None
    floor_id: Optional[int] = None
    batch_id: Optional[int] = None
    material_name: str
    unit: str
    quantity_needed: Decimal
    estimated_unit_cost: Optional[Money] = None
    estimated_cost: Money
    status: str
    linked_purchase_order_id: Optional[int] = None
    approved_at: Optional[datetime] = None
    created_at: datetime


class MaterialRequestBatchRead(ORMModel):
    id: int
    project_id: int
    batch_number: str
    status: str
    approved_at: Optional[datetime] = None
    created_at: datetime
    requests: List[MaterialRequestRead] = []


class DecisionNotes(BaseModel):
    notes: Optional[str] = None


class PurchaseOrderCreate(BaseModel):
    material_request_id: int
    supplier_id: int
    quantity_ordered: Decimal = Field(gt=0)
    unit_cost: Money = Field(gt=0)
    delivery_date: date
    terms: Optional[str] = None
    notes: Optional[str] = None


class SupplierAssignment(BaseModel):
    material_request_id: int
    supplier_id: int
    quantity_ordered: Optional[Decimal] = None
    unit_cost: Optional[Money] = None
    delivery_date: date
    terms: Optional[str] = None
    notes: Optional[str] = None


class BulkPurchaseOrderCreate(BaseModel):
    batch_id: int
    assignments: List[SupplierAssignment] = Field(min_length=1)


class SupplierResponse(BaseModel):
    action: Literal["accept", "reject"]
    notes: Optional[str] = None


class PurchaseOrderRead(ORMModel):
    id: int
    purchase_order_number: str
    project_id: int
    phase_id: Optional[int] = None
    floor_id: Optional[int] = None
    material_request_id: int
    batch_id: Optional[int] = None
    supplier_id: int
    material_name: str
    unit: str
    quantity_ordered: Decimal
    unit_cost: Money
    total_cost: Money
    delivery_date: date
    status: str
    financial_status: str
    supplier_notes: Optional[str] = None
    sent_at: Optional[datetime] = None
    committed_at: Optional[datetime] = None
    realized_at: Optional[datetime] = None
    linked_material_id: Optional[int] = None
    created_at: datetime


class PurchaseOrderCreated(BaseModel):
    order: PurchaseOrderRead
    is_existing: bool
    capital: Optional[CapitalCheckRead] = None
    warnings: List[str] = []


class BulkOrderFailure(BaseModel):
    index: int
    material_request_id: Optional[int] = None
    supplier_id: Optional[int] = None
    error: str
    status_code: int


class BulkPurchaseOrderRead(BaseModel):
    batch_id: int
    batch_status: Optional[str] = None
    created: List[PurchaseOrderCreated]
    failures: List[BulkOrderFailure]


class SpendingCreate(BaseModel):
    """Fields for any leaf kind; each kind reads the ones it needs."""

    project_id: int
    phase_id: Optional[int] = None
    floor_id: Optional[int] = None
    name: Optional[str] = None
    unit: Optional[str] = None
    quantity: Optional[Decimal] = None
    unit_cost: Optional[Money] = None
    description: Optional[str] = None
    amount: Optional[Money] = None
    category: Optional[str] = None
    cost_category: Optional[str] = None
    worker_count: Optional[int] = None
    total_cost: Optional[Money] = None
    subcontractor_name: Optional[str] = None
    linked_purchase_order_id: Optional[int] = None


class SpendingUpdate(BaseModel):
    quantity: Optional[Decimal] = None
    unit_cost: Optional[Money] = None
    amount: Optional[Money] = None
    total_cost: Optional[Money] = None


class SpendingRead(BaseModel):
    id: int
    kind: str
    project_id: int
    phase_id: Optional[int] = None
    floor_id: Optional[int] = None
    status: str
    amount: Money
    description: Optional[str] = None
    approved_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    archived_with_project: bool = False
    created_at: datetime


class ContingencyDrawCreate(BaseModel):
    project_id: int
    draw_type: Literal["design", "construction", "owners_reserve"]
    amount: Money = Field(gt=0)
    reason: str = Field(min_length=1)


class ContingencyDrawRead(ORMModel):
    id: int
    project_id: int
    draw_type: str
    amount: Money
    reason: str
    status: str
    warning: Optional[str] = None
    requested_by_user_id: int
    approved_by_user_id: Optional[int] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    decision_notes: Optional[str] = None
    created_at: datetime


class ContingencySummary(BaseModel):
    project_id: int
    budgeted: Money
    used: Money
    pending: Money
    remaining: Money
    usage_percent: Decimal


class BudgetTransferCreate(BaseModel):
    project_id: int
    from_category: BudgetCategory
    to_category: BudgetCategory
    amount: Money = Field(gt=0)
    reason: str = Field(min_length=1)


class BudgetTransferRead(ORMModel):
    id: int
    project_id: int
    from_category: str
    to_category: str
    amount: Money
    reason: str
    status: str
    decision_notes: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    created_at: datetime


class BudgetAdjustmentCreate(BaseModel):
    project_id: int
    category: BudgetCategory
    adjustment_type: Literal["increase", "decrease"]
    amount: Money = Field(gt=0)
    reason: str = Field(min_length=1)


class BudgetAdjustmentRead(ORMModel):
    id: int
    project_id: int
    category: str
    adjustment_type: str
    amount: Money
    current_budget: Money
    new_budget: Money
    reason: str
    status: str
    decision_notes: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    created_at: datetime


class RecalculationResult(BaseModel):
    project_id: int
    finances: ProjectFinancesRead
    phases_recalculated: int = 0
    floors_recalculated: int = 0


class HealthRead(BaseModel):
    status: str
    database: str
    recalculation_queue: Dict[str, Any]
