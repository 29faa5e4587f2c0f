from datetime import datetime, timezone
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship as orm_relationship

from ..config import Base


def utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    full_name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="CLERK")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    audit_logs = orm_relationship("AuditLog", back_populates="actor")
    notifications = orm_relationship("Notification", back_populates="user", cascade="all, delete-orphan")

    def has_role(self, role_name: str) -> bool:
        return (self.role or "").upper() == role_name.upper()

    def has_any_role(self, *role_names: str) -> bool:
        return any(self.has_role(name) for name in role_names)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=utcnow, index=True, nullable=False)
    actor_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    target_entity_type = Column(String, nullable=True)
    target_entity_id = Column(String, nullable=True)
    project_id = Column(Integer, nullable=True, index=True)
    changes = Column(Text, nullable=True)

    actor = orm_relationship("User", back_populates="audit_logs")


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    level = Column(String, default="info", nullable=False)
    category = Column(String, nullable=True)
    link_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    read_at = Column(DateTime, nullable=True)

    user = orm_relationship("User", back_populates="notifications")


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    project_code = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")
    pre_archive_status = Column(String, nullable=True)
    budget_total = Column(Numeric(14, 2), nullable=False, default=0)
    budget_direct_construction = Column(Numeric(14, 2), nullable=False, default=0)
    budget_pre_construction = Column(Numeric(14, 2), nullable=False, default=0)
    budget_indirect = Column(Numeric(14, 2), nullable=False, default=0)
    budget_contingency = Column(Numeric(14, 2), nullable=False, default=0)
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    archived_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    phases = orm_relationship("Phase", back_populates="project", order_by="Phase.sequence")
    floors = orm_relationship("Floor", back_populates="project", order_by="Floor.floor_number")
    finances = orm_relationship("ProjectFinances", back_populates="project", uselist=False)


class ProjectFinances(Base):
    """Derived snapshot, always rewritten from a full rescan of leaf records."""

    __tablename__ = "project_finances"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, unique=True, index=True)
    capital_balance = Column(Numeric(14, 2), nullable=False, default=0)
    total_loans = Column(Numeric(14, 2), nullable=False, default=0)
    total_equity = Column(Numeric(14, 2), nullable=False, default=0)
    investor_count = Column(Integer, nullable=False, default=0)
    total_used = Column(Numeric(14, 2), nullable=False, default=0)
    committed_cost = Column(Numeric(14, 2), nullable=False, default=0)
    estimated_cost = Column(Numeric(14, 2), nullable=False, default=0)
    available_capital = Column(Numeric(14, 2), nullable=False, default=0)
    contingency_used = Column(Numeric(14, 2), nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    project = orm_relationship("Project", back_populates="finances")


class Phase(Base):
    __tablename__ = "phases"
    __table_args__ = (
        UniqueConstraint("project_id", "phase_code", name="uq_phase_project_code"),
        UniqueConstraint("project_id", "sequence", name="uq_phase_project_sequence"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    phase_code = Column(String, nullable=False)
    sequence = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default="not_started")
    planned_start_date = Column(Date, nullable=True)
    planned_end_date = Column(Date, nullable=True)
    actual_start_date = Column(Date, nullable=True)
    actual_end_date = Column(Date, nullable=True)
    depends_on = Column(JSON, nullable=False, default=list)
    can_start_after = Column(Date, nullable=True)

    allocation_total = Column(Numeric(14, 2), nullable=False, default=0)
    allocation_materials = Column(Numeric(14, 2), nullable=False, default=0)
    allocation_labour = Column(Numeric(14, 2), nullable=False, default=0)
    allocation_equipment = Column(Numeric(14, 2), nullable=False, default=0)
    allocation_subcontractors = Column(Numeric(14, 2), nullable=False, default=0)
    allocation_contingency = Column(Numeric(14, 2), nullable=False, default=0)

    actual_total = Column(Numeric(14, 2), nullable=False, default=0)
    actual_materials = Column(Numeric(14, 2), nullable=False, default=0)
    actual_labour = Column(Numeric(14, 2), nullable=False, default=0)
    actual_equipment = Column(Numeric(14, 2), nullable=False, default=0)
    actual_expenses = Column(Numeric(14, 2), nullable=False, default=0)
    actual_subcontractors = Column(Numeric(14, 2), nullable=False, default=0)

    committed_cost = Column(Numeric(14, 2), nullable=False, default=0)
    estimated_cost = Column(Numeric(14, 2), nullable=False, default=0)
    remaining_budget = Column(Numeric(14, 2), nullable=False, default=0)

    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    project = orm_relationship("Project", back_populates="phases")


class Floor(Base):
    __tablename__ = "floors"
    __table_args__ = (UniqueConstraint("project_id", "floor_number", name="uq_floor_project_number"),)

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    floor_number = Column(Integer, nullable=False)
    name = Column(String, nullable=False)
    budget_total = Column(Numeric(14, 2), nullable=False, default=0)

    actual_total = Column(Numeric(14, 2), nullable=False, default=0)
    actual_materials = Column(Numeric(14, 2), nullable=False, default=0)
    actual_labour = Column(Numeric(14, 2), nullable=False, default=0)
    actual_expenses = Column(Numeric(14, 2), nullable=False, default=0)
    actual_subcontractors = Column(Numeric(14, 2), nullable=False, default=0)
    committed_cost = Column(Numeric(14, 2), nullable=False, default=0)
    remaining_budget = Column(Numeric(14, 2), nullable=False, default=0)

    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    project = orm_relationship("Project", back_populates="floors")


class Investor(Base):
    __tablename__ = "investors"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    archived_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    allocations = orm_relationship("InvestorAllocation", back_populates="investor", cascade="all, delete-orphan")


class InvestorAllocation(Base):
    __tablename__ = "investor_allocations"

    id = Column(Integer, primary_key=True, index=True)
    investor_id = Column(Integer, ForeignKey("investors.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    amount = Column(Numeric(14, 2), nullable=False)
    investment_type = Column(String, nullable=False, default="equity")
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    investor = orm_relationship("Investor", back_populates="allocations")


class Supplier(Base):
    __tablename__ = "suppliers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    status = Column(String, nullable=False, default="active")
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class MaterialRequestBatch(Base):
    __tablename__ = "material_request_batches"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    batch_number = Column(String, unique=True, nullable=False)
    status = Column(String, nullable=False, default="pending")
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    requests = orm_relationship("MaterialRequest", back_populates="batch")


class MaterialRequest(Base):
    __tablename__ = "material_requests"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey("phases.id"), nullable=True, index=True)
    floor_id = Column(Integer, ForeignKey("floors.id"), nullable=True, index=True)
    batch_id = Column(Integer, ForeignKey("material_request_batches.id"), nullable=True, index=True)
    material_name = Column(String, nullable=False)
    unit = Column(String, nullable=False, default="piece")
    quantity_needed = Column(Numeric(14, 3), nullable=False)
    estimated_unit_cost = Column(Numeric(14, 2), nullable=True)
    estimated_cost = Column(Numeric(14, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")
    linked_purchase_order_id = Column(Integer, nullable=True, index=True)
    requested_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    batch = orm_relationship("MaterialRequestBatch", back_populates="requests")


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    id = Column(Integer, primary_key=True, index=True)
    purchase_order_number = Column(String, unique=True, nullable=False)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey("phases.id"), nullable=True, index=True)
    floor_id = Column(Integer, ForeignKey("floors.id"), nullable=True, index=True)
    material_request_id = Column(Integer, ForeignKey("material_requests.id"), nullable=False, index=True)
    batch_id = Column(Integer, ForeignKey("material_request_batches.id"), nullable=True)
    supplier_id = Column(Integer, ForeignKey("suppliers.id"), nullable=False, index=True)
    material_name = Column(String, nullable=False)
    unit = Column(String, nullable=False, default="piece")
    quantity_ordered = Column(Numeric(14, 3), nullable=False)
    unit_cost = Column(Numeric(14, 2), nullable=False)
    total_cost = Column(Numeric(14, 2), nullable=False)
    delivery_date = Column(Date, nullable=False)
    terms = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="order_sent")
    financial_status = Column(String, nullable=False, default="not_committed")
    # Not unique: an orphaned order keeps its key when a replacement is created.
    idempotency_key = Column(String(64), nullable=False, index=True)
    response_token = Column(String, unique=True, nullable=False)
    supplier_notes = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    supplier_responded_at = Column(DateTime, nullable=True)
    committed_at = Column(DateTime, nullable=True)
    realized_at = Column(DateTime, nullable=True)
    linked_material_id = Column(Integer, nullable=True)
    created_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    supplier = orm_relationship("Supplier")
    material_request = orm_relationship("MaterialRequest", foreign_keys=[material_request_id])


class Material(Base):
    __tablename__ = "materials"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey("phases.id"), nullable=True, index=True)
    floor_id = Column(Integer, ForeignKey("floors.id"), nullable=True, index=True)
    material_request_id = Column(Integer, ForeignKey("material_requests.id"), nullable=True)
    linked_purchase_order_id = Column(Integer, ForeignKey("purchase_orders.id"), nullable=True)
    name = Column(String, nullable=False)
    unit = Column(String, nullable=False, default="piece")
    quantity = Column(Numeric(14, 3), nullable=False, default=0)
    unit_cost = Column(Numeric(14, 2), nullable=False, default=0)
    total_cost = Column(Numeric(14, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="pending")
    recorded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    archived_with_project = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Expense(Base):
    __tablename__ = "expenses"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey("phases.id"), nullable=True, index=True)
    floor_id = Column(Integer, ForeignKey("floors.id"), nullable=True, index=True)
    description = Column(String, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    category = Column(String, nullable=False, default="general")
    cost_category = Column(String, nullable=False, default="direct")
    status = Column(String, nullable=False, default="pending")
    recorded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    archived_with_project = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class LabourBatch(Base):
    __tablename__ = "labour_batches"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey("phases.id"), nullable=True, index=True)
    floor_id = Column(Integer, ForeignKey("floors.id"), nullable=True, index=True)
    description = Column(String, nullable=False)
    worker_count = Column(Integer, nullable=False, default=1)
    total_cost = Column(Numeric(14, 2), nullable=False)
    status = Column(String, nullable=False, default="pending")
    recorded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    archived_with_project = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SubcontractorPayment(Base):
    __tablename__ = "subcontractor_payments"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    phase_id = Column(Integer, ForeignKey("phases.id"), nullable=True, index=True)
    floor_id = Column(Integer, ForeignKey("floors.id"), nullable=True, index=True)
    subcontractor_name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    amount = Column(Numeric(14, 2), nullable=False)
    status = Column(String, nullable=False, default="pending")
    recorded_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    archived_with_project = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ContingencyDraw(Base):
    __tablename__ = "contingency_draws"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    draw_type = Column(String, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")
    warning = Column(Text, nullable=True)
    requested_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    decision_notes = Column(Text, nullable=True)
    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    requested_by = orm_relationship("User", foreign_keys=[requested_by_user_id])
    approved_by = orm_relationship("User", foreign_keys=[approved_by_user_id])


class BudgetTransfer(Base):
    __tablename__ = "budget_transfers"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    from_category = Column(String, nullable=False)
    to_category = Column(String, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")
    requested_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    decision_notes = Column(Text, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class BudgetAdjustment(Base):
    __tablename__ = "budget_adjustments"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id"), nullable=False, index=True)
    category = Column(String, nullable=False)
    adjustment_type = Column(String, nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)
    current_budget = Column(Numeric(14, 2), nullable=False)
    new_budget = Column(Numeric(14, 2), nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")
    requested_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    approved_by_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    decision_notes = Column(Text, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    executed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
