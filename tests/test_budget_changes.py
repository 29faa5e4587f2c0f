from decimal import Decimal

import pytest

from costcontrol.core.errors import ConflictError, PermissionDeniedError, ValidationError
from costcontrol.services import budget_changes as change_service
from costcontrol.services.contingency import approve_contingency_draw, request_contingency_draw
from costcontrol.services.spending import approve_spending, record_spending


def _transfer(source, destination, amount, reason="Re-baseline after tender"):
    return {"from_category": source, "to_category": destination, "amount": Decimal(str(amount)), "reason": reason}


def _adjustment(category, adjustment_type, amount, reason="Scope change"):
    return {
        "category": category,
        "adjustment_type": adjustment_type,
        "amount": Decimal(str(amount)),
        "reason": reason,
    }


def test_transfer_moves_budget_between_categories(db_session, owner, create_project):
    project = create_project()

    transfer = change_service.request_budget_transfer(
        db_session, owner, project.id, _transfer("preconstruction", "indirect", 20000)
    )
    assert transfer.status == "pending"
    approved = change_service.approve_budget_transfer(db_session, owner, transfer.id, "Agreed")

    db_session.refresh(project)
    assert approved.status == "approved"
    assert approved.executed_at is not None
    assert project.budget_pre_construction == Decimal("30000.00")
    assert project.budget_indirect == Decimal("70000.00")
    assert project.budget_total == Decimal("1000000.00")

    history = change_service.get_transfer_history(db_session, project.id)
    assert history["total_transferred"] == Decimal("20000.00")
    assert history["pending_count"] == 0
    assert history["net_by_category"]["preconstruction"] == Decimal("-20000.00")
    assert history["net_by_category"]["indirect"] == Decimal("20000.00")


def test_transfer_rules(db_session, owner, create_project):
    project = create_project()

    with pytest.raises(ValidationError):
        change_service.request_budget_transfer(db_session, owner, project.id, _transfer("dcc", "contingency", 10))
    with pytest.raises(ValidationError):
        change_service.request_budget_transfer(db_session, owner, project.id, _transfer("indirect", "indirect", 10))
    with pytest.raises(ValidationError):
        change_service.request_budget_transfer(db_session, owner, project.id, _transfer("labour", "indirect", 10))
    with pytest.raises(ValidationError):
        change_service.request_budget_transfer(db_session, owner, project.id, _transfer("dcc", "indirect", 10, ""))


def test_dcc_transfer_is_limited_by_phase_allocations(db_session, owner, create_project, create_phase):
    project = create_project()
    create_phase(project, allocation=Decimal("700000"))

    with pytest.raises(ValidationError) as excinfo:
        change_service.request_budget_transfer(db_session, owner, project.id, _transfer("dcc", "indirect", 150000))

    assert "available: 100000, required: 150000" in excinfo.value.detail
    summary = change_service.get_category_summary(db_session, project.id)
    assert summary["dcc"]["allocated_to_phases"] == Decimal("700000.00")
    assert summary["dcc"]["remaining"] == Decimal("100000.00")
    assert summary["contingency"]["label"] == "Contingency Reserve"


def test_contingency_cannot_be_transferred_once_drawn(db_session, owner, create_project, fund_project):
    project = create_project()
    fund_project(project, 100000)
    change_service.request_budget_transfer(db_session, owner, project.id, _transfer("contingency", "dcc", 5000))
    draw, _ = request_contingency_draw(
        db_session, owner, project.id, {"draw_type": "design", "amount": Decimal("1000"), "reason": "Redesign"}
    )
    approve_contingency_draw(db_session, owner, draw.id)

    with pytest.raises(ValidationError) as excinfo:
        change_service.request_budget_transfer(db_session, owner, project.id, _transfer("contingency", "dcc", 5000))

    assert "drawn on" in excinfo.value.detail


def test_transfer_approval_revalidates(db_session, owner, create_project):
    project = create_project()
    first = change_service.request_budget_transfer(
        db_session, owner, project.id, _transfer("preconstruction", "dcc", 40000)
    )
    second = change_service.request_budget_transfer(
        db_session, owner, project.id, _transfer("preconstruction", "dcc", 40000)
    )

    change_service.approve_budget_transfer(db_session, owner, first.id)

    with pytest.raises(ValidationError):
        change_service.approve_budget_transfer(db_session, owner, second.id)
    db_session.refresh(second)
    assert second.status == "pending"


def test_rejected_transfer_is_final(db_session, owner, create_project):
    project = create_project()
    transfer = change_service.request_budget_transfer(
        db_session, owner, project.id, _transfer("indirect", "dcc", 1000)
    )

    rejected = change_service.reject_budget_transfer(db_session, owner, transfer.id, "Not now")

    assert rejected.status == "rejected"
    assert rejected.decision_notes == "Not now"
    with pytest.raises(ConflictError):
        change_service.approve_budget_transfer(db_session, owner, transfer.id)


def test_only_owner_approves_budget_changes(db_session, create_user, create_project):
    accountant = create_user(email="accounts@example.com", role_name="ACCOUNTANT")
    project = create_project()
    transfer = change_service.request_budget_transfer(
        db_session, accountant, project.id, _transfer("indirect", "dcc", 1000)
    )

    with pytest.raises(PermissionDeniedError):
        change_service.approve_budget_transfer(db_session, accountant, transfer.id)


def test_adjustment_increase_moves_total(db_session, owner, create_project):
    project = create_project()

    adjustment = change_service.request_budget_adjustment(
        db_session, owner, project.id, _adjustment("dcc", "increase", 100000)
    )
    assert adjustment.current_budget == Decimal("800000.00")
    assert adjustment.new_budget == Decimal("900000.00")
    approved = change_service.approve_budget_adjustment(db_session, owner, adjustment.id)

    db_session.refresh(project)
    assert approved.executed_at is not None
    assert project.budget_direct_construction == Decimal("900000.00")
    assert project.budget_total == Decimal("1100000.00")


def test_adjustment_cannot_cut_below_spend(db_session, owner, create_project, fund_project):
    project = create_project()
    fund_project(project, 100000)
    expense = record_spending(
        db_session,
        owner,
        "expenses",
        project.id,
        {"description": "Site office rental", "amount": Decimal("30000"), "cost_category": "indirect"},
    )
    approve_spending(db_session, owner, "expenses", expense.id)

    with pytest.raises(ValidationError) as excinfo:
        change_service.request_budget_adjustment(
            db_session, owner, project.id, _adjustment("indirect", "decrease", 30000)
        )
    assert "available: 20000, required: 30000" in excinfo.value.detail

    adjustment = change_service.request_budget_adjustment(
        db_session, owner, project.id, _adjustment("indirect", "decrease", 20000)
    )
    change_service.approve_budget_adjustment(db_session, owner, adjustment.id)

    db_session.refresh(project)
    assert project.budget_indirect == Decimal("30000.00")
    assert project.budget_total == Decimal("980000.00")


def test_adjustment_history_nets_changes(db_session, owner, create_project):
    project = create_project()
    increase = change_service.request_budget_adjustment(
        db_session, owner, project.id, _adjustment("indirect", "increase", 5000)
    )
    decrease = change_service.request_budget_adjustment(
        db_session, owner, project.id, _adjustment("preconstruction", "decrease", 2000)
    )
    change_service.request_budget_adjustment(db_session, owner, project.id, _adjustment("dcc", "increase", 1))
    change_service.approve_budget_adjustment(db_session, owner, increase.id)
    change_service.approve_budget_adjustment(db_session, owner, decrease.id)

    history = change_service.get_adjustment_history(db_session, project.id)

    assert history["pending_count"] == 1
    assert history["total_increases"] == Decimal("5000.00")
    assert history["total_decreases"] == Decimal("2000.00")
    assert history["net_change"] == Decimal("3000.00")
    assert len(history["adjustments"]) == 3
