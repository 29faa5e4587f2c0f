from decimal import Decimal

import pytest

from costcontrol.core.errors import ConflictError, PermissionDeniedError, ValidationError
from costcontrol.models.models import InvestorAllocation
from costcontrol.services import investors as investor_service
from costcontrol.services.finance import get_project_finances
from costcontrol.services.spending import approve_spending, record_spending


def _finances(db_session, project):
    db_session.expire_all()
    return get_project_finances(db_session, project.id)


def test_allocations_split_loans_and_equity(db_session, create_project, fund_project):
    project = create_project()
    fund_project(project, 25000, investment_type="loan", name="Harbour Bank")
    fund_project(project, 15000, name="Founders")

    finances = _finances(db_session, project)

    assert finances.total_loans == Decimal("25000.00")
    assert finances.total_equity == Decimal("15000.00")
    assert finances.capital_balance == Decimal("40000.00")
    assert finances.investor_count == 2


def test_allocation_validation(db_session, owner, create_project):
    project = create_project()
    investor = investor_service.create_investor(db_session, owner, {"name": "Northwind"})

    with pytest.raises(ValidationError):
        investor_service.allocate_capital(db_session, owner, investor.id, {"project_id": project.id, "amount": "0"})
    with pytest.raises(ValidationError):
        investor_service.allocate_capital(
            db_session,
            owner,
            investor.id,
            {"project_id": project.id, "amount": "100", "investment_type": "grant"},
        )
    with pytest.raises(ValidationError):
        investor_service.create_investor(db_session, owner, {"name": "  "})


def test_site_roles_cannot_manage_investors(db_session, create_user):
    supervisor = create_user(email="site@example.com", role_name="SUPERVISOR")

    with pytest.raises(PermissionDeniedError):
        investor_service.create_investor(db_session, supervisor, {"name": "Nope"})


def test_removal_blocked_by_spending(db_session, owner, create_project, fund_project):
    project = create_project()
    small = fund_project(project, 4000)
    large = fund_project(project, 6000, name="Second Round")
    expense = record_spending(
        db_session, owner, "expenses", project.id, {"description": "Crane hire", "amount": "7000"}
    )
    approve_spending(db_session, owner, "expenses", expense.id)

    with pytest.raises(ValidationError) as excinfo:
        investor_service.remove_allocation(db_session, owner, large.id)
    assert excinfo.value.extra["shortfall"] == Decimal("3000.00")

    with pytest.raises(ValidationError):
        investor_service.remove_allocation(db_session, owner, small.id)

    small_id = small.id
    fund_project(project, 5000, name="Bridge")
    investor_service.remove_allocation(db_session, owner, small_id)

    assert db_session.get(InvestorAllocation, small_id) is None
    assert _finances(db_session, project).available_capital == Decimal("4000.00")


def test_archiving_investor_removes_its_capital(db_session, owner, create_project, fund_project):
    first = create_project()
    second = create_project()
    allocation = fund_project(first, 10000, name="Shared Fund")
    investor_service.allocate_capital(
        db_session, owner, allocation.investor_id, {"project_id": second.id, "amount": "2500"}
    )

    archived = investor_service.archive_investor(db_session, owner, allocation.investor_id)

    assert archived.status == "archived"
    assert _finances(db_session, first).capital_balance == Decimal("0.00")
    assert _finances(db_session, second).capital_balance == Decimal("0.00")
    with pytest.raises(ConflictError):
        investor_service.allocate_capital(
            db_session, owner, allocation.investor_id, {"project_id": first.id, "amount": "1"}
        )
    assert investor_service.list_investors(db_session) == []

    investor_service.restore_investor(db_session, owner, allocation.investor_id)

    assert _finances(db_session, first).capital_balance == Decimal("10000.00")
    assert _finances(db_session, second).capital_balance == Decimal("2500.00")
    with pytest.raises(ConflictError):
        investor_service.restore_investor(db_session, owner, allocation.investor_id)
