from decimal import Decimal

import pytest

from costcontrol.core.errors import ValidationError
from costcontrol.services.capital import (
    ensure_capital_available,
    get_financial_overview,
    validate_capital_availability,
    validate_capital_removal,
)
from costcontrol.services.spending import approve_spending, record_spending


def test_capital_check_reports_shortfall(db_session, create_project, fund_project):
    project = create_project()
    fund_project(project, 30000)

    check = validate_capital_availability(db_session, project.id, Decimal("50000"))

    assert not check.is_valid
    assert check.available == Decimal("30000.00")
    assert check.required == Decimal("50000.00")
    assert check.shortfall == Decimal("20000.00")
    assert "available: 30000, required: 50000" in check.message


def test_capital_check_passes_within_balance(db_session, create_project, fund_project):
    project = create_project()
    fund_project(project, 30000)

    check = validate_capital_availability(db_session, project.id, "29999.99")

    assert check.is_valid
    assert check.shortfall == Decimal("0")


def test_capital_check_rejects_non_positive_amount(db_session, create_project, fund_project):
    project = create_project()
    fund_project(project, 1000)

    check = validate_capital_availability(db_session, project.id, 0)

    assert not check.is_valid
    assert check.message == "Commitment amount must be greater than zero"


def test_ensure_capital_available_raises_with_figures(db_session, create_project):
    project = create_project()

    with pytest.raises(ValidationError) as excinfo:
        ensure_capital_available(db_session, project.id, 100)

    assert excinfo.value.extra["available"] == Decimal("0.00")
    assert excinfo.value.extra["required"] == Decimal("100.00")


def test_capital_removal_respects_used_amounts(db_session, owner, create_project, fund_project):
    project = create_project()
    fund_project(project, 10000)
    expense = record_spending(
        db_session, owner, "expenses", project.id, {"description": "Site fencing", "amount": Decimal("6000")}
    )
    approve_spending(db_session, owner, "expenses", expense.id)

    blocked = validate_capital_removal(db_session, project.id, Decimal("5000"))
    allowed = validate_capital_removal(db_session, project.id, Decimal("4000"))

    assert not blocked.is_valid
    assert blocked.shortfall == Decimal("1000.00")
    assert allowed.is_valid


def test_financial_overview_warns_when_budget_exceeds_capital(db_session, create_project, fund_project):
    project = create_project()
    fund_project(project, 50000)

    overview = get_financial_overview(db_session, project.id)

    types = {warning["type"] for warning in overview["warnings"]}
    assert "budget_exceeds_capital" in types
    assert overview["finances"]["capital_balance"] == Decimal("50000.00")
    assert overview["capital_status"]["status"] == "healthy"
