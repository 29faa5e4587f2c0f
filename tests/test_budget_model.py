from decimal import Decimal

import pytest

from costcontrol.core.errors import ValidationError
from costcontrol.schemas.schemas import BudgetIn
from costcontrol.services.budget_model import (
    EnhancedBudget,
    LegacyBudget,
    convert_legacy_to_enhanced,
    create_enhanced_budget,
    get_budget_status,
    get_budget_total,
    get_capital_status,
    is_enhanced_budget,
    resolve_budget,
    validate_budget,
)


def test_legacy_budget_converts_with_default_category_rates():
    budget = convert_legacy_to_enhanced({"total": "100000", "materials": "60000", "labour": "20000"})

    assert budget.total == Decimal("100000.00")
    assert budget.pre_construction_costs == Decimal("5000.00")
    assert budget.indirect_costs == Decimal("5000.00")
    assert budget.contingency_reserve == Decimal("5000.00")
    assert budget.direct_construction_costs == Decimal("85000.00")
    assert budget.category_sum == budget.total


def test_explicit_zero_legacy_contingency_is_kept():
    budget = convert_legacy_to_enhanced(LegacyBudget(total=Decimal("100000"), contingency=Decimal("0")))

    assert budget.contingency_reserve == Decimal("0.00")
    assert budget.direct_construction_costs == Decimal("90000.00")


def test_partial_enhanced_budget_fills_zeroes_and_derives_total():
    budget = create_enhanced_budget({"direct_construction_costs": "800", "contingency_reserve": "200"})

    assert budget.pre_construction_costs == Decimal("0.00")
    assert budget.indirect_costs == Decimal("0.00")
    assert budget.total == Decimal("1000.00")


def test_resolve_budget_accepts_either_shape():
    enhanced = resolve_budget(
        BudgetIn(
            total=Decimal("500"),
            direct_construction_costs=Decimal("400"),
            pre_construction_costs=Decimal("50"),
            indirect_costs=Decimal("25"),
            contingency_reserve=Decimal("25"),
        )
    )
    legacy = resolve_budget({"total": Decimal("500")})

    assert isinstance(enhanced, EnhancedBudget)
    assert enhanced.direct_construction_costs == Decimal("400.00")
    assert legacy.direct_construction_costs == Decimal("425.00")
    assert resolve_budget(None).total == Decimal("0.00")


def test_is_enhanced_budget_requires_every_category():
    assert is_enhanced_budget(
        {
            "direct_construction_costs": 1,
            "pre_construction_costs": 1,
            "indirect_costs": 1,
            "contingency_reserve": 1,
        }
    )
    assert not is_enhanced_budget({"total": 1, "direct_construction_costs": 1})
    assert not is_enhanced_budget(None)


def test_validate_budget_warns_on_category_variance():
    budget = create_enhanced_budget(
        {
            "total": "1000",
            "direct_construction_costs": "700",
            "pre_construction_costs": "100",
            "indirect_costs": "100",
            "contingency_reserve": "50",
        }
    )

    result = validate_budget(budget)

    assert result.budget is budget
    assert len(result.warnings) == 1
    assert "variance -50" in result.warnings[0]


def test_validate_budget_ignores_sub_cent_rounding():
    budget = EnhancedBudget(
        total=Decimal("100.00"),
        direct_construction_costs=Decimal("33.33"),
        pre_construction_costs=Decimal("33.33"),
        indirect_costs=Decimal("33.33"),
        contingency_reserve=Decimal("0.00"),
    )

    assert validate_budget(budget).warnings == []


def test_validate_budget_rejects_negative_categories():
    budget = create_enhanced_budget({"direct_construction_costs": "-1", "indirect_costs": "10"})

    with pytest.raises(ValidationError) as excinfo:
        validate_budget(budget)

    assert excinfo.value.extra["fields"] == ["direct_construction_costs"]


def test_get_budget_total_handles_both_shapes():
    assert get_budget_total(None) == Decimal("0")
    assert get_budget_total({"total": "250.5"}) == Decimal("250.50")
    assert (
        get_budget_total(
            {
                "direct_construction_costs": 10,
                "pre_construction_costs": 10,
                "indirect_costs": 10,
                "contingency_reserve": 10,
            }
        )
        == Decimal("40.00")
    )


def test_budget_status_bands():
    assert get_budget_status(0, 10)["status"] == "not_set"
    assert get_budget_status(1000, 500)["status"] == "on_budget"
    assert get_budget_status(1000, 850)["status"] == "at_risk"
    assert get_budget_status(1000, 600, 500)["status"] == "at_risk"
    assert get_budget_status(1000, 1001)["status"] == "over_budget"


def test_capital_status_bands():
    assert get_capital_status(0, 0)["status"] == "not_set"
    assert get_capital_status(1000, 100)["status"] == "healthy"
    assert get_capital_status(1000, 950)["status"] == "low"
    assert get_capital_status(1000, 1200)["status"] == "overspent"
