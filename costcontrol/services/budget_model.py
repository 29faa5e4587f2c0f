"""Canonical project budget representation.

Budgets arrive in two shapes. Enhanced budgets name the four cost categories
(direct construction, pre-construction, indirect, contingency) plus a total.
Legacy budgets only carry ``total``, ``materials``, ``labour`` and an optional
``contingency``. Both are resolved once, at the boundary, into
:class:`EnhancedBudget`; nothing past :func:`resolve_budget` branches on shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, List, Mapping, Optional, Union

from ..constants import (
    BUDGET_AT_RISK_PERCENT,
    LEGACY_CONTINGENCY_RATE,
    LEGACY_INDIRECT_RATE,
    LEGACY_PRECONSTRUCTION_RATE,
    LOW_CAPITAL_RATIO,
)
from ..core.errors import ValidationError
from ..models.models import Project
from ..utils.money import ZERO, as_decimal, floor_zero, format_amount, percent_of, quantize

ENHANCED_FIELDS = (
    "direct_construction_costs",
    "pre_construction_costs",
    "indirect_costs",
    "contingency_reserve",
)

# Divergence below one cent is rounding noise.
SUM_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class EnhancedBudget:
    total: Decimal
    direct_construction_costs: Decimal
    pre_construction_costs: Decimal
    indirect_costs: Decimal
    contingency_reserve: Decimal

    @property
    def category_sum(self) -> Decimal:
        return (
            self.direct_construction_costs
            + self.pre_construction_costs
            + self.indirect_costs
            + self.contingency_reserve
        )

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "direct_construction_costs": self.direct_construction_costs,
            "pre_construction_costs": self.pre_construction_costs,
            "indirect_costs": self.indirect_costs,
            "contingency_reserve": self.contingency_reserve,
        }


@dataclass(frozen=True)
class LegacyBudget:
    total: Decimal
    materials: Decimal = ZERO
    labour: Decimal = ZERO
    contingency: Optional[Decimal] = None


@dataclass(frozen=True)
class BudgetValidation:
    budget: EnhancedBudget
    warnings: List[str] = field(default_factory=list)


BudgetLike = Union[EnhancedBudget, LegacyBudget, Mapping[str, Any]]


def is_enhanced_budget(budget: Any) -> bool:
    if isinstance(budget, EnhancedBudget):
        return True
    if isinstance(budget, LegacyBudget) or budget is None:
        return False
    if isinstance(budget, Mapping):
        return all(budget.get(name) is not None for name in ENHANCED_FIELDS)
    return all(getattr(budget, name, None) is not None for name in ENHANCED_FIELDS)


def convert_legacy_to_enhanced(legacy: Union[LegacyBudget, Mapping[str, Any]]) -> EnhancedBudget:
    if isinstance(legacy, Mapping):
        legacy = LegacyBudget(
            total=as_decimal(legacy.get("total")),
            materials=as_decimal(legacy.get("materials")),
            labour=as_decimal(legacy.get("labour")),
            contingency=None if legacy.get("contingency") is None else as_decimal(legacy.get("contingency")),
        )
    total = quantize(legacy.total)
    pre_construction = quantize(total * LEGACY_PRECONSTRUCTION_RATE)
    indirect = quantize(total * LEGACY_INDIRECT_RATE)
    if legacy.contingency is None:
        contingency = quantize(total * LEGACY_CONTINGENCY_RATE)
    else:
        contingency = quantize(legacy.contingency)
    dcc = floor_zero(total - pre_construction - indirect - contingency)
    return EnhancedBudget(
        total=total,
        direct_construction_costs=quantize(dcc),
        pre_construction_costs=pre_construction,
        indirect_costs=indirect,
        contingency_reserve=contingency,
    )


def create_enhanced_budget(partial: Mapping[str, Any]) -> EnhancedBudget:
    """Build an enhanced budget, treating absent categories as zero.

    When ``total`` is not given it becomes the sum of the categories.
    """
    dcc = quantize(as_decimal(partial.get("direct_construction_costs")))
    pre = quantize(as_decimal(partial.get("pre_construction_costs")))
    indirect = quantize(as_decimal(partial.get("indirect_costs")))
    contingency = quantize(as_decimal(partial.get("contingency_reserve")))
    if partial.get("total") is None:
        total = dcc + pre + indirect + contingency
    else:
        total = quantize(as_decimal(partial.get("total")))
    return EnhancedBudget(
        total=total,
        direct_construction_costs=dcc,
        pre_construction_costs=pre,
        indirect_costs=indirect,
        contingency_reserve=contingency,
    )


def validate_budget(budget: EnhancedBudget) -> BudgetValidation:
    negatives = [name for name, value in budget.as_dict().items() if value < ZERO]
    if negatives:
        raise ValidationError(
            "Budget categories cannot be negative",
            fields=negatives,
        )
    warnings: List[str] = []
    variance = budget.category_sum - budget.total
    if abs(variance) > SUM_TOLERANCE:
        warnings.append(
            f"Budget categories sum to {format_amount(budget.category_sum)} "
            f"but total is {format_amount(budget.total)} (variance {format_amount(variance)})"
        )
    if budget.total > ZERO and budget.direct_construction_costs == ZERO:
        warnings.append("Direct construction costs are zero; phase allocations will not be checked against a ceiling")
    return BudgetValidation(budget=budget, warnings=warnings)


def get_budget_total(budget: Optional[BudgetLike]) -> Decimal:
    if budget is None:
        return ZERO
    if isinstance(budget, (EnhancedBudget, LegacyBudget)):
        return quantize(budget.total)
    if isinstance(budget, Mapping):
        if budget.get("total") is not None:
            return quantize(as_decimal(budget.get("total")))
        if is_enhanced_budget(budget):
            return create_enhanced_budget(budget).total
        return ZERO
    return quantize(as_decimal(getattr(budget, "total", None)))


def resolve_budget(payload: Optional[BudgetLike]) -> EnhancedBudget:
    """Single boundary resolver for the legacy/enhanced union."""
    if payload is None:
        return create_enhanced_budget({})
    if isinstance(payload, EnhancedBudget):
        return payload
    if isinstance(payload, LegacyBudget):
        return convert_legacy_to_enhanced(payload)
    if hasattr(payload, "model_dump"):
        payload = payload.model_dump(exclude_none=True)
    if not isinstance(payload, Mapping):
        raise ValidationError("Unrecognised budget payload")
    if is_enhanced_budget(payload):
        return create_enhanced_budget(payload)
    if any(payload.get(name) is not None for name in ENHANCED_FIELDS):
        # Partially specified enhanced budget.
        return create_enhanced_budget(payload)
    return convert_legacy_to_enhanced(payload)


def budget_from_project(project: Project) -> EnhancedBudget:
    return EnhancedBudget(
        total=quantize(as_decimal(project.budget_total)),
        direct_construction_costs=quantize(as_decimal(project.budget_direct_construction)),
        pre_construction_costs=quantize(as_decimal(project.budget_pre_construction)),
        indirect_costs=quantize(as_decimal(project.budget_indirect)),
        contingency_reserve=quantize(as_decimal(project.budget_contingency)),
    )


def apply_budget(project: Project, budget: EnhancedBudget) -> None:
    project.budget_total = budget.total
    project.budget_direct_construction = budget.direct_construction_costs
    project.budget_pre_construction = budget.pre_construction_costs
    project.budget_indirect = budget.indirect_costs
    project.budget_contingency = budget.contingency_reserve


def get_budget_status(budget_total: Any, actual: Any, committed: Any = ZERO) -> dict:
    total = as_decimal(budget_total)
    actual_amount = as_decimal(actual)
    committed_amount = as_decimal(committed)
    if total <= ZERO:
        return {"status": "not_set", "usage_percent": ZERO, "committed_percent": ZERO}
    usage = percent_of(actual_amount, total)
    with_commitments = percent_of(actual_amount + committed_amount, total)
    if usage > Decimal("100"):
        status = "over_budget"
    elif usage > BUDGET_AT_RISK_PERCENT or with_commitments > Decimal("100"):
        status = "at_risk"
    else:
        status = "on_budget"
    return {"status": status, "usage_percent": usage, "committed_percent": with_commitments}


def get_capital_status(capital_balance: Any, total_used: Any, committed: Any = ZERO) -> dict:
    capital = as_decimal(capital_balance)
    if capital <= ZERO:
        return {"status": "not_set", "usage_percent": ZERO}
    used = as_decimal(total_used)
    available = capital - used - as_decimal(committed)
    usage = percent_of(used, capital)
    if used > capital:
        status = "overspent"
    elif available < capital * LOW_CAPITAL_RATIO:
        status = "low"
    else:
        status = "healthy"
    return {"status": status, "usage_percent": usage}
