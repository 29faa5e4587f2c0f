from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List

from sqlalchemy.orm import Session

from ..constants import HIGH_COMMITMENT_RATIO, LOW_CAPITAL_RATIO
from ..core.errors import ValidationError
from ..utils.money import ZERO, as_decimal, format_amount, quantize
from .budget_model import budget_from_project, get_budget_status, get_capital_status
from .finance import get_project, get_project_finances

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapitalCheck:
    is_valid: bool
    available: Decimal
    required: Decimal
    shortfall: Decimal
    message: str
    snapshot_version: int

    def as_dict(self) -> dict:
        return {
            "is_valid": self.is_valid,
            "available": self.available,
            "required": self.required,
            "shortfall": self.shortfall,
            "message": self.message,
        }


def validate_capital_availability(session: Session, project_id: int, amount: Any) -> CapitalCheck:
    """Point-in-time check against the persisted finances snapshot.

    An insufficient balance is a normal result (``is_valid=False``), not an error.
    """
    required = quantize(as_decimal(amount))
    finances = get_project_finances(session, project_id)
    available = quantize(
        as_decimal(finances.capital_balance) - as_decimal(finances.total_used) - as_decimal(finances.committed_cost)
    )
    version = finances.version or 0

    if required <= ZERO:
        return CapitalCheck(
            is_valid=False,
            available=available,
            required=required,
            shortfall=ZERO,
            message="Commitment amount must be greater than zero",
            snapshot_version=version,
        )
    if required > available:
        shortfall = quantize(required - available)
        return CapitalCheck(
            is_valid=False,
            available=available,
            required=required,
            shortfall=shortfall,
            message=(
                f"Insufficient capital. available: {format_amount(available)}, "
                f"required: {format_amount(required)}, shortfall: {format_amount(shortfall)}"
            ),
            snapshot_version=version,
        )
    return CapitalCheck(
        is_valid=True,
        available=available,
        required=required,
        shortfall=ZERO,
        message="Sufficient capital available",
        snapshot_version=version,
    )


def ensure_capital_available(session: Session, project_id: int, amount: Any) -> CapitalCheck:
    check = validate_capital_availability(session, project_id, amount)
    if not check.is_valid:
        logger.info("Capital check rejected for project %s: %s", project_id, check.message)
        raise ValidationError(
            check.message,
            available=check.available,
            required=check.required,
            shortfall=check.shortfall,
        )
    return check


def validate_capital_removal(session: Session, project_id: int, amount: Any) -> CapitalCheck:
    """Whether ``amount`` of investor capital can be withdrawn from a project."""
    removal = quantize(as_decimal(amount))
    finances = get_project_finances(session, project_id)
    capital = quantize(as_decimal(finances.capital_balance))
    obligations = quantize(as_decimal(finances.total_used) + as_decimal(finances.committed_cost))
    remaining = quantize(capital - removal)
    version = finances.version or 0
    if removal <= ZERO:
        return CapitalCheck(False, remaining, removal, ZERO, "Removal amount must be greater than zero", version)
    if remaining < obligations:
        shortfall = quantize(obligations - remaining)
        return CapitalCheck(
            is_valid=False,
            available=quantize(capital - obligations),
            required=removal,
            shortfall=shortfall,
            message=(
                f"Cannot remove capital. remaining capital would be {format_amount(remaining)} "
                f"but {format_amount(obligations)} is already used or committed"
            ),
            snapshot_version=version,
        )
    return CapitalCheck(True, quantize(capital - obligations), removal, ZERO, "Capital can be removed", version)


def get_financial_overview(session: Session, project_id: int) -> dict:
    project = get_project(session, project_id)
    finances = get_project_finances(session, project_id)
    budget = budget_from_project(project)

    capital = as_decimal(finances.capital_balance)
    used = as_decimal(finances.total_used)
    committed = as_decimal(finances.committed_cost)
    available = as_decimal(finances.available_capital)

    warnings: List[dict] = []
    if budget.total > ZERO and capital < budget.total:
        warnings.append(
            {
                "type": "budget_exceeds_capital",
                "message": (
                    f"Budget of {format_amount(budget.total)} exceeds invested capital of {format_amount(capital)}"
                ),
            }
        )
    if capital > ZERO and ZERO <= available < capital * LOW_CAPITAL_RATIO:
        warnings.append(
            {"type": "low_capital", "message": f"Only {format_amount(available)} of capital remains available"}
        )
    if available < ZERO:
        warnings.append(
            {"type": "overspent", "message": f"Capital is overcommitted by {format_amount(-available)}"}
        )
    if available > ZERO and committed > available * HIGH_COMMITMENT_RATIO:
        warnings.append(
            {
                "type": "high_commitment",
                "message": f"Committed orders of {format_amount(committed)} exceed half of available capital",
            }
        )

    return {
        "project_id": project.id,
        "budget": budget.as_dict(),
        "finances": {
            "capital_balance": finances.capital_balance,
            "total_loans": finances.total_loans,
            "total_equity": finances.total_equity,
            "investor_count": finances.investor_count,
            "total_used": finances.total_used,
            "committed_cost": finances.committed_cost,
            "estimated_cost": finances.estimated_cost,
            "available_capital": finances.available_capital,
            "contingency_used": finances.contingency_used,
            "updated_at": finances.updated_at,
        },
        "budget_status": get_budget_status(budget.total, used, committed),
        "capital_status": get_capital_status(capital, used, committed),
        "warnings": warnings,
    }
