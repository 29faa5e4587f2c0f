from decimal import Decimal

# Share of the total used when a legacy budget does not state a category.
LEGACY_PRECONSTRUCTION_RATE = Decimal("0.05")
LEGACY_INDIRECT_RATE = Decimal("0.05")
LEGACY_CONTINGENCY_RATE = Decimal("0.05")

BUDGET_CATEGORIES = ("dcc", "preconstruction", "indirect", "contingency")

# category key -> Project column holding its ceiling
BUDGET_CATEGORY_COLUMNS = {
    "dcc": "budget_direct_construction",
    "preconstruction": "budget_pre_construction",
    "indirect": "budget_indirect",
    "contingency": "budget_contingency",
}

BUDGET_CATEGORY_LABELS = {
    "dcc": "Direct Construction Costs",
    "preconstruction": "Pre-Construction Costs",
    "indirect": "Indirect Costs",
    "contingency": "Contingency Reserve",
}

# Leaf statuses that count toward actual spending.
MATERIAL_COUNTED_STATUSES = ("approved", "received")
EXPENSE_COUNTED_STATUSES = ("approved", "paid")
LABOUR_COUNTED_STATUSES = ("approved", "paid")
SUBCONTRACTOR_COUNTED_STATUSES = ("approved", "paid")

EXPENSE_CATEGORIES = ("general", "equipment", "transport", "permits", "utilities")
EXPENSE_COST_CATEGORIES = ("direct", "indirect", "preconstruction")

PROJECT_STATUSES = ("planning", "active", "on_hold", "completed", "archived")
PHASE_STATUSES = ("not_started", "in_progress", "on_hold", "completed")

PURCHASE_ORDER_STATUSES = ("order_sent", "accepted", "rejected", "converted")
PURCHASE_ORDER_FINANCIAL_STATUSES = ("not_committed", "committed", "realized")

MATERIAL_REQUEST_STATUSES = ("pending", "approved", "rejected", "converted_to_order")
MATERIAL_REQUEST_BATCH_STATUSES = ("pending", "approved", "partially_ordered", "fully_ordered", "rejected")

CONTINGENCY_DRAW_TYPES = ("design", "construction", "owners_reserve")
APPROVAL_STATUSES = ("pending", "approved", "rejected")

ADJUSTMENT_TYPES = ("increase", "decrease")

INVESTMENT_TYPES = ("loan", "equity")

# Overview warning thresholds.
LOW_CAPITAL_RATIO = Decimal("0.10")
HIGH_COMMITMENT_RATIO = Decimal("0.50")
BUDGET_AT_RISK_PERCENT = Decimal("80")
