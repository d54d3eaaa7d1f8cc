"""
Financial reconciliation: multi-source account state with discrepancy detection.
"""
from perpconsole.reconciliation.reconciler import (
    Account,
    FinancialReconciler,
    ReconciliationDiscrepancy,
    ReconciliationReport,
    adjusted_realized_pnl,
    derive_portfolio_value,
    position_unrealized_pnl,
)

__all__ = [
    "Account",
    "FinancialReconciler",
    "ReconciliationDiscrepancy",
    "ReconciliationReport",
    "adjusted_realized_pnl",
    "derive_portfolio_value",
    "position_unrealized_pnl",
]
