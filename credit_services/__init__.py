"""Background services composed over the credit kernel."""

from credit_services.expiration_service import (
    EXPIRY_BUSINESS_CODE,
    ExpirationEngine,
    ExpirationOutcome,
    ExpirationRunSummary,
)
from credit_services.reconciliation_service import (
    BalanceCorrection,
    BalanceReconciler,
    ConsistencyReport,
    ReconciliationReport,
)

__all__ = [
    "EXPIRY_BUSINESS_CODE",
    "BalanceCorrection",
    "BalanceReconciler",
    "ConsistencyReport",
    "ExpirationEngine",
    "ExpirationOutcome",
    "ExpirationRunSummary",
    "ReconciliationReport",
]
