"""
Affiliate Commission Ledger

This module provides:
- Commission records earned from settled orders
- Available balance derived from paid, unreserved commission value
- Withdrawal reservations that split commissions oldest-first
- Withdrawal lifecycle: pending → approved / completed / rejected
- Best-effort notifications for ledger events
"""

from .errors import (
    AlreadyProcessedError,
    ConcurrencyConflictError,
    InsufficientFundsError,
    LedgerServiceError,
    StoreUnavailableError,
    ValidationError,
)
from .models import (
    CommissionRecord,
    CommissionStatus,
    WithdrawalRequest,
    WithdrawalStatus,
)
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "AlreadyProcessedError",
    "ConcurrencyConflictError",
    "InsufficientFundsError",
    "LedgerServiceError",
    "StoreUnavailableError",
    "ValidationError",
    "CommissionRecord",
    "CommissionStatus",
    "WithdrawalRequest",
    "WithdrawalStatus",
    "LedgerService",
    "InMemoryStorage",
]
