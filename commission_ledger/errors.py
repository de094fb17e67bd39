from decimal import Decimal
from typing import Optional


class LedgerServiceError(Exception):
    retryable = False


class ValidationError(LedgerServiceError):
    pass


class InsufficientFundsError(LedgerServiceError):
    def __init__(self, requested: Decimal, available: Decimal):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient balance: requested {requested}, available {available}"
        )


class AlreadyProcessedError(LedgerServiceError):
    def __init__(self, withdrawal_id, status: str):
        self.withdrawal_id = withdrawal_id
        self.status = status
        super().__init__(f"Withdrawal {withdrawal_id} already processed ({status})")


class InvalidStateTransitionError(LedgerServiceError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class CommissionNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


class ConcurrencyConflictError(LedgerServiceError):
    retryable = True

    def __init__(self, message: str, record_id: Optional[object] = None):
        self.record_id = record_id
        super().__init__(message)


class StoreUnavailableError(LedgerServiceError):
    pass
