import logging
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, TypeVar
from uuid import UUID, uuid4

from .balance import available_balance, summarize
from .config import Settings, get_settings
from .errors import (
    AlreadyProcessedError,
    CommissionNotFoundError,
    ConcurrencyConflictError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    ValidationError,
    WithdrawalNotFoundError,
)
from .models import (
    AffiliateBalance,
    BalanceSummary,
    BankDetails,
    CommissionEarnedRequest,
    CommissionRecord,
    CommissionResponse,
    CommissionStatus,
    WithdrawalRequest,
    WithdrawalResponse,
    WithdrawalStatus,
)
from .notifications import (
    LedgerEvent,
    LoggingDispatcher,
    NotificationDispatcher,
    NotificationType,
    dispatch,
)
from .reservation import plan_reservation
from .storage import InMemoryStorage, StoreTransaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

INITIAL_COMMISSION_STATUSES = (
    CommissionStatus.PENDING,
    CommissionStatus.APPROVED,
    CommissionStatus.PAID,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LedgerService:
    """
    Commission ledger and withdrawal settlement.

    Every mutation runs inside one store transaction for the affiliate it
    touches, retried on optimistic-lock conflicts. Notifications are sent
    after the transaction commits and never affect its outcome.
    """

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        notifier: Optional[NotificationDispatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.storage = storage or InMemoryStorage()
        self.notifier = notifier or LoggingDispatcher()
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Commissions
    # ------------------------------------------------------------------

    def commission_earned(
        self,
        affiliate_id: str,
        order_id: str,
        amount: Decimal,
        product_name: Optional[str] = None,
    ) -> CommissionResponse:
        """Order settlement hook: record a ``paid`` commission for the affiliate."""
        return self.record_commission(CommissionEarnedRequest(
            affiliate_id=affiliate_id,
            order_id=order_id,
            amount=self._coerce_amount(amount),
            product_name=product_name,
        ))

    def record_commission(self, request: CommissionEarnedRequest) -> CommissionResponse:
        self._require_affiliate(request.affiliate_id)
        amount = self._coerce_amount(request.amount)
        if not request.order_id or not request.order_id.strip():
            raise ValidationError("order_id is required")
        if request.status not in INITIAL_COMMISSION_STATUSES:
            raise ValidationError(f"Commission cannot be created as {request.status.value}")

        def apply() -> tuple[UUID, bool]:
            with self.storage.transaction(request.affiliate_id) as txn:
                existing = self._find_order_commission(txn, request.order_id)
                if existing is not None:
                    return existing.id, False

                record = CommissionRecord(
                    id=uuid4(),
                    affiliate_id=request.affiliate_id,
                    order_id=request.order_id,
                    amount=amount,
                    status=request.status,
                    product_name=request.product_name,
                    order_total=request.order_total,
                    commission_rate=request.commission_rate,
                    created_at=_now(),
                )
                txn.insert_commission(record.model_dump())
                return record.id, True

        commission_id, created = self._run_with_retry("record_commission", apply)
        commission = self.get_commission(commission_id)

        if not created:
            return CommissionResponse(
                commission=commission,
                message="Commission already recorded for this order (idempotent return)",
            )

        logger.info(
            "Recorded %s commission %s of %s for affiliate %s (order %s)",
            commission.status.value, commission.id, commission.amount,
            commission.affiliate_id, commission.order_id,
        )
        notifications = []
        if commission.status == CommissionStatus.PAID:
            notifications = self._notify([self._earned_event(commission)])

        return CommissionResponse(
            commission=commission,
            notifications=notifications,
            message="Commission recorded successfully",
        )

    def update_commission_status(self, commission_id: UUID, status: CommissionStatus) -> CommissionResponse:
        current = self.get_commission(commission_id)

        def apply() -> None:
            with self.storage.transaction(current.affiliate_id) as txn:
                data = txn.get_commission(commission_id)
                if data is None:
                    raise CommissionNotFoundError(f"Commission {commission_id} not found")
                record = CommissionRecord(**data)
                if not record.can_transition_to(status):
                    raise InvalidStateTransitionError(
                        f"Cannot move commission from {record.status.value} to {status.value}"
                    )
                record.status = status
                txn.update_commission(record.model_dump())

        self._run_with_retry("update_commission_status", apply)
        commission = self.get_commission(commission_id)
        logger.info("Commission %s moved to %s", commission_id, status.value)

        notifications = []
        if status == CommissionStatus.PAID:
            notifications = self._notify([self._earned_event(commission)])

        return CommissionResponse(
            commission=commission,
            notifications=notifications,
            message=f"Commission {status.value}",
        )

    def get_commission(self, commission_id: UUID) -> CommissionRecord:
        data = self.storage.get_commission(commission_id)
        if not data:
            raise CommissionNotFoundError(f"Commission {commission_id} not found")
        return CommissionRecord(**data)

    def list_commissions(
        self,
        affiliate_id: Optional[str] = None,
        status: Optional[CommissionStatus] = None,
    ) -> list[CommissionRecord]:
        records = [CommissionRecord(**d) for d in self.storage.snapshot_commissions(affiliate_id)]
        if status:
            records = [r for r in records if r.status == status]
        records.sort(key=lambda r: (r.created_at, r.sequence))
        return records

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def available_balance(self, affiliate_id: str) -> Decimal:
        self._require_affiliate(affiliate_id)
        records = [CommissionRecord(**d) for d in self.storage.snapshot_commissions(affiliate_id)]
        return available_balance(records)

    def get_balance(self, affiliate_id: str) -> AffiliateBalance:
        return AffiliateBalance(
            affiliate_id=affiliate_id,
            currency=self.settings.CURRENCY,
            available_balance=self.available_balance(affiliate_id),
        )

    def get_summary(self, affiliate_id: str) -> BalanceSummary:
        self._require_affiliate(affiliate_id)
        records = [CommissionRecord(**d) for d in self.storage.snapshot_commissions(affiliate_id)]
        return summarize(affiliate_id, records, self.settings.CURRENCY)

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    def reserve(
        self,
        affiliate_id: str,
        amount: Decimal,
        bank_details: Optional[BankDetails] = None,
    ) -> WithdrawalResponse:
        """
        Create a pending withdrawal backed by reserved commission value.

        Paid commissions are consumed oldest first. Each touched commission
        gets a reserved child record linked to the withdrawal and its
        ``used_amount`` grows by the child's amount. Nothing is written when
        the balance cannot cover ``amount``.
        """
        self._require_affiliate(affiliate_id)
        amount = self._coerce_amount(amount)
        minimum = self.settings.MIN_WITHDRAWAL_AMOUNT
        if minimum > 0 and amount < minimum:
            raise ValidationError(f"Minimum withdrawal amount is {minimum}")

        def apply() -> tuple[UUID, list[UUID], Decimal]:
            with self.storage.transaction(affiliate_id) as txn:
                records = [CommissionRecord(**d) for d in txn.commissions()]
                slices = plan_reservation(records, amount)

                now = _now()
                withdrawal_id = uuid4()
                by_id = {r.id: r for r in records}
                reserved_ids = []

                for piece in slices:
                    source = by_id[piece.commission_id]
                    source.used_amount += piece.amount
                    txn.update_commission(source.model_dump())

                    child = CommissionRecord(
                        id=uuid4(),
                        affiliate_id=affiliate_id,
                        order_id=source.order_id,
                        amount=piece.amount,
                        status=CommissionStatus.RESERVED,
                        is_partial=True,
                        parent_commission_id=source.id,
                        withdrawal_id=withdrawal_id,
                        product_name=source.product_name,
                        created_at=now,
                    )
                    txn.insert_commission(child.model_dump())
                    reserved_ids.append(child.id)

                withdrawal = WithdrawalRequest(
                    id=withdrawal_id,
                    affiliate_id=affiliate_id,
                    amount=amount,
                    status=WithdrawalStatus.PENDING,
                    bank_details=bank_details,
                    reserved_commission_ids=reserved_ids,
                    created_at=now,
                )
                txn.insert_withdrawal(withdrawal.model_dump())
                return withdrawal_id, reserved_ids, available_balance(records)

        try:
            withdrawal_id, reserved_ids, balance = self._run_with_retry("reserve", apply)
        except InsufficientFundsError as e:
            logger.warning("Withdrawal of %s refused for affiliate %s: %s", amount, affiliate_id, e)
            raise

        withdrawal = self.get_withdrawal(withdrawal_id)
        reserved = [self.get_commission(cid) for cid in reserved_ids]
        logger.info(
            "Reserved %s for withdrawal %s of affiliate %s across %d commission(s)",
            amount, withdrawal_id, affiliate_id, len(reserved),
        )

        notifications = self._notify([LedgerEvent(
            type=NotificationType.WITHDRAWAL_REQUESTED,
            affiliate_id=affiliate_id,
            amount=amount,
            context={"withdrawal_id": str(withdrawal_id), "available_balance": str(balance)},
        )])

        return WithdrawalResponse(
            withdrawal=withdrawal,
            reserved_commissions=reserved,
            available_balance=balance,
            notifications=notifications,
            message="Withdrawal requested successfully",
        )

    def approve(self, withdrawal_id: UUID) -> WithdrawalResponse:
        return self._finalize(withdrawal_id, WithdrawalStatus.APPROVED)

    def complete(self, withdrawal_id: UUID) -> WithdrawalResponse:
        return self._finalize(withdrawal_id, WithdrawalStatus.COMPLETED)

    def reject(self, withdrawal_id: UUID, reason: str) -> WithdrawalResponse:
        """Return every reserved amount to its source commission and close the request."""
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        current = self.get_withdrawal(withdrawal_id)

        def apply() -> tuple[list[CommissionRecord], Decimal]:
            with self.storage.transaction(current.affiliate_id) as txn:
                withdrawal = self._load_open_withdrawal(txn, withdrawal_id)
                records = [CommissionRecord(**d) for d in txn.commissions()]
                by_id = {r.id: r for r in records}
                released = self._reserved_for(records, withdrawal_id)
                touched = {}

                for child in released:
                    parent = by_id.get(child.parent_commission_id)
                    if parent is None or parent.used_amount < child.amount:
                        raise InvalidStateTransitionError(
                            f"Reserved commission {child.id} cannot be returned to its source"
                        )
                    parent.used_amount -= child.amount
                    touched[parent.id] = parent
                    txn.delete_commission(child.model_dump())

                for parent in touched.values():
                    txn.update_commission(parent.model_dump())

                withdrawal.status = WithdrawalStatus.REJECTED
                withdrawal.rejection_reason = reason
                withdrawal.processed_at = _now()
                txn.update_withdrawal(withdrawal.model_dump())
                return released, available_balance(records)

        released, balance = self._run_with_retry("reject", apply)
        withdrawal = self.get_withdrawal(withdrawal_id)
        logger.info(
            "Rejected withdrawal %s of affiliate %s, released %d reservation(s): %s",
            withdrawal_id, withdrawal.affiliate_id, len(released), reason,
        )

        notifications = self._notify([LedgerEvent(
            type=NotificationType.WITHDRAWAL_REJECTED,
            affiliate_id=withdrawal.affiliate_id,
            amount=withdrawal.amount,
            context={"withdrawal_id": str(withdrawal_id), "reason": reason},
        )])

        return WithdrawalResponse(
            withdrawal=withdrawal,
            reserved_commissions=released,
            available_balance=balance,
            notifications=notifications,
            message="Withdrawal rejected, reserved balance restored",
        )

    def process(
        self,
        withdrawal_id: UUID,
        status: WithdrawalStatus,
        rejection_reason: Optional[str] = None,
    ) -> WithdrawalResponse:
        if status == WithdrawalStatus.REJECTED:
            return self.reject(withdrawal_id, rejection_reason or "")
        if status in (WithdrawalStatus.APPROVED, WithdrawalStatus.COMPLETED):
            return self._finalize(withdrawal_id, status)
        raise ValidationError(f"Cannot process a withdrawal into {status.value}")

    def get_withdrawal(self, withdrawal_id: UUID) -> WithdrawalRequest:
        data = self.storage.get_withdrawal(withdrawal_id)
        if not data:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        return WithdrawalRequest(**data)

    def list_withdrawals(
        self,
        affiliate_id: Optional[str] = None,
        status: Optional[WithdrawalStatus] = None,
    ) -> list[WithdrawalRequest]:
        # Reversed insertion order keeps same-timestamp requests newest first
        withdrawals = [
            WithdrawalRequest(**d)
            for d in reversed(self.storage.snapshot_withdrawals(affiliate_id))
        ]
        if status:
            withdrawals = [w for w in withdrawals if w.status == status]
        withdrawals.sort(key=lambda w: w.created_at, reverse=True)
        return withdrawals

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finalize(self, withdrawal_id: UUID, target: WithdrawalStatus) -> WithdrawalResponse:
        current = self.get_withdrawal(withdrawal_id)

        def apply() -> tuple[list[UUID], Decimal]:
            with self.storage.transaction(current.affiliate_id) as txn:
                withdrawal = self._load_open_withdrawal(txn, withdrawal_id)
                records = [CommissionRecord(**d) for d in txn.commissions()]
                now = _now()
                settled = []

                for record in self._reserved_for(records, withdrawal_id):
                    record.status = CommissionStatus.WITHDRAWN
                    record.settled_at = now
                    txn.update_commission(record.model_dump())
                    settled.append(record.id)

                withdrawal.status = target
                withdrawal.processed_at = now
                txn.update_withdrawal(withdrawal.model_dump())
                return settled, available_balance(records)

        settled_ids, balance = self._run_with_retry(target.value, apply)
        withdrawal = self.get_withdrawal(withdrawal_id)
        settled = [self.get_commission(cid) for cid in settled_ids]
        logger.info(
            "Withdrawal %s of affiliate %s %s, %d commission(s) withdrawn",
            withdrawal_id, withdrawal.affiliate_id, target.value, len(settled),
        )

        notifications = self._notify([
            LedgerEvent(
                type=NotificationType.WITHDRAWAL_APPROVED,
                affiliate_id=withdrawal.affiliate_id,
                amount=withdrawal.amount,
                context={
                    "withdrawal_id": str(withdrawal_id),
                    "status": target.value,
                    "processed_at": withdrawal.processed_at.isoformat(),
                },
            ),
            LedgerEvent(
                type=NotificationType.BALANCE_UPDATED,
                affiliate_id=withdrawal.affiliate_id,
                amount=balance,
                context={"withdrawal_id": str(withdrawal_id)},
            ),
        ])

        return WithdrawalResponse(
            withdrawal=withdrawal,
            reserved_commissions=settled,
            available_balance=balance,
            notifications=notifications,
            message=f"Withdrawal {target.value}",
        )

    def _load_open_withdrawal(self, txn: StoreTransaction, withdrawal_id: UUID) -> WithdrawalRequest:
        data = txn.get_withdrawal(withdrawal_id)
        if data is None:
            raise WithdrawalNotFoundError(f"Withdrawal {withdrawal_id} not found")
        withdrawal = WithdrawalRequest(**data)
        if withdrawal.is_terminal():
            logger.warning("Ignoring repeated action on withdrawal %s (%s)", withdrawal_id, withdrawal.status.value)
            raise AlreadyProcessedError(withdrawal_id, withdrawal.status.value)
        return withdrawal

    @staticmethod
    def _reserved_for(records: list[CommissionRecord], withdrawal_id: UUID) -> list[CommissionRecord]:
        return [
            r for r in records
            if r.withdrawal_id == withdrawal_id and r.status == CommissionStatus.RESERVED
        ]

    @staticmethod
    def _find_order_commission(txn: StoreTransaction, order_id: str) -> Optional[CommissionRecord]:
        for data in txn.commissions():
            if data["order_id"] == order_id and not data["is_partial"]:
                return CommissionRecord(**data)
        return None

    def _run_with_retry(self, operation: str, fn: Callable[[], T]) -> T:
        attempts = self.settings.CONFLICT_MAX_RETRIES
        attempt = 1
        while True:
            try:
                return fn()
            except ConcurrencyConflictError as e:
                if attempt >= attempts:
                    logger.warning("%s failed after %d conflicting attempts: %s", operation, attempt, e)
                    raise
                delay = self.settings.CONFLICT_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(
                    "%s conflicted (attempt %d/%d), retrying in %.3fs: %s",
                    operation, attempt, attempts, delay, e,
                )
                time.sleep(delay)
                attempt += 1

    def _notify(self, events: list[LedgerEvent]):
        return dispatch(self.notifier, events)

    @staticmethod
    def _earned_event(commission: CommissionRecord) -> LedgerEvent:
        return LedgerEvent(
            type=NotificationType.COMMISSION_EARNED,
            affiliate_id=commission.affiliate_id,
            amount=commission.amount,
            context={
                "commission_id": str(commission.id),
                "order_id": commission.order_id,
                "product_name": commission.product_name,
            },
        )

    @staticmethod
    def _require_affiliate(affiliate_id: str) -> None:
        if not affiliate_id or not affiliate_id.strip():
            raise ValidationError("affiliate_id is required")

    @staticmethod
    def _coerce_amount(amount) -> Decimal:
        """Normalize ``amount`` to a finite, positive Decimal or raise ValidationError."""
        if amount is None or isinstance(amount, bool):
            raise ValidationError("Amount is required")
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError(f"Amount is not a number: {amount!r}")
        if not value.is_finite():
            raise ValidationError("Amount must be a finite number")
        if value <= 0:
            raise ValidationError("Amount must be greater than zero")
        return value
