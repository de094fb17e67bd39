from decimal import Decimal
from typing import Iterable

from .models import BalanceSummary, CommissionRecord, CommissionStatus


def available_balance(records: Iterable[CommissionRecord]) -> Decimal:
    """Withdrawable total: unreserved value of ``paid`` commissions."""
    return sum(
        (r.amount - r.used_amount for r in records if r.status == CommissionStatus.PAID),
        Decimal("0"),
    )


def summarize(affiliate_id: str, records: Iterable[CommissionRecord], currency: str) -> BalanceSummary:
    records = list(records)
    zero = Decimal("0")

    def total(predicate) -> Decimal:
        return sum((r.amount for r in records if predicate(r)), zero)

    return BalanceSummary(
        affiliate_id=affiliate_id,
        currency=currency,
        available=available_balance(records),
        reserved=total(lambda r: r.status == CommissionStatus.RESERVED),
        withdrawn=total(lambda r: r.status == CommissionStatus.WITHDRAWN),
        pending=total(lambda r: r.status in (CommissionStatus.PENDING, CommissionStatus.APPROVED)),
        total_earned=total(
            lambda r: not r.is_partial and r.status != CommissionStatus.CANCELLED
        ),
        commission_count=sum(1 for r in records if not r.is_partial),
    )
