from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from .balance import available_balance
from .errors import InsufficientFundsError
from .models import CommissionRecord


@dataclass(frozen=True)
class ReservationSlice:
    commission_id: UUID
    amount: Decimal


def reservation_order(records: Iterable[CommissionRecord]) -> list[CommissionRecord]:
    """Commissions able to back a reservation, oldest first."""
    eligible = [r for r in records if r.can_back_reservation()]
    eligible.sort(key=lambda r: (r.created_at, r.sequence, str(r.id)))
    return eligible


def plan_reservation(records: Iterable[CommissionRecord], requested_amount: Decimal) -> list[ReservationSlice]:
    """
    Split ``requested_amount`` across paid commissions in FIFO order.

    Returns one slice per touched commission. Raises InsufficientFundsError
    without producing a partial plan when the commissions cannot cover the
    request.
    """
    records = list(records)
    remaining = requested_amount
    slices: list[ReservationSlice] = []

    for record in reservation_order(records):
        if remaining <= 0:
            break
        take = min(record.available_amount, remaining)
        slices.append(ReservationSlice(commission_id=record.id, amount=take))
        remaining -= take

    if remaining > 0:
        raise InsufficientFundsError(requested_amount, available_balance(records))
    return slices
