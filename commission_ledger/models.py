from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


class CommissionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    RESERVED = "reserved"
    WITHDRAWN = "withdrawn"
    CANCELLED = "cancelled"


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    COMPLETED = "completed"
    REJECTED = "rejected"


# Administrative moves for source commissions; reserved/withdrawn are
# reachable only through the withdrawal lifecycle.
COMMISSION_TRANSITIONS: dict[CommissionStatus, tuple[CommissionStatus, ...]] = {
    CommissionStatus.PENDING: (CommissionStatus.APPROVED, CommissionStatus.CANCELLED),
    CommissionStatus.APPROVED: (CommissionStatus.PAID, CommissionStatus.CANCELLED),
    CommissionStatus.PAID: (CommissionStatus.CANCELLED,),
}

TERMINAL_WITHDRAWAL_STATUSES = (
    WithdrawalStatus.APPROVED,
    WithdrawalStatus.COMPLETED,
    WithdrawalStatus.REJECTED,
)


class BankDetails(BaseModel):
    bank_name: str
    account_number: str
    account_holder: str


class CommissionRecord(BaseModel):
    id: UUID
    affiliate_id: str
    order_id: Optional[str] = None
    amount: Decimal
    used_amount: Decimal = Decimal("0")
    status: CommissionStatus
    is_partial: bool = False
    parent_commission_id: Optional[UUID] = None
    withdrawal_id: Optional[UUID] = None
    product_name: Optional[str] = None
    order_total: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None
    created_at: datetime
    settled_at: Optional[datetime] = None
    sequence: int = 0
    version: int = 1

    model_config = ConfigDict(from_attributes=True)

    @property
    def available_amount(self) -> Decimal:
        return self.amount - self.used_amount

    def can_back_reservation(self) -> bool:
        return self.status == CommissionStatus.PAID and self.available_amount > 0

    def can_transition_to(self, status: CommissionStatus) -> bool:
        if self.is_partial:
            return False
        if status not in COMMISSION_TRANSITIONS.get(self.status, ()):
            return False
        if status == CommissionStatus.CANCELLED and self.used_amount > 0:
            return False
        return True


class WithdrawalRequest(BaseModel):
    id: UUID
    affiliate_id: str
    amount: Decimal
    status: WithdrawalStatus
    rejection_reason: Optional[str] = None
    bank_details: Optional[BankDetails] = None
    reserved_commission_ids: list[UUID] = Field(default_factory=list)
    created_at: datetime
    processed_at: Optional[datetime] = None
    version: int = 1

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WITHDRAWAL_STATUSES


class CommissionEarnedRequest(BaseModel):
    affiliate_id: str
    order_id: str
    amount: Decimal
    status: CommissionStatus = Field(
        default=CommissionStatus.PAID,
        description="Initial status; 'pending' records a commission ahead of payment",
    )
    product_name: Optional[str] = None
    order_total: Optional[Decimal] = None
    commission_rate: Optional[Decimal] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "affiliate_id": "aff-001",
            "order_id": "ORD-20240101-0001",
            "amount": 25000,
            "product_name": "Serum Brightening",
        }
    })


class CommissionStatusUpdate(BaseModel):
    status: CommissionStatus


class CreateWithdrawalRequest(BaseModel):
    affiliate_id: str
    amount: Decimal
    bank_details: Optional[BankDetails] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "affiliate_id": "aff-001",
            "amount": 120000,
            "bank_details": {
                "bank_name": "BCA",
                "account_number": "1234567890",
                "account_holder": "Siti Affiliate",
            },
        }
    })


class ProcessWithdrawalRequest(BaseModel):
    status: WithdrawalStatus
    rejection_reason: Optional[str] = None


class AffiliateBalance(BaseModel):
    affiliate_id: str
    currency: str
    available_balance: Decimal


class BalanceSummary(BaseModel):
    affiliate_id: str
    currency: str
    available: Decimal
    reserved: Decimal
    withdrawn: Decimal
    pending: Decimal
    total_earned: Decimal
    commission_count: int


class DeliveryResult(BaseModel):
    event_type: str
    delivered: bool
    error: Optional[str] = None


class CommissionResponse(BaseModel):
    commission: CommissionRecord
    notifications: list[DeliveryResult] = Field(default_factory=list)
    message: str


class WithdrawalResponse(BaseModel):
    withdrawal: WithdrawalRequest
    reserved_commissions: list[CommissionRecord] = Field(default_factory=list)
    available_balance: Decimal
    notifications: list[DeliveryResult] = Field(default_factory=list)
    message: str
