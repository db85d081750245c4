from pydantic import BaseModel, Field, model_validator
from typing import List, Optional
from datetime import datetime
from enum import Enum
from uuid import UUID


# --- Requests ---

class VerifyPaymentRequest(BaseModel):
    session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    max_attempts: Optional[int] = Field(default=None, ge=1, le=10)

    @model_validator(mode="after")
    def require_single_reference(self):
        if not self.session_id and not self.payment_intent_id:
            raise ValueError("Either session_id or payment_intent_id is required")
        if self.session_id and self.payment_intent_id:
            raise ValueError("Pass only one of session_id or payment_intent_id")
        return self


class DuplicateCleanupMode(str, Enum):
    REPORT = "report"
    CLEANUP = "cleanup"


class DuplicateCleanupRequest(BaseModel):
    mode: DuplicateCleanupMode = DuplicateCleanupMode.REPORT


# --- Payment verification ---

class VerificationOutcome(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class DiscrepancyKind(str, Enum):
    AMOUNT_MISMATCH = "amount_mismatch"
    STATUS_MISMATCH = "status_mismatch"


class Discrepancy(BaseModel):
    order_id: UUID
    order_number: Optional[str] = None
    kind: DiscrepancyKind
    stored_amount_cents: Optional[int] = None
    gateway_amount_cents: Optional[int] = None
    stored_status: Optional[str] = None
    stored_payment_status: Optional[str] = None
    gateway_status: Optional[str] = None


class PaymentVerificationResult(BaseModel):
    outcome: VerificationOutcome
    order_id: Optional[UUID] = None
    order_found: bool = False
    payment_status: Optional[str] = None
    order_status: Optional[str] = None
    gateway_status: Optional[str] = None
    corrected: bool = False
    discrepancies: List[Discrepancy] = []
    attempts: int = 0
    verification_method: str = "stripe_api"
    error: Optional[str] = None


# --- Sweeps ---

class SweepError(BaseModel):
    order_id: Optional[UUID] = None
    error: str


class ReconciliationSummary(BaseModel):
    checked: int = 0
    reconciled: int = 0
    dispatched: int = 0
    failed: int = 0
    skipped: int = 0
    discrepancies: List[Discrepancy] = []
    errors: List[SweepError] = []


class RecoverySummary(BaseModel):
    checked: int = 0
    recovered: int = 0
    redispatched: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[SweepError] = []


class RetrySweepSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    failed_permanently: int = 0
    skipped: int = 0
    errors: List[SweepError] = []


# --- Duplicates ---

class DuplicateAction(str, Enum):
    WOULD_CANCEL = "would_cancel"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class DuplicateOrderReport(BaseModel):
    order_id: UUID
    order_number: str
    status: str
    created_at: Optional[datetime] = None
    action: DuplicateAction
    cancellation_outcome: Optional[str] = None
    reason: Optional[str] = None


class DuplicateGroupReport(BaseModel):
    fulfillment_reference: str
    original_order_id: UUID
    original_order_number: str
    duplicates: List[DuplicateOrderReport] = []


class DuplicateCleanupSummary(BaseModel):
    mode: DuplicateCleanupMode
    groups_found: int = 0
    duplicate_orders: int = 0
    cancelled: int = 0
    skipped: int = 0
    failed: int = 0
    groups: List[DuplicateGroupReport] = []


# --- Splitting ---

class SplitOutcome(str, Enum):
    SPLIT = "split"
    PASSTHROUGH = "passthrough"
    ALREADY_SPLIT = "already_split"


class SplitChildResult(BaseModel):
    order_id: UUID
    order_number: str
    delivery_group_id: Optional[str] = None
    status: str
    total_amount: float
    dispatched: bool = False
    error: Optional[str] = None


class SplitSummary(BaseModel):
    parent_order_id: UUID
    outcome: SplitOutcome
    parent_status: str
    total_split_orders: int = 1
    dispatched: int = 0
    failed: int = 0
    awaiting_address: int = 0
    skipped_groups: List[str] = []
    children: List[SplitChildResult] = []


class BulkVerificationItem(BaseModel):
    order_id: Optional[UUID] = None
    session_id: Optional[str] = None
    payment_intent_id: Optional[str] = None


class BulkVerificationResult(BaseModel):
    order_id: Optional[UUID] = None
    result: PaymentVerificationResult
