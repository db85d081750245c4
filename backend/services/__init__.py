# Services package - Consolidated imports only

# Order state and audit trail
from .order_state import transition_order, set_payment_status
from .audit import AuditService
from .automated_gifts import AutomatedExecutionTracker

# External collaborators
from .payment_gateway import StripePaymentGateway
from .fulfillment_dispatcher import HttpFulfillmentDispatcher

# Pipeline services
from .retry_scheduler import RetryScheduler, RetrySweep
from .fulfillment import FulfillmentService
from .payment_verification import PaymentVerifier
from .order_splitter import OrderSplitter
from .reconciliation import PaymentReconciliationService
from .duplicate_orders import DuplicateOrderDetector
from .pipeline import OrderPipeline

__all__ = [
    "transition_order",
    "set_payment_status",
    "AuditService",
    "AutomatedExecutionTracker",
    "StripePaymentGateway",
    "HttpFulfillmentDispatcher",
    "RetryScheduler",
    "RetrySweep",
    "FulfillmentService",
    "PaymentVerifier",
    "OrderSplitter",
    "PaymentReconciliationService",
    "DuplicateOrderDetector",
    "OrderPipeline",
]
