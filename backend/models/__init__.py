# Models package - Consolidated imports only
from .orders import Order, OrderItem, OrderNote, OrderStatus, PaymentStatus, TERMINAL_ORDER_STATUSES
from .audit import OrderAuditLog, JobExecutionLog, JobExecutionStatus
from .automation import AutomatedGiftExecution

__all__ = [
    # Order models
    "Order",
    "OrderItem",
    "OrderNote",
    "OrderStatus",
    "PaymentStatus",
    "TERMINAL_ORDER_STATUSES",

    # Audit models
    "OrderAuditLog",
    "JobExecutionLog",
    "JobExecutionStatus",

    # Automation models
    "AutomatedGiftExecution",
]
