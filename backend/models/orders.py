"""
Order models for the payment and fulfillment pipeline
Includes: OrderStatus, PaymentStatus, Order, OrderItem, OrderNote
"""
from enum import Enum

from sqlalchemy import (
    Column, String, ForeignKey, Float, Text, Integer, DateTime, Boolean, JSON,
    CheckConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from core.database import BaseModel, GUID, CHAR_LENGTH


class OrderStatus(str, Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    PAYMENT_VERIFICATION_FAILED = "payment_verification_failed"
    PROCESSING = "processing"
    RETRY_PENDING = "retry_pending"
    PARTIALLY_PROCESSED = "partially_processed"
    AWAITING_ADDRESS = "awaiting_address"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_ORDER_STATUSES


TERMINAL_ORDER_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED}
)


class PaymentStatus(str, Enum):
    """Payment state as recorded on the order"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Order(BaseModel):
    """Customer order tracked from payment through fulfillment dispatch"""
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("retry_count >= 0", name="ck_orders_retry_count_non_negative"),
        CheckConstraint("total_amount >= 0", name="ck_orders_total_non_negative"),
        CheckConstraint("total_split_orders >= 1", name="ck_orders_total_split_orders"),
        {'extend_existing': True},
    )

    order_number = Column(String(100), nullable=False, unique=True, index=True)
    user_id = Column(GUID(), nullable=True, index=True)
    status = Column(
        SQLEnum(OrderStatus, name="order_status", values_callable=_enum_values),
        nullable=False, default=OrderStatus.PENDING, index=True,
    )
    payment_status = Column(
        SQLEnum(PaymentStatus, name="order_payment_status", values_callable=_enum_values),
        nullable=False, default=PaymentStatus.PENDING,
    )

    # Payment gateway references
    stripe_session_id = Column(String(CHAR_LENGTH), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(CHAR_LENGTH), nullable=True, index=True)

    # Fulfillment dispatcher state
    fulfillment_reference = Column(String(CHAR_LENGTH), nullable=True, index=True)
    fulfillment_request_id = Column(String(CHAR_LENGTH), nullable=True)
    # submitted, cancelled, cancellation_attempted, max_retries_exceeded, ...
    fulfillment_status = Column(String(100), nullable=True)
    fulfillment_method = Column(String(50), nullable=False, default="zma")

    # Money, all non-negative
    currency = Column(String(3), nullable=False, default="USD")
    subtotal = Column(Float, nullable=False, default=0.0)
    shipping_cost = Column(Float, nullable=False, default=0.0)
    tax_amount = Column(Float, nullable=False, default=0.0)
    gifting_fee = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)

    # Retry bookkeeping
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Split orders
    parent_order_id = Column(GUID(), ForeignKey("orders.id"), nullable=True, index=True)
    delivery_group_id = Column(String(CHAR_LENGTH), nullable=True)
    is_split_order = Column(Boolean, nullable=False, default=False)
    split_order_index = Column(Integer, nullable=True)
    total_split_orders = Column(Integer, nullable=False, default=1)

    cart_data = Column(JSON, nullable=True)  # carries deliveryGroups
    shipping_info = Column(JSON, nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    items = relationship("OrderItem", back_populates="order",
                         cascade="all, delete-orphan", lazy="selectin")
    notes = relationship("OrderNote", back_populates="order",
                         cascade="all, delete-orphan", lazy="selectin")

    @property
    def payment_reference(self):
        return self.stripe_payment_intent_id or self.stripe_session_id

    def to_dict(self) -> dict:
        """Convert order to dictionary for API responses"""
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "status": self.status.value if self.status else None,
            "payment_status": self.payment_status.value if self.payment_status else None,
            "fulfillment_reference": self.fulfillment_reference,
            "fulfillment_status": self.fulfillment_status,
            "fulfillment_method": self.fulfillment_method,
            "total_amount": self.total_amount,
            "currency": self.currency,
            "retry_count": self.retry_count,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "parent_order_id": str(self.parent_order_id) if self.parent_order_id else None,
            "split_order_index": self.split_order_index,
            "total_split_orders": self.total_split_orders,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class OrderItem(BaseModel):
    """Individual items within an order"""
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_order_items_unit_price_non_negative"),
        {'extend_existing': True},
    )

    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(CHAR_LENGTH), nullable=False)
    product_name = Column(String(CHAR_LENGTH), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Float, nullable=False)
    total_price = Column(Float, nullable=False)
    # Optional tag assigning the line to a delivery group
    delivery_group_id = Column(String(CHAR_LENGTH), nullable=True)
    recipient_connection_id = Column(String(CHAR_LENGTH), nullable=True)
    gift_message = Column(Text, nullable=True)

    order = relationship("Order", back_populates="items")


class OrderNote(BaseModel):
    """Durable human readable note attached to an order"""
    __tablename__ = "order_notes"
    __table_args__ = {'extend_existing': True}

    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    note_type = Column(String(50), nullable=False)  # system_cleanup, address_required, ...
    content = Column(Text, nullable=False)
    is_internal = Column(Boolean, nullable=False, default=True)

    order = relationship("Order", back_populates="notes")
