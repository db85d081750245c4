"""
Order state machine.

Every status change made by the pipeline goes through ``transition_order``:
the transition is validated against ``ALLOWED_TRANSITIONS`` and then applied
as a conditional UPDATE keyed on the id and the previously observed status.
Two sweeps racing over the same order therefore cannot both win; the loser
sees ``False`` and moves on.
"""
import logging
from typing import Any, Dict, FrozenSet, Iterable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from core.exceptions import InvalidTransitionException, PaymentStatusRegressionException
from models.orders import Order, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.PAYMENT_VERIFICATION_FAILED,
        OrderStatus.AWAITING_ADDRESS,
        OrderStatus.PARTIALLY_PROCESSED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PAYMENT_VERIFICATION_FAILED: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PROCESSING: frozenset({
        OrderStatus.RETRY_PENDING,
        OrderStatus.PARTIALLY_PROCESSED,
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.RETRY_PENDING: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.AWAITING_ADDRESS: frozenset({
        OrderStatus.PENDING,
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.PARTIALLY_PROCESSED: frozenset({
        OrderStatus.PROCESSING,
        OrderStatus.COMPLETED,
        OrderStatus.FAILED,
        OrderStatus.CANCELLED,
    }),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def is_transition_allowed(from_status: OrderStatus, to_status: OrderStatus) -> bool:
    if from_status == to_status:
        return True
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


def validate_transition(from_status: OrderStatus, to_status: OrderStatus) -> None:
    """Raise InvalidTransitionException unless the table allows the move."""
    from_status = OrderStatus(from_status)
    to_status = OrderStatus(to_status)
    if not is_transition_allowed(from_status, to_status):
        raise InvalidTransitionException(from_status.value, to_status.value)


def _apply_committed(order: Order, values: Dict[str, Any]) -> None:
    # Mirror the UPDATE onto the loaded instance without marking it dirty.
    for key, value in values.items():
        set_committed_value(order, key, value)


async def transition_order(
    db: AsyncSession,
    order: Order,
    to_status: OrderStatus,
    expected_status: Optional[OrderStatus] = None,
    extra_criteria: Iterable[Any] = (),
    **values: Any,
) -> bool:
    """
    Move ``order`` to ``to_status`` if it is still in ``expected_status``.

    ``expected_status`` defaults to the status currently loaded on the
    instance. Additional column values and WHERE criteria can be supplied.
    Returns True when the row was updated. Does not commit.
    """
    expected = OrderStatus(expected_status or order.status)
    to_status = OrderStatus(to_status)
    validate_transition(expected, to_status)

    if "payment_status" in values:
        _check_payment_regression(order, values["payment_status"])

    values = dict(values, status=to_status)
    stmt = (
        update(Order)
        .where(Order.id == order.id, Order.status == expected, *extra_criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        logger.info(
            f"Conditional transition of order {order.id} {expected.value} -> {to_status.value} lost"
        )
        return False

    _apply_committed(order, values)
    return True


def _check_payment_regression(order: Order, to_status: PaymentStatus) -> None:
    if order.payment_status == PaymentStatus.SUCCEEDED and PaymentStatus(to_status) != PaymentStatus.SUCCEEDED:
        raise PaymentStatusRegressionException(str(order.id), PaymentStatus(to_status).value)


async def set_payment_status(
    db: AsyncSession,
    order: Order,
    to_status: PaymentStatus,
    expected_payment_status: Optional[PaymentStatus] = None,
    **values: Any,
) -> bool:
    """
    Conditionally change the payment status of an order.

    A succeeded payment never moves back to pending or failed; attempting it
    raises PaymentStatusRegressionException. The UPDATE is keyed on the
    payment status observed by the caller. Does not commit.
    """
    to_status = PaymentStatus(to_status)
    expected = PaymentStatus(expected_payment_status or order.payment_status)
    if expected == PaymentStatus.SUCCEEDED and to_status != PaymentStatus.SUCCEEDED:
        raise PaymentStatusRegressionException(str(order.id), to_status.value)
    _check_payment_regression(order, to_status)

    criteria = [Order.id == order.id, Order.payment_status == expected]
    if to_status != PaymentStatus.SUCCEEDED:
        criteria.append(Order.payment_status != PaymentStatus.SUCCEEDED)

    values = dict(values, payment_status=to_status)
    result = await db.execute(
        update(Order)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    _apply_committed(order, values)
    return True
