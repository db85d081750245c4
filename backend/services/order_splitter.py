"""
Order splitting: one paid multi-recipient order becomes one child order per
delivery group, each dispatched independently.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from core.config import settings
from core.exceptions import NotFoundException, ValidationException
from core.utils.logging import structured_logger
from models.orders import Order, OrderItem, OrderNote, OrderStatus, PaymentStatus
from schemas.pipeline import SplitChildResult, SplitOutcome, SplitSummary
from services.audit import AuditService
from services.fulfillment import FulfillmentService
from services.order_state import transition_order

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    return Decimal(str(value or 0))


def to_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass
class DeliveryGroup:
    id: str
    product_ids: List[str]
    shipping_address: Dict[str, Any] = field(default_factory=dict)
    connection_id: Optional[str] = None
    connection_name: Optional[str] = None
    gift_message: Optional[str] = None
    scheduled_delivery_date: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def missing_address_fields(self) -> List[str]:
        missing = []
        if not self.shipping_address.get("address"):
            missing.append("street address")
        if not self.shipping_address.get("zipCode"):
            missing.append("zip code")
        return missing

    @property
    def has_valid_address(self) -> bool:
        return not self.missing_address_fields


def parse_delivery_groups(cart_data: Optional[Dict[str, Any]]) -> List[DeliveryGroup]:
    """Read ``deliveryGroups`` from cart metadata; malformed groups raise ValidationException."""
    raw_groups = (cart_data or {}).get("deliveryGroups") or []
    if not isinstance(raw_groups, list):
        raise ValidationException(message="deliveryGroups must be a list")

    groups = []
    for index, raw in enumerate(raw_groups):
        if not isinstance(raw, dict) or not raw.get("id"):
            raise ValidationException(message=f"Delivery group {index + 1} has no id")
        product_ids = []
        for item in raw.get("items") or []:
            if isinstance(item, dict):
                item = item.get("product_id") or item.get("productId")
            if item:
                product_ids.append(str(item))
        address = raw.get("shippingAddress")
        groups.append(DeliveryGroup(
            id=str(raw["id"]),
            product_ids=product_ids,
            shipping_address=address if isinstance(address, dict) else {},
            connection_id=raw.get("connectionId"),
            connection_name=raw.get("connectionName"),
            gift_message=raw.get("giftMessage"),
            scheduled_delivery_date=raw.get("scheduledDeliveryDate"),
            raw=raw,
        ))
    return groups


def items_for_group(items: Sequence[OrderItem], group: DeliveryGroup) -> List[OrderItem]:
    """Items explicitly tagged with the group, or untagged items whose product the group lists."""
    return [
        item for item in items
        if item.delivery_group_id == group.id
        or (item.delivery_group_id is None and str(item.product_id) in group.product_ids)
    ]


def line_total(item: OrderItem) -> Decimal:
    return to_decimal(item.unit_price) * item.quantity


@dataclass
class FeeShare:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    gifting_fee: Decimal

    @property
    def total_amount(self) -> Decimal:
        return self.subtotal + self.shipping_cost + self.tax_amount + self.gifting_fee


def _apportion(amount: Decimal, ratios: Sequence[Decimal]) -> List[Decimal]:
    # Largest remainder: shares round to cents and sum to the rounded exact total.
    exact = [amount * ratio for ratio in ratios]
    floored = [share.quantize(CENT, rounding=ROUND_DOWN) for share in exact]
    target = to_cents(sum(exact, Decimal("0")))
    leftover = int((target - sum(floored, Decimal("0"))) / CENT)
    by_remainder = sorted(range(len(exact)), key=lambda i: (exact[i] - floored[i], -i), reverse=True)
    for i in by_remainder[:max(leftover, 0)]:
        floored[i] += CENT
    return floored


def apportion_fees(
    group_subtotals: Sequence[Decimal],
    parent_subtotal: Decimal,
    shipping_cost: Decimal,
    tax_amount: Decimal,
    gifting_fee: Decimal,
) -> List[FeeShare]:
    """
    Split the parent's fees across groups in proportion to their subtotals.

    Each fee share is ``fee * group_subtotal / parent_subtotal`` rounded to
    cents. Leftover cents go to the largest remainders, so with full item
    coverage every fee is split exactly. A zero parent subtotal splits
    fees evenly.
    """
    group_subtotals = [to_decimal(s) for s in group_subtotals]
    if not group_subtotals:
        return []
    parent_subtotal = to_decimal(parent_subtotal)
    if parent_subtotal > 0:
        ratios = [subtotal / parent_subtotal for subtotal in group_subtotals]
    else:
        ratios = [Decimal(1) / len(group_subtotals)] * len(group_subtotals)

    shipping = _apportion(to_decimal(shipping_cost), ratios)
    tax = _apportion(to_decimal(tax_amount), ratios)
    gifting = _apportion(to_decimal(gifting_fee), ratios)
    return [
        FeeShare(
            subtotal=to_cents(group_subtotals[i]),
            shipping_cost=shipping[i],
            tax_amount=tax[i],
            gifting_fee=gifting[i],
        )
        for i in range(len(group_subtotals))
    ]


class OrderSplitter:
    def __init__(self, db: AsyncSession, fulfillment: FulfillmentService):
        self.db = db
        self.fulfillment = fulfillment
        self.audit = AuditService(db)

    async def split_and_dispatch(self, order_id: UUID) -> SplitSummary:
        """
        Split a paid parent order into per-recipient children and dispatch them.

        With fewer than two delivery groups the parent itself is dispatched.
        The parent is claimed with a conditional update on ``is_split_order``
        so concurrent invocations split it at most once.
        """
        parent = await self.db.get(Order, order_id, populate_existing=True)
        if parent is None:
            raise NotFoundException(message=f"Order {order_id} not found", resource="order")
        if parent.payment_status != PaymentStatus.SUCCEEDED:
            raise ValidationException(message=f"Order {parent.order_number} is not paid and cannot be split")
        if parent.parent_order_id is not None:
            raise ValidationException(message=f"Order {parent.order_number} is already a split child")

        groups = parse_delivery_groups(parent.cart_data)
        if len(groups) < 2:
            return await self._passthrough(parent)

        if parent.is_split_order:
            return self._already_split(parent)

        planned, skipped_groups = self._plan(parent, groups)
        if len(planned) < 2:
            logger.info(f"Order {parent.order_number} has fewer than two non-empty groups, dispatching directly")
            summary = await self._passthrough(parent)
            summary.skipped_groups = skipped_groups
            return summary

        claimed = await self.db.execute(
            update(Order)
            .where(Order.id == parent.id, Order.is_split_order.is_(False))
            .values(is_split_order=True, total_split_orders=len(planned))
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            return self._already_split(parent)
        set_committed_value(parent, "is_split_order", True)
        set_committed_value(parent, "total_split_orders", len(planned))

        children = [
            self._build_child(parent, group, items, share, index, len(planned))
            for index, (group, items, share) in enumerate(planned, start=1)
        ]
        self.db.add_all(children)
        await self.db.flush()
        for child, (group, _, _) in zip(children, planned):
            if not group.has_valid_address:
                self._add_address_note(child, group)
        self.audit.record(
            action="order_split",
            status="split",
            order_id=parent.id,
            metadata={
                "children": [c.order_number for c in children],
                "skipped_groups": skipped_groups,
            },
        )
        await self.db.commit()

        results = []
        child_ids = [child.id for child in children]
        for child_id, (group, _, _) in zip(child_ids, planned):
            child = await self.db.get(Order, child_id, populate_existing=True)
            results.append(await self._dispatch_child(child, group))

        return await self._finalize_parent(parent, results, skipped_groups)

    def _plan(self, parent: Order, groups: List[DeliveryGroup]):
        parent_items = list(parent.items)
        parent_subtotal = sum((line_total(item) for item in parent_items), Decimal("0"))

        non_empty = []
        skipped = []
        for group in groups:
            items = items_for_group(parent_items, group)
            if not items:
                logger.info(f"No items found for delivery group {group.id} of order {parent.order_number}, skipping")
                skipped.append(group.id)
                continue
            non_empty.append((group, items))

        shares = apportion_fees(
            [sum((line_total(item) for item in items), Decimal("0")) for _, items in non_empty],
            parent_subtotal,
            parent.shipping_cost,
            parent.tax_amount,
            parent.gifting_fee,
        )
        planned = [(group, items, share) for (group, items), share in zip(non_empty, shares)]
        return planned, skipped

    def _build_child(
        self,
        parent: Order,
        group: DeliveryGroup,
        items: List[OrderItem],
        share: FeeShare,
        index: int,
        total: int,
    ) -> Order:
        child = Order(
            order_number=f"{parent.order_number}-{index}",
            user_id=parent.user_id,
            status=OrderStatus.PENDING if group.has_valid_address else OrderStatus.AWAITING_ADDRESS,
            payment_status=PaymentStatus.SUCCEEDED,
            stripe_session_id=parent.stripe_session_id,
            stripe_payment_intent_id=parent.stripe_payment_intent_id,
            fulfillment_method=settings.FULFILLMENT_METHOD,
            currency=parent.currency,
            subtotal=float(share.subtotal),
            shipping_cost=float(share.shipping_cost),
            tax_amount=float(share.tax_amount),
            gifting_fee=float(share.gifting_fee),
            total_amount=float(share.total_amount),
            parent_order_id=parent.id,
            delivery_group_id=group.id,
            is_split_order=True,
            split_order_index=index,
            total_split_orders=total,
            cart_data={"deliveryGroup": group.raw},
            shipping_info=group.shipping_address or parent.shipping_info,
        )
        child.items = [
            OrderItem(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.total_price,
                delivery_group_id=group.id,
                recipient_connection_id=item.recipient_connection_id or group.connection_id,
                gift_message=item.gift_message or group.gift_message,
            )
            for item in items
        ]
        return child

    def _add_address_note(self, child: Order, group: DeliveryGroup) -> None:
        missing = " and ".join(group.missing_address_fields)
        self.db.add(OrderNote(
            order_id=child.id,
            note_type="address_required",
            content=f"Recipient address required; shipment on hold. Missing: {missing}",
            is_internal=False,
        ))

    async def _dispatch_child(self, child: Order, group: DeliveryGroup) -> SplitChildResult:
        if child.status == OrderStatus.AWAITING_ADDRESS:
            return self._child_result(child, dispatched=False, error="Invalid shipping address - awaiting recipient details")
        snapshot = self._child_result(child, dispatched=False, error=None)
        try:
            outcome = await self.fulfillment.dispatch(child, expected_status=OrderStatus.PENDING)
        except Exception as e:
            # A failing child never aborts its siblings.
            await self.db.rollback()
            structured_logger.error(
                message="Split child dispatch raised",
                order_id=snapshot.order_id,
                metadata={"delivery_group_id": group.id},
                exception=e,
            )
            snapshot.error = str(e) or type(e).__name__
            return snapshot
        return self._child_result(child, dispatched=outcome.dispatched, error=outcome.error)

    def _child_result(self, child: Order, dispatched: bool, error: Optional[str]) -> SplitChildResult:
        return SplitChildResult(
            order_id=child.id,
            order_number=child.order_number,
            delivery_group_id=child.delivery_group_id,
            status=child.status.value,
            total_amount=child.total_amount,
            dispatched=dispatched,
            error=error,
        )

    async def _finalize_parent(
        self, parent: Order, results: List[SplitChildResult], skipped_groups: List[str]
    ) -> SplitSummary:
        dispatched = sum(1 for r in results if r.dispatched)
        if dispatched == len(results):
            parent_status = OrderStatus.PROCESSING
        elif dispatched:
            parent_status = OrderStatus.PARTIALLY_PROCESSED
        else:
            parent_status = OrderStatus.FAILED

        parent = await self.db.get(Order, parent.id, populate_existing=True)
        applied = await transition_order(self.db, parent, parent_status)
        self.audit.record(
            action="split_dispatch_completed",
            status=parent_status.value if applied else "conflict",
            order_id=parent.id,
            metadata={"dispatched": dispatched, "children": len(results)},
        )
        await self.db.commit()
        structured_logger.info(
            message="Split order processing complete",
            order_id=parent.id,
            metadata={"children": len(results), "dispatched": dispatched, "parent_status": parent_status.value},
        )

        return SplitSummary(
            parent_order_id=parent.id,
            outcome=SplitOutcome.SPLIT,
            parent_status=parent.status.value,
            total_split_orders=len(results),
            dispatched=dispatched,
            failed=sum(1 for r in results if not r.dispatched and r.status != OrderStatus.AWAITING_ADDRESS.value),
            awaiting_address=sum(1 for r in results if r.status == OrderStatus.AWAITING_ADDRESS.value),
            skipped_groups=skipped_groups,
            children=results,
        )

    async def _passthrough(self, parent: Order) -> SplitSummary:
        outcome = await self.fulfillment.dispatch(parent)
        return SplitSummary(
            parent_order_id=parent.id,
            outcome=SplitOutcome.PASSTHROUGH,
            parent_status=parent.status.value,
            total_split_orders=parent.total_split_orders or 1,
            dispatched=1 if outcome.dispatched else 0,
            failed=0 if outcome.dispatched or outcome.status == "skipped" else 1,
        )

    def _already_split(self, parent: Order) -> SplitSummary:
        logger.info(f"Order {parent.order_number} was already split, nothing to do")
        return SplitSummary(
            parent_order_id=parent.id,
            outcome=SplitOutcome.ALREADY_SPLIT,
            parent_status=parent.status.value,
            total_split_orders=parent.total_split_orders or 1,
        )
