"""
Duplicate order detection and cleanup.

Orders sharing one fulfillment reference were submitted to the retailer more
than once. The earliest order of each group is the original and is never
touched; later ones are cancelled when still in a cancellable status.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.utils.best_effort import run_best_effort
from core.utils.logging import structured_logger
from models.orders import Order, OrderNote, OrderStatus
from schemas.pipeline import (
    DuplicateAction,
    DuplicateCleanupMode,
    DuplicateCleanupSummary,
    DuplicateGroupReport,
    DuplicateOrderReport,
)
from services.audit import AuditService
from services.fulfillment_dispatcher import FulfillmentDispatcher
from services.order_state import transition_order

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.RETRY_PENDING,
})
CLEANUP_REASON = "Duplicate order cleanup"


@dataclass
class DuplicateGroup:
    fulfillment_reference: str
    original: Order
    duplicates: List[Order]


def group_duplicates(orders: Iterable[Order]) -> List[DuplicateGroup]:
    """
    Group orders by fulfillment reference and keep groups with more than one
    member. Within a group the earliest created order (ties broken by order
    number) is the original.
    """
    by_reference: Dict[str, List[Order]] = defaultdict(list)
    for order in orders:
        if order.fulfillment_reference:
            by_reference[order.fulfillment_reference].append(order)

    groups = []
    for reference in sorted(by_reference):
        members = sorted(by_reference[reference], key=lambda o: (o.created_at, o.order_number))
        if len(members) > 1:
            groups.append(DuplicateGroup(reference, members[0], members[1:]))
    return groups


@dataclass
class _GroupPlan:
    # Plain values only; loaded orders expire if a cancellation rolls back.
    fulfillment_reference: str
    original_id: UUID
    original_order_number: str
    duplicate_ids: List[UUID]


class DuplicateOrderDetector:
    def __init__(self, db: AsyncSession, dispatcher: FulfillmentDispatcher):
        self.db = db
        self.dispatcher = dispatcher
        self.audit = AuditService(db)

    async def find_duplicate_groups(self) -> List[DuplicateGroup]:
        duplicated = (
            select(Order.fulfillment_reference)
            .where(Order.fulfillment_reference.isnot(None))
            .group_by(Order.fulfillment_reference)
            .having(func.count(Order.id) > 1)
        )
        result = await self.db.execute(
            select(Order)
            .where(Order.fulfillment_reference.in_(duplicated))
            .execution_options(populate_existing=True)
        )
        return group_duplicates(result.scalars().all())

    async def run(self, mode: DuplicateCleanupMode = DuplicateCleanupMode.REPORT) -> DuplicateCleanupSummary:
        """
        Report duplicate groups; in cleanup mode also cancel eligible
        duplicates. Both modes share the grouping and eligibility logic,
        report mode has no side effects.
        """
        mode = DuplicateCleanupMode(mode)
        plans = [
            _GroupPlan(
                fulfillment_reference=group.fulfillment_reference,
                original_id=group.original.id,
                original_order_number=group.original.order_number,
                duplicate_ids=[order.id for order in group.duplicates],
            )
            for group in await self.find_duplicate_groups()
        ]
        summary = DuplicateCleanupSummary(mode=mode, groups_found=len(plans))

        for plan in plans:
            report = DuplicateGroupReport(
                fulfillment_reference=plan.fulfillment_reference,
                original_order_id=plan.original_id,
                original_order_number=plan.original_order_number,
            )
            for duplicate_id in plan.duplicate_ids:
                summary.duplicate_orders += 1
                entry = await self._handle_duplicate(duplicate_id, plan, mode)
                if entry.action == DuplicateAction.CANCELLED:
                    summary.cancelled += 1
                elif entry.action == DuplicateAction.SKIPPED:
                    summary.skipped += 1
                if entry.cancellation_outcome == "error":
                    summary.failed += 1
                report.duplicates.append(entry)
            summary.groups.append(report)

        structured_logger.info(
            message="Duplicate order scan complete",
            job="duplicate_cleanup",
            metadata=summary.model_dump(mode="json", exclude={"groups"}),
        )
        return summary

    def _entry(self, order: Order, action: DuplicateAction, **kwargs) -> DuplicateOrderReport:
        return DuplicateOrderReport(
            order_id=order.id,
            order_number=order.order_number,
            status=order.status.value,
            created_at=order.created_at,
            action=action,
            **kwargs,
        )

    async def _handle_duplicate(
        self, order_id: UUID, plan: _GroupPlan, mode: DuplicateCleanupMode
    ) -> DuplicateOrderReport:
        order = await self.db.get(Order, order_id, populate_existing=True)
        if order.status not in CANCELLABLE_STATUSES:
            return self._entry(order, DuplicateAction.SKIPPED, reason=f"status {order.status.value} is not cancellable")
        if mode == DuplicateCleanupMode.REPORT:
            return self._entry(order, DuplicateAction.WOULD_CANCEL)

        order_number = order.order_number
        try:
            return await self._cancel_duplicate(order, plan)
        except Exception as e:
            await self.db.rollback()
            structured_logger.error(
                message="Failed to cancel duplicate order",
                order_id=order_id,
                job="duplicate_cleanup",
                exception=e,
            )
            return DuplicateOrderReport(
                order_id=order_id,
                order_number=order_number,
                status="unknown",
                action=DuplicateAction.SKIPPED,
                cancellation_outcome="error",
                reason=str(e) or type(e).__name__,
            )

    async def _cancel_duplicate(self, order: Order, plan: _GroupPlan) -> DuplicateOrderReport:
        observed = order.status
        # Cancel the duplicate's own submission; the shared reference belongs to the original.
        cancellation_outcome = await self._cancel_at_dispatcher(order)

        applied = await transition_order(
            self.db, order, OrderStatus.CANCELLED,
            expected_status=observed,
            fulfillment_status=cancellation_outcome,
            cancellation_reason=CLEANUP_REASON,
        )
        if not applied:
            return DuplicateOrderReport(
                order_id=order.id,
                order_number=order.order_number,
                status=observed.value,
                action=DuplicateAction.SKIPPED,
                cancellation_outcome=cancellation_outcome,
                reason="status changed concurrently",
            )

        self.audit.record(
            action="duplicate_cancelled",
            status="cancelled",
            order_id=order.id,
            metadata={
                "fulfillment_reference": plan.fulfillment_reference,
                "original_order_id": str(plan.original_id),
                "original_order_number": plan.original_order_number,
                "cancellation_outcome": cancellation_outcome,
                "previous_status": observed.value,
            },
        )
        self.db.add(OrderNote(
            order_id=order.id,
            note_type="system_cleanup",
            content=(
                f"Cancelled as a duplicate of order {plan.original_order_number} "
                f"(fulfillment reference {plan.fulfillment_reference}). "
                f"Dispatcher cancellation: {cancellation_outcome}."
            ),
            is_internal=True,
        ))
        await self.db.commit()
        logger.info(f"Cancelled duplicate order {order.order_number} ({cancellation_outcome})")
        return self._entry(order, DuplicateAction.CANCELLED, cancellation_outcome=cancellation_outcome)

    async def _cancel_at_dispatcher(self, order: Order) -> str:
        request_id: Optional[str] = order.fulfillment_request_id
        if not request_id:
            return "cancellation_not_attempted"
        result = await run_best_effort(
            "fulfillment_cancel",
            lambda: self.dispatcher.cancel(request_id),
            order_id=str(order.id),
        )
        if result.succeeded and result.value is not None and result.value.success:
            return "cancelled"
        return "cancellation_attempted"
