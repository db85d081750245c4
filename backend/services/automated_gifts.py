"""Tracking of standing gift rule executions that placed orders."""
import logging
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models.automation import AutomatedGiftExecution

logger = logging.getLogger(__name__)


class AutomatedExecutionTracker:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def mark_failed(self, order_id: UUID, reason: str) -> bool:
        """
        Mark the execution that produced ``order_id`` as failed.
        Returns False when no execution is linked to the order. Does not commit.
        """
        if not reason or not reason.strip():
            raise ValueError("A failure reason is required")

        result = await self.db.execute(
            update(AutomatedGiftExecution)
            .where(AutomatedGiftExecution.order_id == order_id)
            .values(status="failed", error_message=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.info(f"Marked automated execution failed for order {order_id}: {reason}")
        return bool(result.rowcount)
