"""Append-only audit trail for pipeline decisions."""
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.audit import OrderAuditLog


class AuditService:
    """Writes OrderAuditLog rows inside the caller's transaction.

    Entries are added to the session, never committed here, so an audit row
    and the state change it describes land in the same commit.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def record(
        self,
        action: str,
        status: str,
        order_id: Optional[UUID] = None,
        verification_method: Optional[str] = None,
        payment_reference: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> OrderAuditLog:
        entry = OrderAuditLog(
            order_id=order_id,
            action=action,
            status=status,
            verification_method=verification_method,
            payment_reference=payment_reference,
            error_details=error_details,
            meta_data=metadata,
        )
        self.db.add(entry)
        return entry

    async def list_for_order(self, order_id: UUID, action: Optional[str] = None):
        query = select(OrderAuditLog).where(OrderAuditLog.order_id == order_id)
        if action:
            query = query.where(OrderAuditLog.action == action)
        result = await self.db.execute(query.order_by(OrderAuditLog.created_at))
        return result.scalars().all()
