"""
Audit models: append-only order audit trail and job execution log
"""
from enum import Enum

from sqlalchemy import Column, String, ForeignKey, Integer, DateTime, Text, JSON, Enum as SQLEnum
from core.database import BaseModel, GUID, CHAR_LENGTH


class OrderAuditLog(BaseModel):
    """Append-only record of a pipeline action taken on (or about) an order"""
    __tablename__ = "order_audit_logs"
    __table_args__ = {'extend_existing': True}

    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=True, index=True)
    # verification_recovered, payment_failed, discrepancy_found, dispatch_failed, ...
    action = Column(String(100), nullable=False, index=True)
    status = Column(String(50), nullable=False)
    verification_method = Column(String(50), nullable=True)
    payment_reference = Column(String(CHAR_LENGTH), nullable=True)
    error_details = Column(JSON, nullable=True)
    meta_data = Column(JSON, nullable=True)  # metadata is reserved by SQLAlchemy

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "order_id": str(self.order_id) if self.order_id else None,
            "action": self.action,
            "status": self.status,
            "verification_method": self.verification_method,
            "payment_reference": self.payment_reference,
            "error_details": self.error_details,
            "metadata": self.meta_data,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class JobExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


class JobExecutionLog(BaseModel):
    """One row per scheduled or manually triggered job run"""
    __tablename__ = "job_execution_logs"
    __table_args__ = {'extend_existing': True}

    job_name = Column(String(100), nullable=False, index=True)
    status = Column(
        SQLEnum(JobExecutionStatus, name="job_execution_status",
                values_callable=lambda e: [m.value for m in e]),
        nullable=False, default=JobExecutionStatus.RUNNING,
    )
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    processed_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    meta_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
