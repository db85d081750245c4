"""
Automated gifting: executions of standing gift rules that produced orders
"""
from sqlalchemy import Column, String, ForeignKey, Text
from core.database import BaseModel, GUID, CHAR_LENGTH


class AutomatedGiftExecution(BaseModel):
    """Execution of a standing gift rule, linked to the order it placed"""
    __tablename__ = "automated_gift_executions"
    __table_args__ = {'extend_existing': True}

    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=True, index=True)
    rule_id = Column(String(CHAR_LENGTH), nullable=False)
    # pending, processing, completed, failed
    status = Column(String(50), nullable=False, default="pending")
    error_message = Column(Text, nullable=True)
