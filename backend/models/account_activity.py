from sqlalchemy import Column, String, DateTime, Numeric, JSON
from datetime import datetime

from models.payment_record import Base, new_id


class AccountActivity(Base):
    """
    Append-only trail of what happened on a debtor account.
    activity_type: "payment", "communication", "note", "status_change"
    """
    __tablename__ = "account_activities"

    id = Column(String, primary_key=True, default=new_id)
    account_id = Column(String, index=True, nullable=False)  # debtor id
    tenant_id = Column(String, index=True, nullable=True)
    activity_type = Column(String, nullable=False)
    activity_subtype = Column(String, nullable=True)  # e.g. "ptp_paid", "manual_ptp_defaulted"
    description = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    created_by = Column(String, nullable=True)
    created_by_name = Column(String, default="System")
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
