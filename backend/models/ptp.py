from sqlalchemy import Column, String, Date, DateTime, Numeric, Text
from datetime import datetime

from models.payment_record import Base, new_id

PTP_STATUSES = ("pending", "paid", "defaulted")
# Statuses a payment can still settle
OPEN_STATUSES = ("pending", "defaulted")


class _PromiseColumns:
    id = Column(String, primary_key=True, default=new_id)
    debtor_id = Column(String, index=True, nullable=False)
    tenant_id = Column(String, index=True, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)  # committed amount
    date = Column(Date, index=True, nullable=False)  # committed payment date
    payment_method = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(String, index=True, default="pending")  # "pending", "paid", "defaulted"
    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PTP(_PromiseColumns, Base):
    """Promise to pay captured by an agent during a call."""
    __tablename__ = "PTP"

    is_manual = False


class ManualPTP(_PromiseColumns, Base):
    """Promise to pay captured by hand (walk-in, cash or EFT arrangement)."""
    __tablename__ = "ManualPTP"

    is_manual = True
