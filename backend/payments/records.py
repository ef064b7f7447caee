from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from models.payment_record import PaymentRecord
from ptp.service import parse_amount, parse_payment_date, update_ptp_status_for_payment
from activities.logger import log_activity
from datetime import datetime
from typing import Optional
import logging

logger = logging.getLogger(__name__)

PAYMENT_SOURCES = ("manual", "import", "api")

def record_payment(
    db: Session,
    debtor_id: str,
    amount,
    payment_date,
    tenant_id: Optional[str] = None,
    reference: Optional[str] = None,
    source: str = "manual",
    created_by: Optional[str] = None,
    allocate: bool = True,
):
    """
    Stores a payment and settles the PTPs it covers.

    Args:
        debtor_id: debtor the payment belongs to
        amount: amount received (> 0)
        payment_date: date of payment
        reference: external reference; a second call with the same reference returns the stored record
        source: "manual", "import", "api"
        allocate: run the PTP update for the new record

    Returns:
        (PaymentRecord, ptp update result or None, created flag)
    """
    amount = parse_amount(amount)
    if amount <= 0:
        raise ValueError("Payment amount must be greater than 0")
    pay_date = parse_payment_date(payment_date)
    if source not in PAYMENT_SOURCES:
        raise ValueError(f"Source must be one of: {', '.join(PAYMENT_SOURCES)}")

    reference = (reference or "").strip() or None
    if reference:
        existing = db.query(PaymentRecord).filter(PaymentRecord.reference == reference).first()
        if existing:
            logger.info(f"Payment with reference {reference} already recorded as {existing.id}")
            return existing, None, False

    record = PaymentRecord(
        debtor_id=str(debtor_id),
        tenant_id=tenant_id,
        amount=amount,
        payment_date=pay_date,
        reference=reference,
        source=source,
        created_by=created_by,
        created_at=datetime.utcnow()
    )
    db.add(record)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error recording payment: {e}", exc_info=True)
        raise
    db.refresh(record)
    logger.info(f"Recorded payment {record.id}: debtor {debtor_id}, R{amount:.2f} on {pay_date}")

    try:
        log_activity(
            db,
            account_id=record.debtor_id,
            tenant_id=record.tenant_id,
            activity_type="payment",
            activity_subtype=f"payment_{source}",
            description=f"Payment of R{amount:.2f} received on {pay_date.isoformat()}",
            amount=amount,
            created_by=created_by,
            metadata={"paymentId": record.id, "reference": reference, "source": source},
        )
    except SQLAlchemyError as e:
        logger.error(f"Error creating account activity for payment {record.id}: {e}")

    update_result = None
    if allocate:
        update_result = update_ptp_status_for_payment(db, record.debtor_id, record.amount, record.payment_date)
        if update_result["errors"]:
            logger.warning(f"PTP update for payment {record.id} reported errors: {update_result['errors']}")

    return record, update_result, True

def get_payment_records(db: Session, debtor_id: Optional[str] = None, tenant_id: Optional[str] = None):
    """
    Payment records, newest first.

    Args:
        debtor_id: optional debtor filter
        tenant_id: optional tenant filter
    """
    try:
        query = db.query(PaymentRecord)
        if debtor_id:
            query = query.filter(PaymentRecord.debtor_id == str(debtor_id))
        if tenant_id:
            query = query.filter(PaymentRecord.tenant_id == tenant_id)
        return query.order_by(PaymentRecord.payment_date.desc(), PaymentRecord.created_at.desc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Error getting payment records: {e}", exc_info=True)
        return []

def serialize_payment(record: PaymentRecord) -> dict:
    return {
        "id": record.id,
        "debtor_id": record.debtor_id,
        "tenant_id": record.tenant_id,
        "amount": float(record.amount),
        "payment_date": record.payment_date.isoformat(),
        "reference": record.reference,
        "source": record.source,
        "created_by": record.created_by,
        "created_at": record.created_at.isoformat() if record.created_at else None
    }
