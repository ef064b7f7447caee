from fastapi import APIRouter, HTTPException, Depends, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date
from decimal import Decimal
from models.payment_record import get_db
from payments.records import record_payment, get_payment_records, serialize_payment
from core.security import require_admin
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

class PaymentRecordRequest(BaseModel):
    debtor_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    payment_date: date
    tenant_id: Optional[str] = None
    reference: Optional[str] = None
    source: str = "manual"
    allocate: bool = True

class PaymentRecordResponse(BaseModel):
    id: str
    debtor_id: str
    tenant_id: Optional[str] = None
    amount: float
    payment_date: str
    reference: Optional[str] = None
    source: str
    created_by: Optional[str] = None
    created_at: Optional[str] = None

@router.post("", status_code=status.HTTP_201_CREATED)
def create_payment_record(
    body: PaymentRecordRequest,
    db: Session = Depends(get_db),
    user = Depends(require_admin)
):
    """
    Records a payment and marks the PTPs it covers as paid.
    Tenant-bound users can only record payments for their own tenant.
    """
    tenant_id = body.tenant_id
    if user.tenant_id:
        if tenant_id and tenant_id != user.tenant_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot record payments for another tenant")
        tenant_id = user.tenant_id

    logger.info(f"{user.role} {user.id} recording payment for debtor {body.debtor_id}: {body.amount}")

    try:
        record, update_result, created = record_payment(
            db,
            debtor_id=body.debtor_id,
            amount=body.amount,
            payment_date=body.payment_date,
            tenant_id=tenant_id,
            reference=body.reference,
            source=body.source,
            created_by=user.id,
            allocate=body.allocate
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error recording payment: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to record payment")

    return {
        "success": True,
        "idempotent": not created,
        "payment": serialize_payment(record),
        "ptp_update": update_result
    }

@router.get("", response_model=List[PaymentRecordResponse])
def list_payment_records(
    debtor_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user = Depends(require_admin)
):
    """
    Payment records, newest first (admin/supervisor).
    """
    if user.tenant_id:
        tenant_id = user.tenant_id
    records = get_payment_records(db, debtor_id=debtor_id, tenant_id=tenant_id)
    return [PaymentRecordResponse(**serialize_payment(r)) for r in records]
