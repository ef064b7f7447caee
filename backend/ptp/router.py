from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date
from decimal import Decimal
import hmac
import logging

from models.payment_record import get_db
from core.config import settings
from core.security import get_current_user, require_admin
from ptp.service import (
    update_ptp_status_for_payment,
    bulk_update_ptp_statuses,
    get_ptps_affected_by_payment,
    get_ptp_update_stats,
    get_monthly_ptp_stats,
)
from ptp.arrangements import (
    PTPNotFoundError,
    create_ptp,
    get_ptp_history,
    update_ptp_status,
    check_for_defaulted_ptps,
    resolve_ptp,
    delete_ptp,
    get_agent_ptp_count,
    get_defaulted_ptps_by_agent,
    format_ptp,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ptp", tags=["ptp"])
cron_router = APIRouter(prefix="/api/cron", tags=["cron"])

class PaymentUpdateRequest(BaseModel):
    debtor_id: str = Field(..., min_length=1)
    payment_amount: Decimal = Field(..., gt=0)
    payment_date: date

class BulkUpdateRequest(BaseModel):
    payment_records: List[PaymentUpdateRequest]

class PTPCreateRequest(BaseModel):
    debtor_id: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
    date: date
    payment_method: Optional[str] = None
    notes: Optional[str] = None
    tenant_id: Optional[str] = None

class PTPStatusRequest(BaseModel):
    status: str

@router.post("/auto-update")
def auto_update_ptp_status(
    body: PaymentUpdateRequest,
    db: Session = Depends(get_db),
    user = Depends(require_admin)
):
    """
    Marks the debtor's PTPs covered by one payment as paid.
    Per-table failures come back in "errors"; they do not fail the request.
    """
    logger.info(f"{user.role} {user.id} triggered PTP update for debtor {body.debtor_id}")
    result = update_ptp_status_for_payment(
        db, body.debtor_id, body.payment_amount, body.payment_date, tenant_id=user.tenant_id
    )
    return {"success": not result["errors"], **result}

@router.post("/bulk-update")
def bulk_update(
    body: BulkUpdateRequest,
    db: Session = Depends(get_db),
    user = Depends(require_admin)
):
    """
    Runs the payment update for each record of an imported payment file.
    """
    logger.info(f"{user.role} {user.id} triggered bulk PTP update for {len(body.payment_records)} records")
    result = bulk_update_ptp_statuses(db, body.payment_records, tenant_id=user.tenant_id)
    return {"success": not result["errors"], **result}

@router.get("/affected")
def affected_by_payment(
    debtor_id: str = Query(..., min_length=1),
    payment_amount: Decimal = Query(..., gt=0),
    payment_date: date = Query(...),
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    """
    Preview of the PTPs a payment would settle.
    """
    return get_ptps_affected_by_payment(db, debtor_id, payment_amount, payment_date, tenant_id=user.tenant_id)

@router.get("/stats")
def ptp_stats(
    tenant_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    """
    PTP status counts. Users bound to a tenant only ever see their tenant.
    """
    return get_ptp_update_stats(db, tenant_id=_stats_tenant(user, tenant_id))

@router.get("/monthly-stats")
def ptp_monthly_stats(
    tenant_id: Optional[str] = None,
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    """
    Fulfilled / pending / defaulted split of this month's PTPs.
    """
    return get_monthly_ptp_stats(db, tenant_id=_stats_tenant(user, tenant_id))

@router.get("/defaulted-by-agent")
def defaulted_by_agent(
    db: Session = Depends(get_db),
    user = Depends(require_admin)
):
    """
    Defaulted PTPs grouped by the agent that captured them (admin/supervisor).
    """
    try:
        return get_defaulted_ptps_by_agent(db, tenant_id=user.tenant_id)
    except Exception as e:
        logger.error(f"Error fetching defaulted PTPs by agent: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch defaulted PTPs")

@router.get("/agents/{agent_id}/count")
def agent_ptp_count(
    agent_id: str,
    monthly: bool = False,
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    """
    Number of PTPs an agent captured. Agents can only ask about themselves.
    """
    if not user.is_admin and agent_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Agents can only view their own PTP count")
    return {"agent_id": agent_id, "monthly": monthly, "count": get_agent_ptp_count(db, agent_id, monthly=monthly)}

def _stats_tenant(user, tenant_id: Optional[str]) -> Optional[str]:
    if user.tenant_id:
        return user.tenant_id
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No tenant assigned to this profile")
    return tenant_id

def _create(body: PTPCreateRequest, db: Session, user, manual: bool):
    data = body.model_dump()
    data["created_by"] = user.id
    if user.tenant_id:
        data["tenant_id"] = user.tenant_id
    try:
        ptp = create_ptp(db, data, manual=manual, created_by_name=user.full_name)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"Error creating PTP: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create PTP")
    return format_ptp(ptp)

@router.post("", status_code=status.HTTP_201_CREATED)
def create_ptp_endpoint(
    body: PTPCreateRequest,
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    return _create(body, db, user, manual=False)

@router.post("/manual", status_code=status.HTTP_201_CREATED)
def create_manual_ptp_endpoint(
    body: PTPCreateRequest,
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    return _create(body, db, user, manual=True)

@router.get("/history/{debtor_id}")
def ptp_history(
    debtor_id: str,
    manual: bool = False,
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    try:
        rows = get_ptp_history(db, debtor_id, manual=manual)
    except Exception as e:
        logger.error(f"Error fetching PTP history for {debtor_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to fetch PTP history")
    if user.tenant_id:
        rows = [r for r in rows if r.tenant_id in (None, user.tenant_id)]
    return [format_ptp(r) for r in rows]

@router.patch("/{ptp_id}/status")
def change_ptp_status(
    ptp_id: str,
    body: PTPStatusRequest,
    manual: bool = False,
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    try:
        ptp = update_ptp_status(
            db, ptp_id, body.status, manual=manual,
            user_id=user.id, user_name=user.full_name, tenant_id=user.tenant_id
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PTPNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"Error updating PTP {ptp_id} status: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to update PTP status")
    return format_ptp(ptp)

@router.post("/{ptp_id}/resolve")
def resolve_ptp_endpoint(
    ptp_id: str,
    manual: bool = False,
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    """
    Marks a (defaulted) PTP as paid.
    """
    try:
        ptp = resolve_ptp(db, ptp_id, manual=manual, user_id=user.id, user_name=user.full_name,
                          tenant_id=user.tenant_id)
    except PTPNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"Error resolving PTP {ptp_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to resolve PTP")
    return format_ptp(ptp)

@router.delete("/{ptp_id}")
def delete_ptp_endpoint(
    ptp_id: str,
    manual: bool = False,
    db: Session = Depends(get_db),
    user = Depends(require_admin)
):
    """
    Deletes a PTP (admin/supervisor).
    """
    try:
        delete_ptp(db, ptp_id, manual=manual, user_id=user.id, user_name=user.full_name,
                   tenant_id=user.tenant_id)
    except PTPNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except Exception as e:
        logger.error(f"Error deleting PTP {ptp_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete PTP")
    return {"success": True, "id": ptp_id}

def _check_cron_secret(x_cron_secret: Optional[str] = Header(None)):
    expected = settings.CRON_SECRET
    if not expected:
        if settings.ENVIRONMENT == "production":
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="CRON_SECRET is not configured")
        return
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")

@cron_router.get("/check-defaulted-ptps", dependencies=[Depends(_check_cron_secret)])
def check_defaulted_ptps(db: Session = Depends(get_db)):
    """
    Called by the scheduler: pending PTPs dated before today become defaulted.
    """
    logger.info("Running scheduled check for defaulted PTPs")
    result = check_for_defaulted_ptps(db)
    if result["errors"]:
        return {
            "success": False,
            "message": "Defaulted PTP check finished with errors",
            **result
        }
    return {
        "success": True,
        "message": "Successfully checked for defaulted PTPs and updated their status.",
        **result
    }
