from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from models.payment_record import get_db
from activities.logger import get_account_activities, serialize_activity
from core.security import get_current_user

router = APIRouter(prefix="/api/accounts", tags=["activities"])

@router.get("/{debtor_id}/activities")
def account_activities(
    debtor_id: str,
    db: Session = Depends(get_db),
    user = Depends(get_current_user)
):
    """Activity trail of a debtor account, newest first. Tenant users only see their tenant's entries."""
    activities = get_account_activities(db, debtor_id, tenant_id=user.tenant_id)
    return [serialize_activity(a) for a in activities]
