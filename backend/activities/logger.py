from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from models.account_activity import AccountActivity
from datetime import datetime
from decimal import Decimal
from typing import Optional
import logging

logger = logging.getLogger(__name__)

def log_activity(
    db: Session,
    account_id: str,
    activity_type: str,
    activity_subtype: str,
    description: str,
    amount=None,
    created_by: Optional[str] = None,
    created_by_name: str = "System",
    metadata: Optional[dict] = None,
    commit: bool = True,
    tenant_id: Optional[str] = None,
):
    """
    Append an entry to the account activity trail.

    Args:
        account_id: debtor id
        activity_type: "payment", "communication", "note", "status_change"
        activity_subtype: e.g. "ptp_paid", "manual_ptp_created"
        metadata: JSON-serialisable details (ptp id, previous/new status, ...)
        commit: commit immediately; pass False to ride on the caller's transaction
        tenant_id: tenant of the PTP or payment the entry is about
    """
    entry = AccountActivity(
        account_id=str(account_id),
        tenant_id=tenant_id,
        activity_type=activity_type,
        activity_subtype=activity_subtype,
        description=description,
        amount=Decimal(str(amount)) if amount is not None else None,
        created_by=created_by,
        created_by_name=created_by_name or "System",
        details=metadata or {},
        created_at=datetime.utcnow()
    )
    db.add(entry)
    if commit:
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error logging account activity: {e}", exc_info=True)
            raise
        db.refresh(entry)
    return entry

def get_account_activities(db: Session, account_id: str, tenant_id: Optional[str] = None):
    """
    Activities for an account, newest first.
    With tenant_id only that tenant's entries (and untenanted ones) are returned.
    Returns an empty list when the trail cannot be read.
    """
    try:
        query = db.query(AccountActivity).filter(AccountActivity.account_id == str(account_id))
        if tenant_id:
            query = query.filter(or_(AccountActivity.tenant_id.is_(None), AccountActivity.tenant_id == tenant_id))
        return query.order_by(AccountActivity.created_at.desc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Error getting account activities: {e}", exc_info=True)
        return []

def serialize_activity(activity: AccountActivity) -> dict:
    return {
        "id": activity.id,
        "account_id": activity.account_id,
        "tenant_id": activity.tenant_id,
        "activity_type": activity.activity_type,
        "activity_subtype": activity.activity_subtype,
        "description": activity.description,
        "amount": float(activity.amount) if activity.amount is not None else None,
        "created_by": activity.created_by,
        "created_by_name": activity.created_by_name,
        "metadata": activity.details or {},
        "created_at": activity.created_at.isoformat() if activity.created_at else None
    }
