from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional
import logging
import re

from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from models.ptp import PTP, ManualPTP, PTP_STATUSES
from activities.logger import log_activity
from ptp.service import parse_amount, parse_payment_date, scope_to_tenant, month_bounds

logger = logging.getLogger(__name__)

MANUAL_PAYMENT_METHODS = ("cash", "eft", "easypay")
PAYMENT_METHOD_LABELS = {"cash": "Cash", "eft": "EFT", "easypay": "EasyPay"}
SYSTEM_USER_ID = "00000000-0000-0000-0000-000000000000"
UNASSIGNED_AGENT = "unassigned"

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)


class PTPNotFoundError(LookupError):
    pass


def _model(manual: bool):
    return ManualPTP if manual else PTP


def _prefix(manual: bool) -> str:
    return "manual_ptp" if manual else "ptp"


def _label(manual: bool) -> str:
    return "Manual Promise to Pay" if manual else "Promise to Pay"


def normalize_created_by(created_by: Optional[str]) -> Optional[str]:
    """Only real profile UUIDs are stored; the system id and junk become None."""
    if not created_by or not isinstance(created_by, str):
        return None
    created_by = created_by.strip()
    if created_by == SYSTEM_USER_ID or not _UUID_RE.match(created_by):
        return None
    return created_by


def create_ptp(db: Session, data: Dict[str, Any], manual: bool = False, created_by_name: str = "System"):
    """
    Creates a pending PTP (or ManualPTP) arrangement.

    Args:
        data: debtor_id, amount, date, payment_method, notes, created_by, tenant_id
        manual: store in ManualPTP; payment_method must then be cash, eft or easypay

    Raises:
        ValueError: on invalid amount, date or payment method
    """
    debtor_id = str(data.get("debtor_id") or "").strip()
    if not debtor_id:
        raise ValueError("debtor_id is required")

    amount = parse_amount(data.get("amount"))
    if amount <= 0:
        raise ValueError("Amount must be greater than 0")
    ptp_date = parse_payment_date(data.get("date"))

    payment_method = (data.get("payment_method") or "").strip().lower() or None
    if manual and payment_method not in MANUAL_PAYMENT_METHODS:
        raise ValueError(f"Payment method must be one of: {', '.join(MANUAL_PAYMENT_METHODS)}")

    created_by = normalize_created_by(data.get("created_by"))
    model = _model(manual)
    ptp = model(
        debtor_id=debtor_id,
        tenant_id=data.get("tenant_id"),
        amount=amount,
        date=ptp_date,
        payment_method=payment_method,
        notes=data.get("notes") or "",
        status="pending",
        created_by=created_by,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    db.add(ptp)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating {model.__tablename__}: {e}", exc_info=True)
        raise
    db.refresh(ptp)
    logger.info(f"Created {model.__tablename__} {ptp.id} for debtor {debtor_id}: R{amount:.2f} on {ptp_date}")

    try:
        log_activity(
            db,
            account_id=debtor_id,
            tenant_id=ptp.tenant_id,
            activity_type="status_change",
            activity_subtype=f"{_prefix(manual)}_created",
            description=f"{_label(manual)} arrangement created for R{amount:.2f} on {ptp_date.strftime('%d %b %Y')}",
            amount=amount,
            created_by=created_by,
            created_by_name=created_by_name,
            metadata={
                "ptpId": ptp.id,
                "paymentMethod": payment_method,
                "paymentDate": ptp_date.isoformat(),
                "notes": ptp.notes,
                "isManual": manual,
            },
        )
    except SQLAlchemyError as e:
        # the arrangement stands even when the trail write fails
        logger.error(f"Error creating account activity for {model.__tablename__} {ptp.id}: {e}")

    return ptp


def get_ptp_history(db: Session, debtor_id: str, manual: bool = False):
    model = _model(manual)
    return (
        db.query(model)
        .filter(model.debtor_id == str(debtor_id))
        .order_by(model.date.desc())
        .all()
    )


def get_ptp(db: Session, ptp_id: str, manual: bool = False, tenant_id: Optional[str] = None):
    """
    One arrangement by id. With tenant_id, rows of other tenants are treated as missing.

    Raises:
        PTPNotFoundError: no arrangement with that id (for that tenant)
    """
    model = _model(manual)
    query = scope_to_tenant(db.query(model).filter(model.id == ptp_id), model, tenant_id)
    ptp = query.first()
    if not ptp:
        raise PTPNotFoundError(f"{model.__tablename__} {ptp_id} not found")
    return ptp


def _commit(db: Session, action: str):
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error {action}: {e}", exc_info=True)
        raise


def update_ptp_status(db: Session, ptp_id: str, status: str, manual: bool = False,
                      user_id: Optional[str] = None, user_name: str = "System",
                      tenant_id: Optional[str] = None):
    """
    Agent-driven status change of a single arrangement.

    Raises:
        ValueError: unknown status
        PTPNotFoundError: no arrangement with that id in the caller's tenant
    """
    if status not in PTP_STATUSES:
        raise ValueError(f"Status must be one of: {', '.join(PTP_STATUSES)}")

    ptp = get_ptp(db, ptp_id, manual=manual, tenant_id=tenant_id)
    table = ptp.__tablename__

    previous_status = ptp.status
    ptp.status = status
    ptp.updated_at = datetime.utcnow()
    _commit(db, f"updating {table} status")
    db.refresh(ptp)

    if status == "pending":
        description = f"{_label(manual)} arrangement status changed to {status}"
        subtype = f"{_prefix(manual)}_status_change"
    else:
        description = f"{_label(manual)} arrangement marked as {status}"
        subtype = f"{_prefix(manual)}_{status}"

    created_by = normalize_created_by(user_id)
    try:
        log_activity(
            db,
            account_id=ptp.debtor_id,
            tenant_id=ptp.tenant_id,
            activity_type="status_change",
            activity_subtype=subtype,
            description=description,
            amount=ptp.amount,
            created_by=created_by,
            created_by_name=user_name if created_by else "System",
            metadata={
                "ptpId": ptp.id,
                "previousStatus": previous_status,
                "newStatus": status,
                "paymentMethod": ptp.payment_method,
                "paymentDate": ptp.date.isoformat(),
                "systemUpdated": created_by is None,
                "isManual": manual,
            },
        )
    except SQLAlchemyError as e:
        logger.error(f"Error creating account activity for {table} status change: {e}")

    logger.info(f"{table} {ptp_id}: {previous_status} -> {status}")
    return ptp


def resolve_ptp(db: Session, ptp_id: str, manual: bool = False, user_id: Optional[str] = None,
                user_name: str = "System", tenant_id: Optional[str] = None):
    """
    Marks an arrangement (usually a defaulted one) as paid after the fact,
    e.g. once an agent has confirmed the money arrived.
    """
    ptp = get_ptp(db, ptp_id, manual=manual, tenant_id=tenant_id)
    table = ptp.__tablename__

    previous_status = ptp.status
    now = datetime.utcnow()
    ptp.status = "paid"
    ptp.updated_at = now
    _commit(db, f"resolving {table}")
    db.refresh(ptp)

    created_by = normalize_created_by(user_id)
    resolved_by = user_name if created_by else "System"
    try:
        log_activity(
            db,
            account_id=ptp.debtor_id,
            tenant_id=ptp.tenant_id,
            activity_type="status_change",
            activity_subtype=f"{_prefix(manual)}_resolved",
            description=f"{_label(manual)} marked as resolved/paid",
            amount=ptp.amount,
            created_by=created_by,
            created_by_name=resolved_by,
            metadata={
                "ptpId": ptp.id,
                "previousStatus": previous_status,
                "newStatus": "paid",
                "paymentMethod": ptp.payment_method,
                "paymentDate": ptp.date.isoformat(),
                "resolvedBy": resolved_by,
                "resolvedAt": now.isoformat(),
                "source": table,
            },
        )
    except SQLAlchemyError as e:
        logger.error(f"Error creating account activity for {table} resolution: {e}")

    logger.info(f"{table} {ptp_id} resolved ({previous_status} -> paid)")
    return ptp


def delete_ptp(db: Session, ptp_id: str, manual: bool = False, user_id: Optional[str] = None,
               user_name: str = "System", tenant_id: Optional[str] = None) -> None:
    """
    Removes an arrangement. The account trail keeps a ptp_deleted entry with its details.
    """
    ptp = get_ptp(db, ptp_id, manual=manual, tenant_id=tenant_id)
    table = ptp.__tablename__
    snapshot = {
        "debtor_id": ptp.debtor_id,
        "tenant_id": ptp.tenant_id,
        "amount": ptp.amount,
        "status": ptp.status,
        "payment_method": ptp.payment_method,
        "date": ptp.date.isoformat(),
    }

    db.delete(ptp)
    _commit(db, f"deleting {table} {ptp_id}")

    created_by = normalize_created_by(user_id)
    try:
        log_activity(
            db,
            account_id=snapshot["debtor_id"],
            tenant_id=snapshot["tenant_id"],
            activity_type="status_change",
            activity_subtype=f"{_prefix(manual)}_deleted",
            description=f"{_label(manual)} arrangement deleted",
            amount=snapshot["amount"],
            created_by=created_by,
            created_by_name=user_name if created_by else "System",
            metadata={
                "ptpId": ptp_id,
                "previousStatus": snapshot["status"],
                "deletedAt": datetime.utcnow().isoformat(),
                "paymentMethod": snapshot["payment_method"],
                "paymentDate": snapshot["date"],
                "isManual": manual,
            },
        )
    except SQLAlchemyError as e:
        logger.error(f"Error creating account activity for deleted {table} {ptp_id}: {e}")

    logger.info(f"Deleted {table} {ptp_id}")


def get_agent_ptp_count(db: Session, agent_id: str, monthly: bool = False,
                        today: Optional[date] = None) -> int:
    """
    Number of arrangements (both tables) an agent captured, optionally only this month's.
    Returns 0 for an unknown agent or when the count cannot be read.
    """
    agent_id = normalize_created_by(agent_id)
    if not agent_id:
        return 0

    total = 0
    for model in (PTP, ManualPTP):
        try:
            query = db.query(model).filter(model.created_by == agent_id)
            if monthly:
                start, end = month_bounds(today or datetime.utcnow().date())
                query = query.filter(model.created_at >= start, model.created_at < end)
            total += query.count()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error counting {model.__tablename__} rows for agent {agent_id}: {e}")
    return total


def get_defaulted_ptps_by_agent(db: Session, tenant_id: Optional[str] = None) -> Dict[str, list]:
    """
    Defaulted arrangements from both tables grouped by the agent that captured them,
    newest date first. Arrangements without an agent are grouped under "unassigned".

    Raises:
        SQLAlchemyError: when either table cannot be read
    """
    grouped: Dict[str, list] = {}
    rows = []
    for model in (PTP, ManualPTP):
        query = scope_to_tenant(db.query(model).filter(model.status == "defaulted"), model, tenant_id)
        rows.extend(query.all())

    rows.sort(key=lambda ptp: ptp.date, reverse=True)
    for ptp in rows:
        entry = format_ptp(ptp)
        entry["source"] = ptp.__tablename__
        grouped.setdefault(ptp.created_by or UNASSIGNED_AGENT, []).append(entry)

    logger.info(f"Found {len(rows)} defaulted PTPs across {len(grouped)} agents")
    return grouped



def _overdue_ptps(db: Session, model, today: date):
    return db.query(model).filter(model.status == "pending", model.date < today).all()


def check_for_defaulted_ptps(db: Session, today: Optional[date] = None, notify: bool = True) -> Dict[str, Any]:
    """
    Pending arrangements whose date is before today become defaulted.
    Both tables are handled separately; a failure on one is reported and the other still runs.
    """
    today = today or datetime.utcnow().date()
    result = {"defaulted_ptps": 0, "defaulted_manual_ptps": 0, "errors": []}

    for model, key in ((PTP, "defaulted_ptps"), (ManualPTP, "defaulted_manual_ptps")):
        try:
            overdue = _overdue_ptps(db, model, today)
            if not overdue:
                continue

            now = datetime.utcnow()
            for ptp in overdue:
                ptp.status = "defaulted"
                ptp.updated_at = now
            db.commit()
            result[key] = len(overdue)
            logger.info(f"Updated {len(overdue)} {model.__tablename__} rows to defaulted status")
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error updating defaulted {model.__tablename__} rows: {e}", exc_info=True)
            result["errors"].append(f"Error updating defaulted {model.__tablename__}: {e}")
            continue

        manual = model is ManualPTP
        try:
            for ptp in overdue:
                log_activity(
                    db,
                    account_id=ptp.debtor_id,
                    tenant_id=ptp.tenant_id,
                    activity_type="status_change",
                    activity_subtype=f"{_prefix(manual)}_defaulted",
                    description=f"{_label(manual)} arrangement defaulted",
                    amount=ptp.amount,
                    metadata={
                        "ptpId": ptp.id,
                        "previousStatus": "pending",
                        "newStatus": "defaulted",
                        "paymentMethod": ptp.payment_method,
                        "paymentDate": ptp.date.isoformat(),
                        "defaultedAt": now.isoformat(),
                        "systemDefaulted": True,
                        "isManual": manual,
                    },
                    commit=False,
                )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error creating account activities for defaulted {model.__tablename__} rows: {e}")

    total = result["defaulted_ptps"] + result["defaulted_manual_ptps"]
    if notify and total:
        try:
            from notifications.telegram import send_telegram_notification, format_defaulted_notification
            send_telegram_notification(format_defaulted_notification(
                result["defaulted_ptps"], result["defaulted_manual_ptps"], today.isoformat()
            ))
        except Exception as e:
            logger.warning(f"Failed to send defaulted PTP notification: {e}", exc_info=True)

    return result


def format_ptp(ptp) -> Dict[str, Any]:
    amount = Decimal(str(ptp.amount))
    return {
        "id": ptp.id,
        "debtor_id": ptp.debtor_id,
        "tenant_id": ptp.tenant_id,
        "amount": float(amount),
        "formatted_amount": f"R {amount:.2f}",
        "date": ptp.date.isoformat() if ptp.date else None,
        "formatted_date": ptp.date.strftime("%d %b %Y") if ptp.date else "",
        "payment_method": ptp.payment_method,
        "payment_method_label": PAYMENT_METHOD_LABELS.get(ptp.payment_method or "", ptp.payment_method),
        "notes": ptp.notes,
        "status": ptp.status,
        "created_by": ptp.created_by,
        "created_at": ptp.created_at.isoformat() if ptp.created_at else None,
        "updated_at": ptp.updated_at.isoformat() if ptp.updated_at else None,
        "is_manual": bool(ptp.is_manual),
    }
