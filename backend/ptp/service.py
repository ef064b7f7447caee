"""
Payment to PTP reconciliation.

A payment of amount A on date D settles every open PTP (pending or defaulted)
of the same debtor whose committed amount is <= A and whose committed date is
<= D. PTP and ManualPTP are updated one after the other, each in its own
transaction: a failure on the second table does not roll back the first, it is
only reported in the result.
"""
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional
import logging
import re

from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from models.ptp import PTP, ManualPTP, OPEN_STATUSES
from activities.logger import log_activity

logger = logging.getLogger(__name__)

ALLOCATION_MODES = ("cover", "exhaust")

# currency symbols, spaces and anything else that is not part of the number
_AMOUNT_NOISE = re.compile(r"[^\d,.\-]")
_THOUSANDS = re.compile(r"^-?\d{1,3}(,\d{3})+$")

# model, result key, label used in error strings
_TABLES = (
    (PTP, "updated_ptps", "PTPs"),
    (ManualPTP, "updated_manual_ptps", "Manual PTPs"),
)


def parse_payment_date(value) -> date:
    """
    Accepts date, datetime or an ISO string ('2025-01-15', '2025-01-15T10:00:00Z').
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        s = value.strip()
        try:
            return date.fromisoformat(s[:10])
        except ValueError:
            pass
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date()
    raise ValueError(f"Invalid payment date: {value!r}")


def _amount_text(value: str) -> str:
    text = _AMOUNT_NOISE.sub("", value)
    if "," not in text:
        return text
    if "." in text or _THOUSANDS.match(text):
        return text.replace(",", "")
    return text.replace(",", ".")


def parse_amount(value) -> Decimal:
    """
    Accepts numbers and amount strings as they appear in payment files:
    "1250.50", "R 1,250.50", "1 250,50". A comma groups thousands when a dot is
    also present or when exactly three digits follow it; otherwise it is the
    decimal point.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Invalid payment amount: {value!r}")
    text = str(value) if isinstance(value, (int, float, Decimal)) else _amount_text(str(value))
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"Invalid payment amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid payment amount: {value!r}")
    return amount


def scope_to_tenant(query, model, tenant_id: Optional[str]):
    """Restricts a query to one tenant's rows plus rows that carry no tenant."""
    if tenant_id:
        query = query.filter(or_(model.tenant_id.is_(None), model.tenant_id == tenant_id))
    return query


def _covered_query(db: Session, model, debtor_id: str, amount: Decimal, payment_date: date,
                   tenant_id: Optional[str] = None):
    query = db.query(model).filter(
        model.debtor_id == str(debtor_id),
        model.status.in_(OPEN_STATUSES),
        model.date <= payment_date,
        model.amount <= amount,
    )
    return scope_to_tenant(query, model, tenant_id)


def _load_candidates(db: Session, model, debtor_id: str, amount: Decimal, payment_date: date,
                     tenant_id: Optional[str] = None):
    return (
        _covered_query(db, model, debtor_id, amount, payment_date, tenant_id)
        .order_by(model.date.asc(), model.created_at.asc())
        .all()
    )


def _select_exhausting(candidates: Dict[Any, list], amount: Decimal) -> Dict[Any, list]:
    """
    Walks the covered PTPs oldest first and keeps those the payment can still pay for.
    On equal dates PTP rows come before ManualPTP rows.
    """
    ordered = []
    for position, (model, _, _) in enumerate(_TABLES):
        for row in candidates.get(model, []):
            ordered.append((row.date, position, row.created_at or datetime.min, model, row))
    ordered.sort(key=lambda item: item[:3])

    remaining = amount
    chosen = {model: [] for model, _, _ in _TABLES}
    for _, _, _, model, row in ordered:
        committed = Decimal(str(row.amount))
        if committed <= remaining:
            chosen[model].append(row)
            remaining -= committed
    return chosen


def _mark_paid(db: Session, model, rows: List, now: datetime) -> int:
    for ptp in rows:
        ptp.status = "paid"
        ptp.updated_at = now
    db.commit()
    return len(rows)


def _record_paid_activities(db: Session, rows: List, payment_amount: Decimal, payment_date: date):
    if not rows:
        return
    try:
        for ptp in rows:
            prefix = "manual_ptp" if ptp.is_manual else "ptp"
            kind = "Manual Promise to Pay" if ptp.is_manual else "Promise to Pay"
            log_activity(
                db,
                account_id=ptp.debtor_id,
                tenant_id=ptp.tenant_id,
                activity_type="status_change",
                activity_subtype=f"{prefix}_paid",
                description=f"{kind} marked as paid by payment of R{payment_amount:.2f} on {payment_date.isoformat()}",
                amount=ptp.amount,
                metadata={
                    "ptpId": ptp.id,
                    "newStatus": "paid",
                    "paymentAmount": str(payment_amount),
                    "paymentDate": payment_date.isoformat(),
                    "systemUpdated": True,
                    "isManual": ptp.is_manual,
                },
                commit=False,
            )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Could not record account activities for paid PTPs: {e}")


def update_ptp_status_for_payment(
    db: Session,
    debtor_id: str,
    payment_amount,
    payment_date,
    mode: Optional[str] = None,
    tenant_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Marks the debtor's covered PTP and ManualPTP rows as paid.

    Args:
        debtor_id: debtor the payment belongs to
        payment_amount: amount received
        payment_date: date the payment was made
        mode: "cover" or "exhaust" (defaults to PTP_ALLOCATION_MODE)
        tenant_id: only settle this tenant's PTPs (and untenanted ones)

    Returns:
        {"updated_ptps": int, "updated_manual_ptps": int, "errors": [str]}
    """
    result = {"updated_ptps": 0, "updated_manual_ptps": 0, "errors": []}

    try:
        if debtor_id is None or not str(debtor_id).strip():
            raise ValueError("debtor_id is required")
        amount = parse_amount(payment_amount)
        pay_date = parse_payment_date(payment_date)
        mode = (mode or settings.PTP_ALLOCATION_MODE or "cover").lower()
        if mode not in ALLOCATION_MODES:
            raise ValueError(f"Unknown allocation mode: {mode}")

        logger.info(f"Updating PTP status for debtor {debtor_id}, amount: {amount}, date: {pay_date} ({mode})")

        candidates = {}
        failed = set()
        for model, _, label in _TABLES:
            try:
                candidates[model] = _load_candidates(db, model, debtor_id, amount, pay_date, tenant_id)
            except SQLAlchemyError as e:
                db.rollback()
                failed.add(model)
                logger.warning(f"Error loading {label} for debtor {debtor_id}: {e}")
                result["errors"].append(f"Error updating {label}: {e}")

        if mode == "exhaust":
            candidates = _select_exhausting(candidates, amount)

        now = datetime.utcnow()
        for model, key, label in _TABLES:
            if model in failed:
                continue
            rows = candidates.get(model, [])
            try:
                result[key] = _mark_paid(db, model, rows, now)
            except SQLAlchemyError as e:
                db.rollback()
                logger.warning(f"Error updating {label} for debtor {debtor_id}: {e}")
                result["errors"].append(f"Error updating {label}: {e}")
                continue
            logger.info(f"Updated {result[key]} {label} for debtor {debtor_id}")
            _record_paid_activities(db, rows, amount, pay_date)

    except Exception as e:
        logger.error(f"Error in update_ptp_status_for_payment: {e}", exc_info=True)
        result["errors"].append(f"Unexpected error: {e}")

    return result


def _preview_row(ptp) -> Dict[str, Any]:
    return {
        "id": ptp.id,
        "amount": float(ptp.amount),
        "date": ptp.date.isoformat() if ptp.date else None,
        "status": ptp.status,
        "notes": ptp.notes,
    }


def get_ptps_affected_by_payment(db: Session, debtor_id: str, payment_amount, payment_date,
                                 tenant_id: Optional[str] = None) -> Dict[str, list]:
    """
    Rows a payment would settle, for confirmation before processing.
    Read failures are logged and give empty lists.
    """
    preview = {"regular_ptps": [], "manual_ptps": []}
    try:
        amount = parse_amount(payment_amount)
        pay_date = parse_payment_date(payment_date)
    except ValueError as e:
        logger.error(f"Error in get_ptps_affected_by_payment: {e}")
        return preview

    for model, key in ((PTP, "regular_ptps"), (ManualPTP, "manual_ptps")):
        try:
            rows = _load_candidates(db, model, debtor_id, amount, pay_date, tenant_id)
            preview[key] = [_preview_row(ptp) for ptp in rows]
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error fetching {model.__tablename__} rows for debtor {debtor_id}: {e}")
    return preview


def _field(record, *names):
    for name in names:
        if isinstance(record, dict):
            if name in record:
                return record[name]
        elif hasattr(record, name):
            return getattr(record, name)
    return None


def bulk_update_ptp_statuses(db: Session, payment_records: Iterable, notify: bool = True,
                             tenant_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Runs the payment update for each record in order.
    A failing record is reported and the loop moves on; a record without a
    debtor id is reported and not processed.

    Records are dicts or objects carrying debtor_id, payment_amount, payment_date
    (camelCase keys from payment files are accepted too).
    """
    payment_records = list(payment_records or [])
    result = {
        "total_updated_ptps": 0,
        "total_updated_manual_ptps": 0,
        "processed_records": 0,
        "errors": [],
    }

    logger.info(f"Processing bulk PTP updates for {len(payment_records)} payment records")

    for record in payment_records:
        debtor_id = _field(record, "debtor_id", "debtorId")
        if debtor_id is None or not str(debtor_id).strip():
            result["errors"].append(f"Debtor {debtor_id}: debtor_id is required")
            continue
        try:
            update_result = update_ptp_status_for_payment(
                db,
                debtor_id,
                _field(record, "payment_amount", "paymentAmount"),
                _field(record, "payment_date", "paymentDate"),
                tenant_id=tenant_id,
            )

            result["total_updated_ptps"] += update_result["updated_ptps"]
            result["total_updated_manual_ptps"] += update_result["updated_manual_ptps"]
            result["processed_records"] += 1

            result["errors"].extend(f"Debtor {debtor_id}: {err}" for err in update_result["errors"])

        except Exception as e:
            db.rollback()
            logger.warning(f"Bulk PTP update failed for debtor {debtor_id}: {e}")
            result["errors"].append(f"Debtor {debtor_id}: {e}")

    logger.info(
        f"Bulk update completed: {result['total_updated_ptps']} PTPs, "
        f"{result['total_updated_manual_ptps']} Manual PTPs updated, {len(result['errors'])} errors"
    )

    if notify and result["errors"]:
        try:
            from notifications.telegram import send_telegram_notification, format_bulk_update_notification
            send_telegram_notification(format_bulk_update_notification(
                processed=result["processed_records"],
                total=len(payment_records),
                updated_ptps=result["total_updated_ptps"],
                updated_manual_ptps=result["total_updated_manual_ptps"],
                errors=result["errors"],
            ))
        except Exception as e:
            logger.warning(f"Failed to send bulk update notification: {e}", exc_info=True)

    return result


def _empty_stats() -> Dict[str, int]:
    return {
        "total_ptps": 0,
        "paid_ptps": 0,
        "pending_ptps": 0,
        "defaulted_ptps": 0,
        "auto_updated_today": 0,
    }


def _as_iso(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _status_rows(db: Session, model, tenant_id: Optional[str] = None, created_from=None, created_before=None):
    query = db.query(model.status, model.updated_at, model.amount)
    if tenant_id:
        query = query.filter(model.tenant_id == tenant_id)
    if created_from is not None:
        query = query.filter(model.created_at >= created_from)
    if created_before is not None:
        query = query.filter(model.created_at < created_before)
    return query.all()


def _read_status_rows(db: Session, caller: str, **filters) -> list:
    """Rows from both tables; a table that cannot be read is logged and left out."""
    rows = []
    for model, _, _ in _TABLES:
        try:
            rows.extend(_status_rows(db, model, **filters))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Error in {caller} reading {model.__tablename__}: {e}", exc_info=True)
    return rows


def get_ptp_update_stats(db: Session, tenant_id: Optional[str] = None) -> Dict[str, int]:
    """
    Status counts over PTP and ManualPTP, optionally for one tenant.
    auto_updated_today counts paid rows whose updated_at falls on today's UTC date.
    Counts from a table that could not be read are zero; the other table still counts.
    """
    today = datetime.utcnow().date().isoformat()
    rows = _read_status_rows(db, "get_ptp_update_stats", tenant_id=tenant_id)

    stats = _empty_stats()
    stats["total_ptps"] = len(rows)
    for status, updated_at, _ in rows:
        if status == "paid":
            stats["paid_ptps"] += 1
            if _as_iso(updated_at).startswith(today):
                stats["auto_updated_today"] += 1
        elif status == "pending":
            stats["pending_ptps"] += 1
        elif status == "defaulted":
            stats["defaulted_ptps"] += 1
    return stats


def _percentage(count: int, total: int) -> int:
    if not total:
        return 0
    return int((Decimal(count) * 100 / total).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def month_bounds(today: date):
    """First instant of the month of `today` and of the month after it."""
    start = datetime(today.year, today.month, 1)
    if today.month == 12:
        return start, datetime(today.year + 1, 1, 1)
    return start, datetime(today.year, today.month + 1, 1)


def get_monthly_ptp_stats(db: Session, tenant_id: Optional[str] = None,
                          today: Optional[date] = None) -> Dict[str, Any]:
    """
    Outcome of the PTPs created in the current (UTC) month, over both tables.

    Returns:
        total_ptps, fulfilled_ptps, pending_ptps, defaulted_ptps, the matching
        whole-number percentages and fulfilled_amount (sum of paid PTP amounts)
    """
    start, end = month_bounds(today or datetime.utcnow().date())
    rows = _read_status_rows(db, "get_monthly_ptp_stats", tenant_id=tenant_id,
                             created_from=start, created_before=end)

    total = len(rows)
    fulfilled = [amount for status, _, amount in rows if status == "paid"]
    pending = sum(1 for status, _, _ in rows if status == "pending")
    defaulted = sum(1 for status, _, _ in rows if status == "defaulted")
    stats = {
        "month": start.strftime("%Y-%m"),
        "total_ptps": total,
        "fulfilled_ptps": len(fulfilled),
        "pending_ptps": pending,
        "defaulted_ptps": defaulted,
        "fulfilled_percentage": _percentage(len(fulfilled), total),
        "pending_percentage": _percentage(pending, total),
        "defaulted_percentage": _percentage(defaulted, total),
        "fulfilled_amount": float(sum((Decimal(str(a)) for a in fulfilled if a is not None), Decimal("0"))),
    }
    logger.info(f"Monthly PTP statistics for {stats['month']}: {stats}")
    return stats
