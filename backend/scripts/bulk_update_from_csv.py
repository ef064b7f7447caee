#!/usr/bin/env python3
"""
Runs the bulk PTP update for a CSV payment file.

The file needs the columns debtor_id, payment_amount, payment_date
(debtorId / paymentAmount / paymentDate and DEBTOR_ID style headers work too).

Usage:
    python scripts/bulk_update_from_csv.py payments.csv
    or
    python -m scripts.bulk_update_from_csv payments.csv
"""

import sys
import os
import csv
import logging
from typing import Iterable, List, Tuple

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from models.payment_record import init_db, get_db
from ptp.service import bulk_update_ptp_statuses

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

COLUMN_ALIASES = {
    "debtor_id": ("debtor_id", "debtorid"),
    "payment_amount": ("payment_amount", "paymentamount", "amount"),
    "payment_date": ("payment_date", "paymentdate", "date"),
}


def _normalize_header(name: str) -> str:
    return (name or "").strip().lower().replace(" ", "_")


def load_payment_records(lines: Iterable[str]) -> Tuple[List[dict], List[str]]:
    """
    Parses CSV lines into payment records.
    Returns (records, errors); rows missing a value are reported by line number and skipped.
    """
    reader = csv.DictReader(lines)
    headers = {_normalize_header(h): h for h in (reader.fieldnames or [])}
    headers.update({k.replace("_", ""): v for k, v in list(headers.items())})

    columns = {}
    for field, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in headers:
                columns[field] = headers[alias]
                break
    missing = [f for f in COLUMN_ALIASES if f not in columns]
    if missing:
        return [], [f"Missing columns: {', '.join(missing)}"]

    records, errors = [], []
    for line_no, row in enumerate(reader, start=2):
        record = {field: (row.get(column) or "").strip() for field, column in columns.items()}
        empty = [f for f, v in record.items() if not v]
        if empty:
            errors.append(f"Line {line_no}: empty {', '.join(empty)}")
            continue
        records.append(record)
    return records, errors


def main(argv=None):
    argv = argv if argv is not None else sys.argv[1:]
    if not argv:
        print(__doc__)
        return 2

    path = argv[0]
    logger.info(f"Reading payment file {path}")
    with open(path, newline="", encoding="utf-8-sig") as f:
        records, parse_errors = load_payment_records(f)

    for err in parse_errors:
        logger.warning(err)
    if not records:
        logger.warning("No payment records to process")
        return 1

    init_db()
    db = next(get_db())
    try:
        result = bulk_update_ptp_statuses(db, records)
    finally:
        db.close()

    logger.info("=" * 60)
    logger.info("Bulk PTP update finished:")
    logger.info(f"  Records processed: {result['processed_records']}/{len(records)}")
    logger.info(f"  PTPs paid: {result['total_updated_ptps']}")
    logger.info(f"  Manual PTPs paid: {result['total_updated_manual_ptps']}")
    logger.info(f"  Errors: {len(result['errors'])}")
    for err in result["errors"]:
        logger.error(f"  {err}")
    return 0 if not result["errors"] and not parse_errors else 1


if __name__ == "__main__":
    sys.exit(main())
