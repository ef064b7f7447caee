#!/usr/bin/env python3
"""
Marks overdue pending PTPs as defaulted.

Runs the check against the database directly, or, with --url, calls the
/api/cron/check-defaulted-ptps route of a running instance (the way the
scheduler does it).

Usage:
    python scripts/check_defaulted_ptps.py
    python scripts/check_defaulted_ptps.py --url https://kollect.example.com
"""

import sys
import os
import argparse
import logging

import requests

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def run_local() -> dict:
    from models.payment_record import init_db, get_db
    from ptp.arrangements import check_for_defaulted_ptps

    init_db()
    db = next(get_db())
    try:
        return check_for_defaulted_ptps(db)
    finally:
        db.close()


def run_remote(base_url: str) -> dict:
    headers = {}
    if settings.CRON_SECRET:
        headers["X-Cron-Secret"] = settings.CRON_SECRET
    res = requests.get(f"{base_url.rstrip('/')}/api/cron/check-defaulted-ptps", headers=headers, timeout=60)
    res.raise_for_status()
    return res.json()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Mark overdue pending PTPs as defaulted")
    parser.add_argument("--url", help="base URL of a running API instance")
    args = parser.parse_args(argv)

    try:
        result = run_remote(args.url) if args.url else run_local()
    except Exception as e:
        logger.error(f"Defaulted PTP check failed: {e}", exc_info=True)
        return 1

    logger.info(
        f"Defaulted PTP check done: {result.get('defaulted_ptps', 0)} PTPs, "
        f"{result.get('defaulted_manual_ptps', 0)} Manual PTPs"
    )
    for err in result.get("errors", []):
        logger.error(f"  {err}")
    return 1 if result.get("errors") else 0


if __name__ == "__main__":
    sys.exit(main())
