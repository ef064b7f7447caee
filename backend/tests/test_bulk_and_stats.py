"""
Bulk PTP update driver and PTP statistics.
Run: cd backend && pytest tests/test_bulk_and_stats.py -v
"""

from datetime import date, datetime, timedelta
from types import SimpleNamespace

from sqlalchemy.exc import OperationalError

import ptp.service as service
from models.ptp import ManualPTP
from ptp.service import bulk_update_ptp_statuses, get_ptp_update_stats, get_monthly_ptp_stats
from scripts.bulk_update_from_csv import load_payment_records


class TestBulkUpdate:

    def test_counts_are_summed(self, db, make_ptp):
        make_ptp(debtor_id="D1", amount=100, on="2025-01-01")
        make_ptp(debtor_id="D1", amount=200, on="2025-01-02", manual=True)
        make_ptp(debtor_id="D2", amount=300, on="2025-01-03")
        make_ptp(debtor_id="D2", amount=900, on="2025-01-03")

        result = bulk_update_ptp_statuses(db, [
            {"debtor_id": "D1", "payment_amount": 500, "payment_date": "2025-01-10"},
            {"debtorId": "D2", "paymentAmount": 400, "paymentDate": "2025-01-10"},
        ])

        assert result == {
            "total_updated_ptps": 2,
            "total_updated_manual_ptps": 1,
            "processed_records": 2,
            "errors": [],
        }

    def test_accepts_objects(self, db, make_ptp):
        make_ptp(debtor_id="D1", amount=100, on="2025-01-01")
        record = SimpleNamespace(debtor_id="D1", payment_amount=100, payment_date="2025-01-01")

        result = bulk_update_ptp_statuses(db, [record])

        assert result["total_updated_ptps"] == 1

    def test_failure_on_one_record_does_not_stop_the_next(self, db, make_ptp, monkeypatch):
        make_ptp(debtor_id="D1", amount=100, on="2025-01-01")
        make_ptp(debtor_id="D3", amount=100, on="2025-01-01")

        original = service.update_ptp_status_for_payment

        def exploding(session, debtor_id, amount, payment_date, mode=None, tenant_id=None):
            if debtor_id == "D2":
                raise RuntimeError("connection reset")
            return original(session, debtor_id, amount, payment_date, mode, tenant_id)

        monkeypatch.setattr(service, "update_ptp_status_for_payment", exploding)

        result = bulk_update_ptp_statuses(db, [
            {"debtor_id": "D1", "payment_amount": 100, "payment_date": "2025-01-05"},
            {"debtor_id": "D2", "payment_amount": 100, "payment_date": "2025-01-05"},
            {"debtor_id": "D3", "payment_amount": 100, "payment_date": "2025-01-05"},
        ])

        assert result["total_updated_ptps"] == 2
        assert result["processed_records"] == 2
        assert result["errors"] == ["Debtor D2: connection reset"]

    def test_per_record_errors_are_prefixed(self, db, make_ptp):
        make_ptp(debtor_id="D1", amount=100, on="2025-01-01")

        result = bulk_update_ptp_statuses(db, [
            {"debtor_id": "BAD", "payment_amount": 100, "payment_date": "yesterday"},
            {"debtor_id": "D1", "payment_amount": 100, "payment_date": "2025-01-05"},
        ])

        assert result["processed_records"] == 2
        assert result["total_updated_ptps"] == 1
        assert len(result["errors"]) == 1
        assert result["errors"][0].startswith("Debtor BAD: Unexpected error:")

    def test_errors_trigger_one_notification(self, db, monkeypatch):
        sent = []
        monkeypatch.setattr("notifications.telegram.send_telegram_notification", lambda message: sent.append(message))

        bulk_update_ptp_statuses(db, [
            {"debtor_id": "X", "payment_amount": "oops", "payment_date": "2025-01-05"},
        ])

        assert len(sent) == 1
        assert "Debtor X" in sent[0]

    def test_clean_run_sends_nothing(self, db, monkeypatch):
        sent = []
        monkeypatch.setattr("notifications.telegram.send_telegram_notification", lambda message: sent.append(message))

        bulk_update_ptp_statuses(db, [])

        assert sent == []

    def test_record_without_debtor_is_reported_not_processed(self, db, make_ptp):
        make_ptp(debtor_id="D1", amount=100, on="2025-01-01")

        result = bulk_update_ptp_statuses(db, [
            {"payment_amount": 100, "payment_date": "2025-01-05"},
            {"debtor_id": "D1", "payment_amount": 100, "payment_date": "2025-01-05"},
        ], notify=False)

        assert result["processed_records"] == 1
        assert result["total_updated_ptps"] == 1
        assert result["errors"] == ["Debtor None: debtor_id is required"]

    def test_csv_amount_with_thousands_separator(self, db, make_ptp):
        ptp = make_ptp(debtor_id="D1", amount=1000, on="2025-01-01")
        records, parse_errors = load_payment_records([
            "debtor_id,payment_amount,payment_date\n",
            'D1,"1,250",2025-01-10\n',
        ])

        result = bulk_update_ptp_statuses(db, records, notify=False)

        assert parse_errors == []
        assert result == {
            "total_updated_ptps": 1,
            "total_updated_manual_ptps": 0,
            "processed_records": 1,
            "errors": [],
        }
        db.refresh(ptp)
        assert ptp.status == "paid"

    def test_bulk_scoped_to_tenant(self, db, make_ptp):
        foreign = make_ptp(debtor_id="D1", amount=100, on="2025-01-01", tenant_id="T2")

        result = bulk_update_ptp_statuses(db, [
            {"debtor_id": "D1", "payment_amount": 100, "payment_date": "2025-01-05"},
        ], tenant_id="T1")

        assert result["total_updated_ptps"] == 0
        db.refresh(foreign)
        assert foreign.status == "pending"


class TestStats:

    def test_counts_by_status(self, db, make_ptp):
        now = datetime.utcnow()
        make_ptp(status="pending")
        make_ptp(status="defaulted", manual=True)
        make_ptp(status="paid", updated_at=now)
        make_ptp(status="paid", manual=True, updated_at=now - timedelta(days=2))

        stats = get_ptp_update_stats(db)

        assert stats == {
            "total_ptps": 4,
            "paid_ptps": 2,
            "pending_ptps": 1,
            "defaulted_ptps": 1,
            "auto_updated_today": 1,
        }

    def test_tenant_filter(self, db, make_ptp):
        make_ptp(tenant_id="T1", status="pending")
        make_ptp(tenant_id="T1", status="paid", manual=True)
        make_ptp(tenant_id="T2", status="pending")

        stats = get_ptp_update_stats(db, tenant_id="T1")

        assert stats["total_ptps"] == 2
        assert stats["pending_ptps"] == 1
        assert stats["paid_ptps"] == 1

    def test_payment_update_counts_as_today(self, db, make_ptp):
        make_ptp(amount=100, on="2025-01-01")

        service.update_ptp_status_for_payment(db, "D1", 100, "2025-01-02")

        assert get_ptp_update_stats(db)["auto_updated_today"] == 1

    def test_empty_tables(self, db):
        assert get_ptp_update_stats(db)["total_ptps"] == 0

    def test_unreadable_manual_table_keeps_regular_counts(self, db, make_ptp, monkeypatch):
        make_ptp(status="pending")
        make_ptp(status="paid")
        make_ptp(status="pending", manual=True)

        original = service._status_rows

        def flaky(session, model, **filters):
            if model is ManualPTP:
                raise OperationalError("SELECT \"ManualPTP\"", {}, Exception("no such table"))
            return original(session, model, **filters)

        monkeypatch.setattr(service, "_status_rows", flaky)

        stats = get_ptp_update_stats(db)

        assert stats["total_ptps"] == 2
        assert stats["pending_ptps"] == 1
        assert stats["paid_ptps"] == 1

    def test_unreadable_tables_give_zeros(self, db, make_ptp, monkeypatch):
        make_ptp(status="paid")

        def broken(session, model, **filters):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(service, "_status_rows", broken)

        assert get_ptp_update_stats(db) == {
            "total_ptps": 0,
            "paid_ptps": 0,
            "pending_ptps": 0,
            "defaulted_ptps": 0,
            "auto_updated_today": 0,
        }


class TestMonthlyStats:

    def test_split_of_this_months_ptps(self, db, make_ptp):
        today = date(2025, 3, 18)
        in_month = datetime(2025, 3, 2, 9, 0)
        make_ptp(status="paid", amount=300, created_at=in_month)
        make_ptp(status="paid", amount="150.50", manual=True, created_at=in_month)
        make_ptp(status="pending", created_at=in_month)
        make_ptp(status="defaulted", created_at=datetime(2025, 3, 31, 23, 59))
        make_ptp(status="paid", amount=999, created_at=datetime(2025, 2, 28, 23, 59))
        make_ptp(status="paid", amount=999, created_at=datetime(2025, 4, 1, 0, 0))

        stats = get_monthly_ptp_stats(db, today=today)

        assert stats == {
            "month": "2025-03",
            "total_ptps": 4,
            "fulfilled_ptps": 2,
            "pending_ptps": 1,
            "defaulted_ptps": 1,
            "fulfilled_percentage": 50,
            "pending_percentage": 25,
            "defaulted_percentage": 25,
            "fulfilled_amount": 450.5,
        }

    def test_percentages_round_half_up(self, db, make_ptp):
        created = datetime(2025, 12, 5)
        make_ptp(status="paid", created_at=created)
        make_ptp(status="pending", created_at=created)
        make_ptp(status="pending", created_at=created)

        stats = get_monthly_ptp_stats(db, today=date(2025, 12, 31))

        assert stats["fulfilled_percentage"] == 33
        assert stats["pending_percentage"] == 67

    def test_empty_month(self, db):
        stats = get_monthly_ptp_stats(db, today=date(2025, 1, 1))
        assert stats["total_ptps"] == 0
        assert stats["fulfilled_percentage"] == 0
        assert stats["fulfilled_amount"] == 0.0

    def test_tenant_filter(self, db, make_ptp):
        created = datetime(2025, 5, 5)
        make_ptp(status="paid", tenant_id="T1", created_at=created)
        make_ptp(status="paid", tenant_id="T2", created_at=created)

        stats = get_monthly_ptp_stats(db, tenant_id="T1", today=date(2025, 5, 20))

        assert stats["total_ptps"] == 1
