"""
Tests for date windows, chunked pagination and the end-to-end run.
"""

import argparse
import csv
from datetime import datetime, timedelta, timezone

import pytest

import shared_mailbox_deletion_audit as audit
from conftest import FakeAuditLogAPI, FakeGraphClient, make_record

UTC = timezone.utc


def hourly_records(start, end):
    """Одна запись на каждый час окна"""
    records = []
    moment = start
    while moment < end:
        records.append(make_record(moment.strftime("%Y%m%d%H"), moment.strftime("%Y-%m-%dT%H:%M:%SZ")))
        moment += timedelta(hours=1)
    return records


class TestSplitDateRange:

    def test_even_split(self):
        start = datetime(2025, 3, 1, tzinfo=UTC)
        windows = audit.split_date_range(start, start + timedelta(days=14), timedelta(days=7))
        assert windows == [
            (start, start + timedelta(days=7)),
            (start + timedelta(days=7), start + timedelta(days=14)),
        ]

    def test_last_window_is_shorter(self):
        start = datetime(2025, 3, 1, tzinfo=UTC)
        windows = audit.split_date_range(start, start + timedelta(days=10), timedelta(days=7))
        assert windows[-1] == (start + timedelta(days=7), start + timedelta(days=10))
        assert len(windows) == 2

    def test_invalid_arguments(self):
        start = datetime(2025, 3, 1, tzinfo=UTC)
        with pytest.raises(ValueError):
            audit.split_date_range(start, start, timedelta(days=1))
        with pytest.raises(ValueError):
            audit.split_date_range(start, start + timedelta(days=1), timedelta(0))


class TestResolveDateRange:
    now = datetime(2025, 6, 30, 12, 0, tzinfo=UTC)

    def test_days_back(self):
        start, end = audit.resolve_date_range(days_back=7, now=self.now)
        assert end == self.now
        assert start == self.now - timedelta(days=7)

    def test_future_end_is_clamped(self):
        _, end = audit.resolve_date_range(end_date=self.now + timedelta(days=3), now=self.now)
        assert end == self.now

    def test_old_start_is_clamped_to_retention(self, caplog):
        start, _ = audit.resolve_date_range(start_date=datetime(2024, 1, 1, tzinfo=UTC), now=self.now)
        assert start == self.now - timedelta(days=audit.MAX_DAYS_BACK)
        assert "older than 180 days" in caplog.text

    def test_naive_dates_are_utc(self):
        start, end = audit.resolve_date_range(
            start_date=datetime(2025, 6, 1), end_date=datetime(2025, 6, 2), now=self.now
        )
        assert start.tzinfo == UTC and end.tzinfo == UTC

    def test_start_after_end_raises(self):
        with pytest.raises(ValueError, match="must be earlier"):
            audit.resolve_date_range(
                start_date=datetime(2025, 6, 10, tzinfo=UTC),
                end_date=datetime(2025, 6, 1, tzinfo=UTC),
                now=self.now,
            )


class TestAuditLogPaginator:

    def test_one_query_per_window(self):
        api = FakeAuditLogAPI(hourly_records, page_size=10)
        paginator = audit.AuditLogPaginator(api, chunk_size=timedelta(days=1))
        start = datetime(2025, 3, 1, tzinfo=UTC)

        pages = paginator.fetch(start, start + timedelta(days=3), ["SoftDelete"], ["bob@contoso.com"])

        assert len(api.created) == 3
        assert api.created[0][2] == ["SoftDelete"]
        assert api.created[0][3] == ["bob@contoso.com"]
        assert sum(len(p) for p in pages) == 72
        assert paginator.stats.chunks == 3
        assert paginator.stats.pages == 9
        assert paginator.stats.records_fetched == 72

    def test_capped_window_is_split(self):
        api = FakeAuditLogAPI(hourly_records, page_size=4)
        paginator = audit.AuditLogPaginator(
            api, chunk_size=timedelta(hours=24), result_cap=10, min_chunk_size=timedelta(hours=1)
        )
        start = datetime(2025, 3, 1, tzinfo=UTC)

        pages = paginator.fetch(start, start + timedelta(hours=24), ["SoftDelete"])
        ids = [record["id"] for page in pages for record in page]

        # 24h -> 12h windows, each 12h window ends right after the cap is crossed
        assert ids == [(start + timedelta(hours=h)).strftime("%Y%m%d%H") for h in range(24)]
        assert paginator.stats.chunks == 2
        assert paginator.stats.queries == 3
        assert paginator.stats.truncated_chunks == 0

    def test_window_with_exactly_cap_records_is_not_split(self, caplog):
        api = FakeAuditLogAPI(hourly_records, page_size=4)
        paginator = audit.AuditLogPaginator(
            api, chunk_size=timedelta(hours=8), result_cap=8, min_chunk_size=timedelta(hours=1)
        )
        start = datetime(2025, 3, 1, tzinfo=UTC)

        pages = paginator.fetch(start, start + timedelta(hours=8), ["SoftDelete"])

        assert [len(p) for p in pages] == [4, 4]
        assert paginator.stats.queries == 1
        assert paginator.stats.truncated_chunks == 0
        assert "splitting in half" not in caplog.text

    def test_window_at_minimum_size_with_exactly_cap_records(self):
        api = FakeAuditLogAPI(hourly_records, page_size=1)
        paginator = audit.AuditLogPaginator(
            api, chunk_size=timedelta(hours=1), result_cap=1, min_chunk_size=timedelta(hours=1)
        )
        start = datetime(2025, 3, 1, tzinfo=UTC)

        pages = paginator.fetch(start, start + timedelta(hours=3), ["SoftDelete"])

        assert sum(len(p) for p in pages) == 3
        assert paginator.stats.chunks == 3
        assert paginator.stats.truncated_chunks == 0

    def test_window_at_minimum_size_is_truncated(self, caplog):
        def crowded(start, end):
            return [make_record(f"{start:%H%M}-{i}", start.strftime("%Y-%m-%dT%H:%M:%SZ")) for i in range(10)]

        api = FakeAuditLogAPI(crowded, page_size=3)
        paginator = audit.AuditLogPaginator(
            api, chunk_size=timedelta(hours=2), result_cap=5, min_chunk_size=timedelta(hours=1)
        )
        start = datetime(2025, 3, 1, tzinfo=UTC)

        pages = paginator.fetch(start, start + timedelta(hours=2), ["HardDelete"])

        assert paginator.stats.truncated_chunks == 2
        # every page read is kept, the last page of each half is never requested
        assert [len(p) for p in pages] == [3, 3, 3, 3, 3, 3]
        assert paginator.stats.records_fetched == 18
        assert "reading stopped after 9 records" in caplog.text


class TestSearchAuditLog:

    def test_records_are_flattened(self):
        api = FakeAuditLogAPI(hourly_records, page_size=5)
        client = FakeGraphClient(api)
        start = datetime(2025, 3, 1, tzinfo=UTC)
        event_filter = audit.EventFilter(performed_by={"Bob@Contoso.com"})

        records = audit.search_audit_log(
            client, start, start + timedelta(hours=12), ["SoftDelete"], event_filter,
            chunk_size=timedelta(hours=6),
        )

        assert len(records) == 12
        assert api.created[0][3] == ["bob@contoso.com"]


class TestRunAudit:

    def test_end_to_end(self, tmp_path):
        start = datetime(2025, 3, 1, tzinfo=UTC)

        def records_for(window_start, window_end):
            records = []
            if window_start == start:
                records.append(make_record("b", "2025-03-01T12:00:00Z", subjects=("Quarterly invoice",)))
                records.append(make_record("a", "2025-03-01T08:00:00Z", mailbox="hr@contoso.com"))
            else:
                # repeated at the window boundary
                records.append(make_record("b", "2025-03-01T12:00:00Z", subjects=("Quarterly invoice",)))
                records.append(make_record("c", "2025-03-02T09:30:00Z", operation="HardDelete",
                                           subjects=("Lunch",)))
                records.append({"id": "d", "operation": "SoftDelete", "objectId": "support@contoso.com",
                                "createdDateTime": "2025-03-02T10:00:00Z", "auditData": "{oops"})
            return records

        client = FakeGraphClient(FakeAuditLogAPI(records_for, page_size=2))
        event_filter = audit.EventFilter(mailboxes={"support@contoso.com"})

        stats = audit.run_audit(
            client=client,
            start=start,
            end=start + timedelta(days=2),
            operations=audit.DELETION_OPERATIONS,
            event_filter=event_filter,
            output_dir=tmp_path,
            chunk_size=timedelta(days=1),
            max_workers=2,
        )

        assert stats.records_fetched == 5
        assert stats.duplicates == 1
        assert stats.malformed_payloads == 1
        assert stats.events_written == 3

        with open(tmp_path / audit.CSV_FILE_NAME, encoding="utf-8-sig", newline="") as f:
            rows = list(csv.DictReader(f))
        assert [row["record_id"] for row in rows] == ["b", "c", "d"]
        assert rows[0]["subjects"] == "Quarterly invoice"
        assert rows[1]["activity_type"] == "HardDelete"
        assert rows[2]["raw_payload"] == "{oops"

        summary = (tmp_path / audit.SUMMARY_FILE_NAME).read_text(encoding="utf-8")
        assert "support@contoso.com\t3\t2\t2\t1\t0" in summary

    def test_no_matches_writes_header_only(self, tmp_path):
        client = FakeGraphClient(FakeAuditLogAPI(lambda s, e: []))
        start = datetime(2025, 3, 1, tzinfo=UTC)

        stats = audit.run_audit(
            client=client,
            start=start,
            end=start + timedelta(days=1),
            operations=["SoftDelete"],
            event_filter=audit.EventFilter(subject_contains="payroll"),
            output_dir=tmp_path,
        )

        assert stats.events_written == 0
        assert (tmp_path / audit.CSV_FILE_NAME).exists()
        assert not (tmp_path / audit.SUMMARY_FILE_NAME).exists()


class TestSettingsAndArguments:

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("TENANT_ID", "tenant")
        monkeypatch.setenv("CLIENT_ID", "client")
        monkeypatch.setenv("CLIENT_SECRET", "secret")
        monkeypatch.delenv("CERTIFICATE_PATH", raising=False)
        monkeypatch.delenv("CERTIFICATE_THUMBPRINT", raising=False)

        settings = audit.get_settings()

        assert settings.tenant_id == "tenant"
        assert settings.client_secret == "secret"

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.setenv("TENANT_ID", "tenant")
        monkeypatch.setenv("CLIENT_ID", "client")
        for name in ("CLIENT_SECRET", "CERTIFICATE_PATH", "CERTIFICATE_THUMBPRINT"):
            monkeypatch.delenv(name, raising=False)

        with pytest.raises(KeyError, match="CLIENT_SECRET"):
            audit.get_settings()

    def test_missing_tenant(self, monkeypatch):
        monkeypatch.delenv("TENANT_ID", raising=False)
        with pytest.raises(KeyError, match="TENANT_ID"):
            audit.get_settings()

    def test_defaults(self):
        args = audit.arg_parser().parse_args([])
        assert args.days_back == audit.DEFAULT_DAYS_BACK
        assert args.operations == audit.DELETION_OPERATIONS
        assert args.mailbox == []
        assert args.shared_only is False

    def test_repeated_filters(self):
        args = audit.arg_parser().parse_args([
            "--mailbox", "a@contoso.com", "--mailbox", "b@contoso.com",
            "--performed-by", "bob@contoso.com", "--subject", "invoice",
            "--operations", "HardDelete", "--start-date", "2025-03-01",
        ])
        assert args.mailbox == ["a@contoso.com", "b@contoso.com"]
        assert args.operations == ["HardDelete"]
        assert args.start_date == datetime(2025, 3, 1, tzinfo=UTC)

    @pytest.mark.parametrize("value", ["0", "181", "seven"])
    def test_days_back_range(self, value):
        with pytest.raises(argparse.ArgumentTypeError):
            audit.argument_range(value)

    def test_bad_date(self):
        with pytest.raises(argparse.ArgumentTypeError):
            audit.parse_date_arg("01-03-2025")

    def test_mailbox_file(self, tmp_path):
        path = tmp_path / "mailboxes.txt"
        path.write_text("# shared\nSupport@contoso.com\n\nhr@contoso.com  # HR team\n", encoding="utf-8")
        assert audit.read_mailbox_file(path) == {"support@contoso.com", "hr@contoso.com"}


class TestErrors:

    def test_graph_api_error_messages(self):
        assert "AuditLogsQuery-Exchange.Read.All" in str(audit.GraphAPIError(403))
        assert str(audit.GraphAPIError(418, "teapot")) == "Unexpected status code: 418. teapot"

    def test_audit_query_error_messages(self):
        assert str(audit.AuditQueryError("q1", "cancelled")) == "Audit log query q1 finished with status: cancelled"
