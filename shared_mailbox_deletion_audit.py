'''
Script audits deleted emails (SoftDelete, HardDelete, MoveToDeletedItems) in Exchange Online
shared mailboxes using the Microsoft Graph audit log query API and writes the events to CSV.

Python 3.10 or newer is required, together with the msal, requests, urllib3 and pydantic libraries.

They can be installed with pip:

pip install msal requests urllib3 pydantic

Before running:
1. Register an application in Entra ID
2. Grant it the AuditLogsQuery-Exchange.Read.All and User.Read.All application permissions (admin consent)
3. Create a client secret or upload a certificate for the application

Settings are read from environment variables or from the values in get_settings():

Environment variables:
    TENANT_ID - Entra ID tenant ID
    CLIENT_ID - Application (client) ID
    CLIENT_SECRET - Client secret of the application
    CERTIFICATE_PATH - PEM file with the private key (instead of CLIENT_SECRET)
    CERTIFICATE_THUMBPRINT - Thumbprint of the uploaded certificate

Launch parameters:
    --days-back - number of days to search back, from 1 to 180 (default 7)
    --start-date / --end-date - explicit period in YYYY-MM-DD format (end date inclusive)
    --operations - deletion operations to search (default: all three)
    --mailbox - shared mailbox address to keep, may be repeated
    --mailbox-file - file with shared mailbox addresses, one per line
    --shared-only - keep only mailboxes whose accounts are disabled (shared mailboxes)
    --performed-by - user who deleted the email, may be repeated
    --subject - substring of the email subject
    --chunk-days - size of a single audit log query window in days (default 7)
    --output-dir - directory for the results
    --workers - threads used to normalize fetched pages

Example:

python shared_mailbox_deletion_audit.py --days-back 30 --mailbox support@contoso.com --subject invoice

How it works:
1. Splits the period into windows and creates an audit log query for each of them
2. Waits for every query to finish and reads all record pages
3. If a window returns too many records, it is split in half and searched again
4. Flattens the auditData payload of each record into CSV columns
5. Applies the mailbox, performed-by and subject filters

When finished, the directory shared_mailbox_deletions_YYYYMMDD_HHMMSS contains:
    deletion_events.csv - found deletion events
    summary.txt - number of events per mailbox and operation
    audit.log - detailed run log
'''

import argparse
import concurrent.futures
import csv
import json
import logging
import re
import sys
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from http import HTTPStatus
from os import environ
from pathlib import Path
from textwrap import dedent
from typing import Any, Iterable, Iterator, Optional, Union

import msal
import requests
from pydantic import BaseModel, ConfigDict, Field
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

SCRIPT_NAME = "shared_mailbox_deletions"
logger = logging.getLogger(SCRIPT_NAME)

GRAPH_API_URL = "https://graph.microsoft.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
AUTHORITY_URL = "https://login.microsoftonline.com/{tenant_id}"
AUDIT_LOG_QUERIES_PATH = "/beta/security/auditLog/queries"
USERS_PATH = "/v1.0/users"

TENANT_ID_ARG = "TENANT_ID"
CLIENT_ID_ARG = "CLIENT_ID"
CLIENT_SECRET_ARG = "CLIENT_SECRET"
CERTIFICATE_PATH_ARG = "CERTIFICATE_PATH"
CERTIFICATE_THUMBPRINT_ARG = "CERTIFICATE_THUMBPRINT"
EXIT_CODE = 1

DELETION_OPERATIONS = ["SoftDelete", "HardDelete", "MoveToDeletedItems"]
RECORD_TYPE_FILTERS = ["exchangeItem", "exchangeItemGroup"]

MAX_DAYS_BACK = 180
DEFAULT_DAYS_BACK = 7
DEFAULT_CHUNK_DAYS = 7
MIN_CHUNK_SIZE = timedelta(hours=1)
RESULT_SIZE_CAP = 50000
RECORDS_PAGE_SIZE = 1000
USERS_PAGE_SIZE = 999

MAX_RETRIES = 5
RETRY_DELAY = 2
REQUEST_TIMEOUT = 60
POLL_INTERVAL = 15
QUERY_TIMEOUT = 3600
MAX_WORKERS = 4

CSV_FILE_NAME = "deletion_events.csv"
SUMMARY_FILE_NAME = "summary.txt"
LOG_FILE_NAME = "audit.log"

CSV_FIELDNAMES = [
    "activity_time", "mailbox_address", "activity_type", "performed_by",
    "affected_count", "subjects", "folder", "dest_folder", "result_status",
    "logon_type", "client_ip", "client_info", "record_id", "raw_payload",
]

LOGON_TYPES = {0: "Owner", 1: "Admin", 2: "Delegate"}


def setup_logging(output_dir: Path, verbose: bool = False) -> logging.Logger:
    #Логирование в файл и консоль
    output_dir.mkdir(parents=True, exist_ok=True)
    log_file = output_dir / LOG_FILE_NAME

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    # Silence per-request chatter from the SDK
    logging.getLogger("msal").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return logger


def clean_value(value):
    if value is None:
        return ''

    if isinstance(value, str):
        value = re.sub(r'\s+', ' ', value)
        value = value.strip()

    return value


def parse_timestamp(value) -> Optional[datetime]:
    """Разбор ISO 8601 отметки времени, наивные значения считаются UTC"""
    if isinstance(value, datetime):
        parsed = value
    elif not value or not isinstance(value, str):
        return None
    else:
        text = value.strip().replace("Z", "+00:00")
        # Graph returns up to 7 fractional digits, fromisoformat wants 6
        text = re.sub(r"\.(\d+)", lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_graph_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def strip_odata_annotations(value):
    if isinstance(value, dict):
        return {
            k: strip_odata_annotations(v)
            for k, v in value.items()
            if not k.endswith("@odata.type")
        }
    if isinstance(value, list):
        return [strip_odata_annotations(item) for item in value]
    return value


def parse_audit_data(raw) -> dict:
    """
    Приводит вложенный auditData к словарю.
    Graph отдаёт объект, но выгрузки и старые API присылают JSON-строку.
    """
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return strip_odata_annotations(raw)
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError(f"auditData is not a JSON object: {type(payload).__name__}")
        return strip_odata_annotations(payload)
    raise ValueError(f"Unsupported auditData type: {type(raw).__name__}")


def _folder_path(folder) -> str:
    if isinstance(folder, dict):
        return clean_value(folder.get("Path") or folder.get("Name") or "")
    return ""


def _logon_type(value) -> str:
    if value is None or value == "":
        return ""
    try:
        return LOGON_TYPES.get(int(value), str(value))
    except (TypeError, ValueError):
        return str(value)


def normalize_record(record: dict) -> "DeletionEvent":
    """
    Превращает запись аудит-лога в плоское событие удаления.
    Повреждённый auditData не прерывает обработку: колонки записи остаются,
    сырой текст попадает в raw_payload.
    """
    audit_record = AuditLogRecord.model_validate(record)
    raw = audit_record.auditData
    malformed = False

    try:
        payload = parse_audit_data(raw)
    except ValueError as e:
        logger.warning(f"Malformed auditData in record {audit_record.id or '<no id>'}: {e}")
        payload = {}
        malformed = True

    if malformed:
        raw_payload = raw if isinstance(raw, str) else repr(raw)
    elif payload:
        raw_payload = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    else:
        raw_payload = ""

    affected_items = payload.get("AffectedItems")
    if not isinstance(affected_items, list):
        affected_items = []
    single_item = payload.get("Item")
    if not affected_items and isinstance(single_item, dict):
        affected_items = [single_item]

    subjects = []
    for item in affected_items:
        if isinstance(item, dict) and item.get("Subject"):
            subjects.append(clean_value(item["Subject"]))

    folder = ""
    for item in affected_items:
        if isinstance(item, dict):
            folder = _folder_path(item.get("ParentFolder"))
            if folder:
                break
    if not folder:
        folder = _folder_path(payload.get("Folder"))

    return DeletionEvent(
        record_id=audit_record.id or str(payload.get("Id") or ""),
        activity_time=parse_timestamp(audit_record.createdDateTime) or parse_timestamp(payload.get("CreationTime")),
        mailbox_address=clean_value(payload.get("MailboxOwnerUPN") or audit_record.objectId or ""),
        activity_type=clean_value(audit_record.operation or payload.get("Operation") or ""),
        performed_by=clean_value(payload.get("UserId") or audit_record.userPrincipalName or ""),
        affected_count=len(affected_items),
        subjects=subjects,
        folder=folder,
        dest_folder=_folder_path(payload.get("DestFolder")),
        result_status=clean_value(payload.get("ResultStatus") or ""),
        logon_type=_logon_type(payload.get("LogonType")),
        client_ip=clean_value(payload.get("ClientIPAddress") or payload.get("ClientIP") or audit_record.clientIp or ""),
        client_info=clean_value(payload.get("ClientInfoString") or ""),
        raw_payload=raw_payload,
        malformed_payload=malformed,
    )


def normalize_page(page: list[dict]) -> list["DeletionEvent"]:
    return [normalize_record(record) for record in page]


def normalize_pages(pages: list[list[dict]], max_workers: int = MAX_WORKERS) -> list["DeletionEvent"]:
    #Параллельная нормализация уже полученных страниц, порядок страниц сохраняется
    if not pages:
        return []

    events = []
    workers = max(1, min(max_workers, len(pages)))
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="Normalizer") as executor:
        for page_events in executor.map(normalize_page, pages):
            events.extend(page_events)
    return events


def dedupe_events(events: Iterable["DeletionEvent"]) -> tuple[list["DeletionEvent"], int]:
    """Убирает повторы записей на границах окон, первое вхождение остаётся"""
    seen = set()
    unique = []
    duplicates = 0
    for event in events:
        if event.record_id:
            if event.record_id in seen:
                duplicates += 1
                continue
            seen.add(event.record_id)
        unique.append(event)
    return unique, duplicates


@dataclass
class EventFilter:
    mailboxes: set[str] = field(default_factory=set)
    performed_by: set[str] = field(default_factory=set)
    subject_contains: Optional[str] = None

    def __post_init__(self):
        self.mailboxes = {m.strip().lower() for m in self.mailboxes if m and m.strip()}
        self.performed_by = {u.strip().lower() for u in self.performed_by if u and u.strip()}
        if self.subject_contains is not None:
            self.subject_contains = self.subject_contains.strip().lower() or None

    @property
    def is_empty(self) -> bool:
        return not self.mailboxes and not self.performed_by and not self.subject_contains

    def matches(self, event: "DeletionEvent") -> bool:
        if self.mailboxes and event.mailbox_address.lower() not in self.mailboxes:
            return False
        if self.performed_by and event.performed_by.lower() not in self.performed_by:
            return False
        if self.subject_contains:
            if not any(self.subject_contains in subject.lower() for subject in event.subjects):
                return False
        return True


def apply_filters(events: Iterable["DeletionEvent"], event_filter: EventFilter) -> list["DeletionEvent"]:
    if event_filter.is_empty:
        return list(events)
    return [event for event in events if event_filter.matches(event)]


def sort_events(events: Iterable["DeletionEvent"]) -> list["DeletionEvent"]:
    return sorted(
        events,
        key=lambda e: (e.activity_time is None, e.activity_time or datetime.min.replace(tzinfo=timezone.utc)),
    )


def write_csv(events: Iterable["DeletionEvent"], filepath: Path) -> int:
    #Запись событий в CSV, заголовок пишется даже без событий
    filepath.parent.mkdir(parents=True, exist_ok=True)
    written = 0
    with open(filepath, "w", newline="", encoding="utf-8-sig") as file:
        writer = csv.DictWriter(file, fieldnames=CSV_FIELDNAMES, extrasaction="ignore")
        writer.writeheader()
        for event in events:
            writer.writerow(event.to_row())
            written += 1
    return written


def count_events_by_mailbox(events: Iterable["DeletionEvent"]) -> dict:
    mailboxes = {}
    for event in events:
        key = event.mailbox_address.lower() or "<unknown>"
        if key not in mailboxes:
            mailboxes[key] = {
                "mailbox": key,
                "count": 0,
                "items": 0,
                "operations": Counter(),
            }
        mailboxes[key]["count"] += 1
        mailboxes[key]["items"] += event.affected_count
        mailboxes[key]["operations"][event.activity_type] += 1
    return mailboxes


def write_summary(events: Iterable["DeletionEvent"], filepath: Path) -> list[dict]:
    """Отчёт по ящикам: количество событий, затронутых писем и разбивка по операциям"""
    mailboxes = count_events_by_mailbox(events)
    rows = sorted(mailboxes.values(), key=lambda x: (-x["count"], x["mailbox"]))

    filepath.parent.mkdir(parents=True, exist_ok=True)
    with open(filepath, "w", encoding="utf-8") as f:
        f.write("Mailbox\tEvents\tItems\t" + "\t".join(DELETION_OPERATIONS) + "\n")
        f.write("-" * 80 + "\n")
        for row in rows:
            per_operation = "\t".join(str(row["operations"].get(op, 0)) for op in DELETION_OPERATIONS)
            f.write(f"{row['mailbox']}\t{row['count']}\t{row['items']}\t{per_operation}\n")

    return rows


def split_date_range(start: datetime, end: datetime, chunk: timedelta) -> list[tuple[datetime, datetime]]:
    """Разбивает [start, end) на смежные окна длиной chunk, последнее может быть короче"""
    if chunk <= timedelta(0):
        raise ValueError("Chunk size must be positive")
    if start >= end:
        raise ValueError(f"Start {start.isoformat()} must be earlier than end {end.isoformat()}")

    windows = []
    window_start = start
    while window_start < end:
        window_end = min(window_start + chunk, end)
        windows.append((window_start, window_end))
        window_start = window_end
    return windows


def resolve_date_range(
    days_back: int = DEFAULT_DAYS_BACK,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> tuple[datetime, datetime]:
    now = now or datetime.now(timezone.utc)
    oldest_allowed = now - timedelta(days=MAX_DAYS_BACK)

    end = end_date or now
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    if end > now:
        end = now

    if start_date is not None:
        start = start_date if start_date.tzinfo else start_date.replace(tzinfo=timezone.utc)
    else:
        start = end - timedelta(days=days_back)

    if start < oldest_allowed:
        logger.warning(
            f"Start {start.strftime('%Y-%m-%d %H:%M:%S')} is older than {MAX_DAYS_BACK} days, "
            f"audit log retention limits the search to {oldest_allowed.strftime('%Y-%m-%d %H:%M:%S')}"
        )
        start = oldest_allowed

    if start >= end:
        raise ValueError(
            f"Start {start.strftime('%Y-%m-%d %H:%M:%S')} must be earlier than end {end.strftime('%Y-%m-%d %H:%M:%S')}"
        )
    return start, end


@dataclass
class RunStats:
    chunks: int = 0
    queries: int = 0
    truncated_chunks: int = 0
    pages: int = 0
    records_fetched: int = 0
    malformed_payloads: int = 0
    duplicates: int = 0
    events_matched: int = 0
    events_written: int = 0


class AuditLogPaginator:
    """
    Обходит аудит-лог окнами фиксированного размера.
    Окно, упёршееся в result_cap, делится пополам и запрашивается заново,
    пока не станет меньше min_chunk_size. Ни одна прочитанная страница не теряется.
    """

    def __init__(
        self,
        api: "AuditLogQueryAPI",
        chunk_size: timedelta = timedelta(days=DEFAULT_CHUNK_DAYS),
        result_cap: int = RESULT_SIZE_CAP,
        min_chunk_size: timedelta = MIN_CHUNK_SIZE,
        stats: Optional[RunStats] = None,
    ):
        self._api = api
        self.chunk_size = chunk_size
        self.result_cap = result_cap
        self.min_chunk_size = min_chunk_size
        self.stats = stats or RunStats()

    def fetch(
        self,
        start: datetime,
        end: datetime,
        operations: list[str],
        user_principal_names: Optional[list[str]] = None,
    ) -> list[list[dict]]:
        windows = split_date_range(start, end, self.chunk_size)
        logger.info(f"Period split into {len(windows)} window(s) of up to {self.chunk_size}")

        pages = []
        for index, (window_start, window_end) in enumerate(windows, 1):
            logger.info(
                f"Window {index}/{len(windows)}: "
                f"{window_start.strftime('%Y-%m-%d %H:%M')} - {window_end.strftime('%Y-%m-%d %H:%M')}"
            )
            pages.extend(self._fetch_chunk(window_start, window_end, operations, user_principal_names))
        return pages

    def _fetch_chunk(self, start, end, operations, user_principal_names) -> list[list[dict]]:
        query_id = self._api.create(start, end, operations, user_principal_names)
        self.stats.queries += 1
        self._api.wait(query_id)

        pages = []
        count = 0
        capped = False
        record_pages = iter(self._api.iter_record_pages(query_id))
        for page in record_pages:
            pages.append(page)
            count += len(page)
            logger.debug(f"Query {query_id}: page {len(pages)}, {len(page)} records, {count} total")
            if count >= self.result_cap:
                # переполнение, только если за лимитом есть ещё записи
                next_page = next(record_pages, None)
                if next_page:
                    capped = True
                    pages.append(next_page)
                    count += len(next_page)
                break

        if capped and (end - start) > self.min_chunk_size:
            middle = start + (end - start) / 2
            logger.info(
                f"Window {start.strftime('%Y-%m-%d %H:%M')} - {end.strftime('%Y-%m-%d %H:%M')} "
                f"reached the cap of {self.result_cap} records, splitting in half"
            )
            return (
                self._fetch_chunk(start, middle, operations, user_principal_names)
                + self._fetch_chunk(middle, end, operations, user_principal_names)
            )

        if capped:
            self.stats.truncated_chunks += 1
            logger.warning(
                f"⚠️  Window {start.strftime('%Y-%m-%d %H:%M')} - {end.strftime('%Y-%m-%d %H:%M')} "
                f"still has more than {self.result_cap} records at the minimum window size, "
                f"reading stopped after {count} records"
            )

        self.stats.chunks += 1
        self.stats.pages += len(pages)
        self.stats.records_fetched += count
        logger.info(f"   Received {count} records in {len(pages)} page(s)")
        return pages


def search_audit_log(
    client: "GraphClient",
    start: datetime,
    end: datetime,
    operations: list[str],
    event_filter: Optional[EventFilter] = None,
    chunk_size: timedelta = timedelta(days=DEFAULT_CHUNK_DAYS),
    stats: Optional[RunStats] = None,
) -> list[dict]:
    """Все записи аудит-лога за период одним списком"""
    user_principal_names = sorted(event_filter.performed_by) if event_filter and event_filter.performed_by else None
    paginator = AuditLogPaginator(client.audit_log, chunk_size=chunk_size, stats=stats)
    pages = paginator.fetch(start, end, operations, user_principal_names)
    return [record for page in pages for record in page]


def run_audit(
    client: "GraphClient",
    start: datetime,
    end: datetime,
    operations: list[str],
    event_filter: EventFilter,
    output_dir: Path,
    chunk_size: timedelta = timedelta(days=DEFAULT_CHUNK_DAYS),
    max_workers: int = MAX_WORKERS,
    result_cap: int = RESULT_SIZE_CAP,
) -> RunStats:
    #Получение, нормализация, фильтрация и запись событий. Возвращает статистику.
    stats = RunStats()
    csv_path = output_dir / CSV_FILE_NAME
    summary_path = output_dir / SUMMARY_FILE_NAME

    user_principal_names = sorted(event_filter.performed_by) or None
    paginator = AuditLogPaginator(
        client.audit_log,
        chunk_size=chunk_size,
        result_cap=result_cap,
        stats=stats,
    )
    pages = paginator.fetch(start, end, operations, user_principal_names)

    events = normalize_pages(pages, max_workers=max_workers)
    stats.malformed_payloads = sum(1 for e in events if e.malformed_payload)

    events, stats.duplicates = dedupe_events(events)
    if stats.duplicates:
        logger.info(f"Removed {stats.duplicates} duplicate record(s) from window boundaries")

    events = sort_events(apply_filters(events, event_filter))
    stats.events_matched = len(events)

    stats.events_written = write_csv(events, csv_path)
    logger.info(f"CSV: {csv_path} ({stats.events_written} rows)")

    if not events:
        logger.warning("⚠️  No deletion events matched the criteria, CSV contains only the header")
        return stats

    summary_rows = write_summary(events, summary_path)
    logger.info(f"Summary: {summary_path} ({len(summary_rows)} mailboxes)")

    logger.info("Events per mailbox (top 10):")
    for row in summary_rows[:10]:
        logger.info(f"  {row['mailbox']}: {row['count']} event(s), {row['items']} item(s)")

    return stats


def read_mailbox_file(filepath: Path) -> set[str]:
    mailboxes = set()
    with open(filepath, "r", encoding="utf-8-sig") as f:
        for line in f:
            line = line.split("#", 1)[0].strip()
            if line:
                mailboxes.add(line.lower())
    return mailboxes


def parse_date_arg(value: str) -> datetime:
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not a date in YYYY-MM-DD format")


def argument_range(value: str) -> int:
    try:
        if int(value) < 1 or int(value) > MAX_DAYS_BACK:
            raise argparse.ArgumentTypeError(
                f"{value} is invalid. Valid values in range: [1, {MAX_DAYS_BACK}]"
            )
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not int value")
    return int(value)


def positive_int(value: str) -> int:
    try:
        if int(value) < 1:
            raise argparse.ArgumentTypeError(f"{value} is invalid. Value must be positive")
    except ValueError:
        raise argparse.ArgumentTypeError(f"'{value}' is not int value")
    return int(value)


def arg_parser():
    parser = argparse.ArgumentParser(
        description=dedent(
            f"""
            Script for auditing deleted emails in Exchange Online
            shared mailboxes for the last N days.

            Environment options:
            {TENANT_ID_ARG} - Entra ID tenant ID,
            {CLIENT_ID_ARG} - Application (client) ID,
            {CLIENT_SECRET_ARG} - Application secret,
            {CERTIFICATE_PATH_ARG} - PEM private key (instead of the secret),
            {CERTIFICATE_THUMBPRINT_ARG} - Certificate thumbprint

            For example:
            {TENANT_ID_ARG}="0e439a1f-a497-462b-9e6b-4e582e203607",
            {CLIENT_ID_ARG}="73efa35d-6188-42d4-b258-838a977eb149",
            {CLIENT_SECRET_ARG}="Abc8Q~exampleexampleexample",
            """
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--days-back",
        help=f"Number of days to search back [1, {MAX_DAYS_BACK}]",
        type=argument_range,
        default=DEFAULT_DAYS_BACK,
    )
    parser.add_argument(
        "--start-date", help="Start of the period, YYYY-MM-DD (overrides --days-back)", type=parse_date_arg
    )
    parser.add_argument(
        "--end-date", help="End of the period, YYYY-MM-DD, inclusive (default: now)", type=parse_date_arg
    )
    parser.add_argument(
        "--operations",
        help="Deletion operations to search",
        nargs="+",
        choices=DELETION_OPERATIONS,
        default=list(DELETION_OPERATIONS),
    )
    parser.add_argument(
        "--mailbox", help="Shared mailbox address, may be repeated", action="append", default=[]
    )
    parser.add_argument("--mailbox-file", help="File with shared mailbox addresses, one per line", type=Path)
    parser.add_argument(
        "--shared-only",
        help="Keep only mailboxes whose accounts are disabled (shared mailboxes)",
        action="store_true",
    )
    parser.add_argument(
        "--performed-by", help="User who deleted the emails, may be repeated", action="append", default=[]
    )
    parser.add_argument("--subject", help="Substring of the email subject")
    parser.add_argument(
        "--chunk-days",
        help=f"Days per audit log query [1, {MAX_DAYS_BACK}]",
        type=argument_range,
        default=DEFAULT_CHUNK_DAYS,
    )
    parser.add_argument("--output-dir", help="Directory for results", type=Path)
    parser.add_argument(
        "--workers", help="Threads used to normalize pages", type=positive_int, default=MAX_WORKERS
    )
    parser.add_argument("-v", "--verbose", help="Debug logging", action="store_true")

    return parser


def get_settings():
    # Вставьте свои данные
    HARDCODED_TENANT_ID = ""
    HARDCODED_CLIENT_ID = ""
    HARDCODED_CLIENT_SECRET = ""
    HARDCODED_CERTIFICATE_PATH = ""
    HARDCODED_CERTIFICATE_THUMBPRINT = ""

    settings = SettingParams(
        tenant_id=environ.get(TENANT_ID_ARG, HARDCODED_TENANT_ID),
        client_id=environ.get(CLIENT_ID_ARG, HARDCODED_CLIENT_ID),
        client_secret=environ.get(CLIENT_SECRET_ARG, HARDCODED_CLIENT_SECRET),
        certificate_path=environ.get(CERTIFICATE_PATH_ARG, HARDCODED_CERTIFICATE_PATH),
        certificate_thumbprint=environ.get(CERTIFICATE_THUMBPRINT_ARG, HARDCODED_CERTIFICATE_THUMBPRINT),
    )

    if not settings.tenant_id:
        raise KeyError(TENANT_ID_ARG)
    if not settings.client_id:
        raise KeyError(CLIENT_ID_ARG)
    if not settings.client_secret and not (settings.certificate_path and settings.certificate_thumbprint):
        raise KeyError(CLIENT_SECRET_ARG)
    return settings


def create_http_session() -> requests.Session:
    session = requests.Session()
    retries = Retry(total=3, backoff_factor=1, status_forcelist=[500, 502, 503, 504], raise_on_status=False)
    adapter = HTTPAdapter(pool_connections=10, pool_maxsize=10, max_retries=retries)
    session.mount('https://', adapter)
    return session


def connect(settings: "SettingParams", session: Optional[requests.Session] = None) -> "GraphClient":
    credential = GraphCredential.from_settings(settings)
    client = GraphClient(credential=credential, session=session or create_http_session())
    client.authenticate()
    logger.info(f"Connected to tenant {settings.tenant_id} as application {settings.client_id}")
    return client


def main():
    parsr = arg_parser()
    args = parsr.parse_args()

    try:
        settings = get_settings()
    except KeyError as key:
        print(f"ERROR: Required environment vars not provided: {key}", file=sys.stderr)
        parsr.print_usage()
        sys.exit(EXIT_CODE)

    end_date = args.end_date + timedelta(days=1) - timedelta(seconds=1) if args.end_date else None
    try:
        start, end = resolve_date_range(
            days_back=args.days_back,
            start_date=args.start_date,
            end_date=end_date,
        )
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(EXIT_CODE)

    output_dir = args.output_dir or Path(f"{SCRIPT_NAME}_{datetime.now().strftime('%Y%m%d_%H%M%S')}")
    setup_logging(output_dir, verbose=args.verbose)

    mailboxes = {m.lower() for m in args.mailbox}
    if args.mailbox_file:
        try:
            mailboxes |= read_mailbox_file(args.mailbox_file)
        except OSError as e:
            logger.error(f"ERROR: Cannot read mailbox file {args.mailbox_file}: {e}")
            sys.exit(EXIT_CODE)

    logger.info("=" * 60)
    logger.info("Audit of deleted emails in shared mailboxes")
    logger.info(f"Tenant: {settings.tenant_id}")
    logger.info(f"Period (UTC): {start.strftime('%Y-%m-%d %H:%M:%S')} - {end.strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Operations: {', '.join(args.operations)}")
    logger.info(f"Mailbox filter: {', '.join(sorted(mailboxes)) or 'all'}")
    logger.info(f"Performed-by filter: {', '.join(args.performed_by) or 'all'}")
    logger.info(f"Subject filter: {args.subject or 'none'}")
    logger.info(f"Results: {output_dir.resolve()}")
    logger.info("=" * 60)

    try:
        client = connect(settings)

        if args.shared_only:
            shared_api = client.shared_mailboxes
            shared = set(shared_api.list_all())
            logger.info(f"Shared mailboxes found: {len(shared)}")
            if mailboxes:
                missing = mailboxes - shared
                if missing:
                    logger.warning(f"Not shared mailboxes, skipped: {', '.join(sorted(missing))}")
                mailboxes &= shared
            else:
                mailboxes = shared
            if not mailboxes:
                csv_path = output_dir / CSV_FILE_NAME
                write_csv([], csv_path)
                logger.warning(f"⚠️  No shared mailboxes to audit, CSV contains only the header: {csv_path}")
                if shared_api.access_denied:
                    logger.error("ERROR: Shared mailboxes cannot be resolved without User.Read.All permission")
                    sys.exit(EXIT_CODE)
                return

        event_filter = EventFilter(
            mailboxes=mailboxes,
            performed_by=set(args.performed_by),
            subject_contains=args.subject,
        )

        stats = run_audit(
            client=client,
            start=start,
            end=end,
            operations=args.operations,
            event_filter=event_filter,
            output_dir=output_dir,
            chunk_size=timedelta(days=args.chunk_days),
            max_workers=args.workers,
        )
    except KeyboardInterrupt:
        logger.warning("Interrupted by user (Ctrl+C)")
        sys.exit(EXIT_CODE)

    logger.info("=" * 60)
    logger.info(f"Windows processed: {stats.chunks} ({stats.queries} queries, {stats.truncated_chunks} truncated)")
    logger.info(f"Pages read: {stats.pages}")
    logger.info(f"Records received: {stats.records_fetched}")
    logger.info(f"Malformed payloads: {stats.malformed_payloads}")
    logger.info(f"Duplicates removed: {stats.duplicates}")
    logger.info(f"Events written to CSV: {stats.events_written}")
    logger.info(f"Results in: {output_dir.resolve()}")
    logger.info("=" * 60)


class GraphCredential:
    def __init__(self, tenant_id: str, client_id: str, client_credential: Union[str, dict], app=None):
        self.tenant_id = tenant_id
        self.client_id = client_id
        self._app = app or msal.ConfidentialClientApplication(
            client_id=client_id,
            client_credential=client_credential,
            authority=AUTHORITY_URL.format(tenant_id=tenant_id),
        )

    @classmethod
    def from_settings(cls, settings: "SettingParams") -> "GraphCredential":
        if settings.certificate_path and settings.certificate_thumbprint:
            private_key = Path(settings.certificate_path).read_text(encoding="utf-8")
            client_credential = {
                "private_key": private_key,
                "thumbprint": settings.certificate_thumbprint,
            }
        else:
            client_credential = settings.client_secret
        return cls(settings.tenant_id, settings.client_id, client_credential)

    def acquire_token(self) -> str:
        # MSAL serves the token from its in-memory cache until it expires
        result = self._app.acquire_token_for_client(scopes=[GRAPH_SCOPE])
        if "access_token" not in result:
            raise GraphAuthError(result.get("error"), result.get("error_description"))
        return result["access_token"]


class GraphClient:
    def __init__(self, credential: GraphCredential, session: requests.Session, max_retries: int = MAX_RETRIES):
        self._credential = credential
        self._session = session
        self._max_retries = max_retries
        self._token = None

    def authenticate(self) -> None:
        self._token = self._credential.acquire_token()

    @property
    def audit_log(self):
        return AuditLogQueryAPI(client=self)

    @property
    def shared_mailboxes(self):
        return SharedMailboxAPI(client=self)

    def _retry_delay(self, response: Optional[requests.Response], attempt: int) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return max(0.0, float(retry_after))
                except ValueError:
                    pass
        return RETRY_DELAY * (2 ** (attempt - 1))

    def request(self, method: str, url: str, params: Optional[dict] = None, json_data: Optional[dict] = None) -> dict:
        if not url.startswith("http"):
            url = f"{GRAPH_API_URL}{url}"
        if self._token is None:
            self.authenticate()

        token_refreshed = False
        last_status = None
        for attempt in range(1, self._max_retries + 1):
            headers = {
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
            }
            try:
                response = self._session.request(
                    method, url, headers=headers, params=params, json=json_data, timeout=REQUEST_TIMEOUT
                )
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                if attempt == self._max_retries:
                    logger.error(f"Connection error after {self._max_retries} attempts: {url}")
                    raise GraphAPIError(None, str(e)) from e
                delay = self._retry_delay(None, attempt)
                logger.warning(f"Connection error, attempt {attempt}/{self._max_retries}. Waiting {delay}s...")
                time.sleep(delay)
                continue

            last_status = response.status_code

            if response.status_code == HTTPStatus.UNAUTHORIZED and not token_refreshed:
                logger.info("Access token rejected, acquiring a new one")
                self.authenticate()
                token_refreshed = True
                continue

            if response.status_code == HTTPStatus.TOO_MANY_REQUESTS or response.status_code >= 500:
                if attempt == self._max_retries:
                    break
                delay = self._retry_delay(response, attempt)
                logger.warning(
                    f"HTTP {response.status_code}, attempt {attempt}/{self._max_retries}. Waiting {delay}s..."
                )
                time.sleep(delay)
                continue

            if response.status_code >= 400:
                message = _error_message(response)
                logger.error(f"Graph API error {response.status_code}: {url}: {message}")
                raise GraphAPIError(response.status_code, message)

            return response.json() if response.content else {}

        logger.error(f"Graph API request failed after {self._max_retries} attempts: {url}")
        raise GraphAPIError(last_status, "retry budget exhausted")


def _error_message(response: requests.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text
    if isinstance(data, dict):
        return data.get("error", {}).get("message", response.text)
    return response.text


class AuditLogQueryAPI:
    def __init__(self, client: GraphClient):
        self._client = client

    def create(
        self,
        start: datetime,
        end: datetime,
        operations: list[str],
        user_principal_names: Optional[list[str]] = None,
    ) -> str:
        body = {
            "displayName": f"{SCRIPT_NAME}_{start.strftime('%Y%m%d%H%M')}_{end.strftime('%Y%m%d%H%M')}",
            "filterStartDateTime": format_graph_datetime(start),
            "filterEndDateTime": format_graph_datetime(end),
            "operationFilters": list(operations),
            "recordTypeFilters": list(RECORD_TYPE_FILTERS),
        }
        if user_principal_names:
            body["userPrincipalNameFilters"] = list(user_principal_names)

        data = self._client.request("POST", AUDIT_LOG_QUERIES_PATH, json_data=body)
        query = AuditLogQuery.model_validate(data)
        logger.debug(f"Audit log query {query.id} created: {body['displayName']}")
        return query.id

    def status(self, query_id: str) -> str:
        data = self._client.request("GET", f"{AUDIT_LOG_QUERIES_PATH}/{query_id}")
        return AuditLogQuery.model_validate(data).status

    def wait(self, query_id: str, poll_interval: float = POLL_INTERVAL, timeout: float = QUERY_TIMEOUT) -> None:
        deadline = time.monotonic() + timeout
        while True:
            status = self.status(query_id)
            if status == "succeeded":
                return
            if status in ("failed", "cancelled"):
                raise AuditQueryError(query_id, status)
            if time.monotonic() >= deadline:
                raise AuditQueryError(query_id, "timeout")
            logger.debug(f"Query {query_id} is {status}, checking again in {poll_interval}s")
            time.sleep(poll_interval)

    def iter_record_pages(self, query_id: str) -> Iterator[list[dict]]:
        url = f"{AUDIT_LOG_QUERIES_PATH}/{query_id}/records"
        params = {"$top": RECORDS_PAGE_SIZE}
        while url:
            data = self._client.request("GET", url, params=params)
            yield data.get("value", [])
            url = data.get("@odata.nextLink")
            # nextLink already carries the query string
            params = None


class SharedMailboxAPI:
    def __init__(self, client: GraphClient):
        self._client = client
        self.access_denied = False

    def list_all(self) -> list[str]:
        """
        Отключённые учётные записи с почтой: так выглядят общие ящики в Graph.
        Возвращает и основной адрес, и UPN, в аудите ящик может быть записан любым из них.
        """
        url = USERS_PATH
        params = {
            "$filter": "accountEnabled eq false",
            "$select": "mail,userPrincipalName",
            "$top": USERS_PAGE_SIZE,
        }
        all_shared_boxes = []

        try:
            while url:
                data = self._client.request("GET", url, params=params)
                for user in data.get("value", []):
                    if not user.get("mail"):
                        continue
                    for address in (user["mail"], user.get("userPrincipalName")):
                        if address and address.lower() not in all_shared_boxes:
                            all_shared_boxes.append(address.lower())
                url = data.get("@odata.nextLink")
                params = None
        except GraphAPIError as e:
            if e.msg == HTTPStatus.FORBIDDEN:
                logger.warning("Access denied to users API, User.Read.All permission is required")
                self.access_denied = True
                return []
            raise

        return all_shared_boxes


@dataclass
class SettingParams:
    tenant_id: str
    client_id: str
    client_secret: str = ""
    certificate_path: str = ""
    certificate_thumbprint: str = ""


class AuditLogQuery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str = "notStarted"


class AuditLogRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: str = ""
    createdDateTime: Optional[str] = None
    operation: Optional[str] = None
    userPrincipalName: Optional[str] = None
    objectId: Optional[str] = None
    clientIp: Optional[str] = None
    auditData: Any = None


class DeletionEvent(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    record_id: str = ""
    activity_time: Optional[datetime] = None
    mailbox_address: str = ""
    activity_type: str = ""
    performed_by: str = ""
    affected_count: int = 0
    subjects: list[str] = Field(default_factory=list)
    folder: str = ""
    dest_folder: str = ""
    result_status: str = ""
    logon_type: str = ""
    client_ip: str = ""
    client_info: str = ""
    raw_payload: str = ""
    malformed_payload: bool = False

    def to_row(self) -> dict:
        return {
            "activity_time": self.activity_time.strftime("%Y-%m-%d %H:%M:%S") if self.activity_time else "",
            "mailbox_address": self.mailbox_address,
            "activity_type": self.activity_type,
            "performed_by": self.performed_by,
            "affected_count": self.affected_count,
            "subjects": "; ".join(self.subjects),
            "folder": self.folder,
            "dest_folder": self.dest_folder,
            "result_status": self.result_status,
            "logon_type": self.logon_type,
            "client_ip": self.client_ip,
            "client_info": self.client_info,
            "record_id": self.record_id,
            "raw_payload": self.raw_payload,
        }


class ToolError(Exception):
    def __init__(self, *args):
        if args:
            self.msg = args[0]
        else:
            self.msg = None
        self.detail = args[1] if len(args) > 1 else None

    def __str__(self):
        return str(self.msg)


class GraphAPIError(ToolError):
    def __str__(self):
        match self.msg:
            case 403:
                return "No access rights to the resource. Check AuditLogsQuery-Exchange.Read.All permission."
            case 401:
                return "Invalid or expired access token."
            case 429:
                return "Requests are throttled and the retry budget is exhausted."
            case None:
                return f"Connection to Graph API failed: {self.detail}"
            case _:
                return f"Unexpected status code: {self.msg}. {self.detail or ''}".strip()


class GraphAuthError(ToolError):
    def __str__(self):
        match self.msg:
            case "invalid_client":
                return "Invalid application client id, secret or certificate"
            case "unauthorized_client":
                return "Application is not found in the tenant or is disabled"
            case _:
                return f"Authentication failed: {self.msg}. {self.detail or ''}".strip()


class AuditQueryError(ToolError):
    def __str__(self):
        match self.detail:
            case "timeout":
                return f"Audit log query {self.msg} did not finish in {QUERY_TIMEOUT} seconds"
            case _:
                return f"Audit log query {self.msg} finished with status: {self.detail}"


if __name__ == "__main__":
    try:
        main()
    except ToolError as err:
        logger.error(err)
        sys.exit(EXIT_CODE)
    except Exception as exp:
        logger.exception(exp)
        sys.exit(EXIT_CODE)
