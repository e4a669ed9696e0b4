import json

import pytest

import shared_mailbox_deletion_audit as audit


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        if payload is None:
            self.content = b""
            self.text = text or ""
        else:
            self.text = text or json.dumps(payload)
            self.content = self.text.encode("utf-8")

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload


class FakeSession:
    """Отдаёт заранее заданные ответы по порядку и запоминает вызовы"""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class FakeCredential:
    def __init__(self, tokens=("token-1", "token-2", "token-3")):
        self.tokens = list(tokens)
        self.calls = 0

    def acquire_token(self):
        token = self.tokens[min(self.calls, len(self.tokens) - 1)]
        self.calls += 1
        return token


class FakeAuditLogAPI:
    """
    Аудит-лог в памяти: records_for(start, end) решает, какие записи попадают в окно.
    Страницы режутся по page_size.
    """

    def __init__(self, records_for, page_size=2):
        self.records_for = records_for
        self.page_size = page_size
        self.queries = {}
        self.created = []

    def create(self, start, end, operations, user_principal_names=None):
        query_id = f"q{len(self.created) + 1}"
        self.created.append((start, end, list(operations), user_principal_names))
        self.queries[query_id] = self.records_for(start, end)
        return query_id

    def wait(self, query_id):
        return None

    def iter_record_pages(self, query_id):
        records = self.queries[query_id]
        for i in range(0, len(records), self.page_size):
            yield records[i:i + self.page_size]


class FakeGraphClient:
    def __init__(self, api):
        self.audit_log = api


def make_record(record_id, created, mailbox="support@contoso.com", operation="SoftDelete",
                user="alice@contoso.com", subjects=("Invoice 42",), folder="\\Inbox", as_string=False):
    audit_data = {
        "Id": record_id,
        "CreationTime": created.rstrip("Z"),
        "Operation": operation,
        "ResultStatus": "Succeeded",
        "UserId": user,
        "MailboxOwnerUPN": mailbox,
        "LogonType": 2,
        "ClientIPAddress": "10.0.0.1",
        "ClientInfoString": "Client=OWA",
        "AffectedItems": [
            {"Id": f"{record_id}-{i}", "Subject": subject, "ParentFolder": {"Path": folder, "Name": "Inbox"}}
            for i, subject in enumerate(subjects)
        ],
    }
    return {
        "id": record_id,
        "createdDateTime": created,
        "auditLogRecordType": "exchangeItemGroup",
        "operation": operation,
        "userPrincipalName": user,
        "auditData": json.dumps(audit_data) if as_string else audit_data,
    }


@pytest.fixture
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(audit.time, "sleep", lambda seconds: sleeps.append(seconds))
    return sleeps
