"""
Shared fixtures: an in-memory stand-in for the chat backend, a throwaway
device store and a retry setup that never sleeps.
"""

import itertools
import threading

import pytest

from config.app_config import AppConfig, BackendConfig
from infrastructure.external.chat_backend_client import BackendUnavailableError
from infrastructure.resilience.retry_service import RetryPolicy, RetryService
from infrastructure.storage.local_store import LocalStore

PAGE_ID = 7

_FORM_FIELDS = {
    "guestId": "GuestId",
    "pageId": "PageId",
    "guestName": "GuestName",
    "guestPhone": "GuestPhone",
    "guestEmail": "GuestEmail",
    "guestCompany": "GuestCompany",
    "itemList": "ItemList",
    "IsAIActive": "IsAIActive",
}


class FakeChatBackend:
    """
    Implements the CustomerChatClient surface over in-memory records.

    Records are keyed by guest id, the backend's natural key. Failures can be
    queued per method with fail_next().
    """

    def __init__(self):
        self.records = {}
        self.calls = []
        self.ai_replies = []
        self.ai_requests = []
        self.feedback = []
        self.catalog = {}
        self.catalog_items = {}
        self.page = None
        self.quick_replies = []
        self._failures = {}
        self._ids = itertools.count(100)
        self._lock = threading.Lock()

    # -- test helpers ----------------------------------------------------

    def fail_next(self, method, error=None, times=1):
        self._failures.setdefault(method, []).extend([error or BackendUnavailableError("backend down", 503)] * times)

    def _maybe_fail(self, method):
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def seed_record(self, guest_id, item_list, **fields):
        row = {"Id": next(self._ids), "PageId": PAGE_ID, "GuestId": guest_id, "ItemList": item_list}
        row.update(fields)
        self.records[guest_id] = row
        return row

    def methods_called(self):
        return [name for name, _ in self.calls]

    # -- conversation records --------------------------------------------

    def list_threads(self, page_id):
        self.calls.append(("list_threads", page_id))
        self._maybe_fail("list_threads")
        return [dict(row) for row in self.records.values()]

    def get_record(self, page_id, guest_id):
        self.calls.append(("get_record", guest_id))
        self._maybe_fail("get_record")
        row = self.records.get(guest_id)
        return dict(row) if row else None

    def create_record(self, form):
        self.calls.append(("create_record", dict(form)))
        self._maybe_fail("create_record")
        with self._lock:
            existing = self.records.get(form["guestId"])
            if existing:
                return existing["Id"]
            row = {"Id": next(self._ids)}
            row.update({column: form[key] for key, column in _FORM_FIELDS.items() if key in form})
            self.records[form["guestId"]] = row
            return row["Id"]

    def update_record(self, form):
        self.calls.append(("update_record", dict(form)))
        self._maybe_fail("update_record")
        with self._lock:
            row = next((r for r in self.records.values() if r["Id"] == form["id"]), None)
            if row is None:
                return {"success": False}
            row.update({column: form[key] for key, column in _FORM_FIELDS.items() if key in form})
            return {"success": True}

    def delete_record(self, record_id):
        self.calls.append(("delete_record", record_id))
        self._maybe_fail("delete_record")
        with self._lock:
            self.records = {g: r for g, r in self.records.items() if r["Id"] != record_id}
        return {"success": True}

    # -- AI --------------------------------------------------------------

    def ask_ai(self, payload):
        self.calls.append(("ask_ai", payload))
        self.ai_requests.append(payload)
        self._maybe_fail("ask_ai")
        if self.ai_replies:
            return self.ai_replies.pop(0)
        return {"success": True, "text": "Happy to help!", "provider": "fake"}

    def send_ai_feedback(self, payload):
        self.calls.append(("send_ai_feedback", payload))
        self._maybe_fail("send_ai_feedback")
        self.feedback.append(payload)
        return {"success": True}

    # -- catalog ---------------------------------------------------------

    def get_page(self, page_id):
        self.calls.append(("get_page", page_id))
        self._maybe_fail("get_page")
        return self.page

    def get_catalog(self, source, page_id):
        self.calls.append(("get_catalog", source))
        self._maybe_fail("get_catalog")
        return list(self.catalog.get(source, []))

    def get_catalog_item(self, source, item_id):
        self.calls.append(("get_catalog_item", (source, item_id)))
        self._maybe_fail("get_catalog_item")
        return self.catalog_items.get((source, item_id))

    def get_quick_replies(self, page_id):
        self.calls.append(("get_quick_replies", page_id))
        self._maybe_fail("get_quick_replies")
        return list(self.quick_replies)


@pytest.fixture
def app_config():
    config = AppConfig()
    config.backend = BackendConfig(
        base_url="http://backend.test",
        image_url="http://images.test",
        page_id=PAGE_ID,
        app_name="Test Shop",
    )
    config.logging.enable_file_logging = False
    config.storage.db_path = ":memory:"
    return config


@pytest.fixture
def local_store():
    store = LocalStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def backend():
    return FakeChatBackend()


@pytest.fixture
def retry_service():
    return RetryService(sleep=lambda seconds: None)


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=2, base_delay=0.0, multiplier=1.0, max_delay=0.0, jitter=False)
