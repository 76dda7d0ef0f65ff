"""
REST client adapter for the customer chat backend.
Handles HTTP transport, form encoding and response-shape normalization.
"""

import json
from typing import Any, Dict, List, Optional

import requests

from config.app_config import BackendConfig, get_config
from utils.logging_config import get_logger


class BackendError(Exception):
    """Base class for backend communication failures"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class BackendUnavailableError(BackendError):
    """Transient failure: connection error, timeout, HTTP 5xx or 429"""
    pass


class BackendResponseError(BackendError):
    """Permanent failure: the backend rejected the request"""
    pass


class MalformedPayloadError(BackendError):
    """The backend answered with something that is not the expected JSON"""
    pass


# Wrapper keys that hold the row list in paginated or enveloped responses
_ROW_KEYS = ("items", "data", "results", "rows")


def normalize_rows(payload: Any) -> List[Dict[str, Any]]:
    """
    Normalize a backend list response to a list of dicts.

    Accepts a bare array, an object wrapping the array under one of
    items/data/results/rows, a single object, or nothing.
    """
    if payload is None or payload == "":
        return []
    if isinstance(payload, list):
        return [row for row in payload if isinstance(row, dict)]
    if isinstance(payload, dict):
        for key in _ROW_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                return [row for row in value if isinstance(row, dict)]
        return [payload] if payload else []
    return []


def first_row(payload: Any) -> Optional[Dict[str, Any]]:
    rows = normalize_rows(payload)
    return rows[0] if rows else None


class CustomerChatClient:
    """
    Adapter for the customer chat REST endpoints and the catalog read endpoints.
    Every method raises a BackendError subclass on failure; callers decide
    whether to retry, degrade or surface the error.
    """

    def __init__(self, backend: Optional[BackendConfig] = None, session: Optional[requests.Session] = None):
        self.logger = get_logger(__name__)
        self.backend = backend or get_config().backend
        self.http = session or requests.Session()

    # -- transport -------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.backend.base_url}{path}"

    def _auth_headers(self) -> Dict[str, str]:
        if self.backend.auth_token:
            return {"Authorization": f"Bearer {self.backend.auth_token}"}
        return {}

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = self._url(path)
        kwargs.setdefault("timeout", self.backend.request_timeout)
        try:
            response = self.http.request(method, url, **kwargs)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise BackendUnavailableError(f"{method} {path} failed: {e}") from e
        except requests.RequestException as e:
            raise BackendResponseError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise BackendUnavailableError(f"{method} {path} returned HTTP {status}", status)
        if status >= 400:
            raise BackendResponseError(f"{method} {path} returned HTTP {status}", status)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise MalformedPayloadError(f"{method} {path} returned invalid JSON", status) from e

    def _send_form(self, method: str, form: Dict[str, Any]) -> Any:
        # Multipart form: each field goes as a (None, value) part
        files = {key: (None, str(value)) for key, value in form.items() if value is not None}
        return self._request(method, "/customerChat/api", files=files, headers=self._auth_headers())

    # -- conversation records --------------------------------------------

    def list_threads(self, page_id: int) -> List[Dict[str, Any]]:
        """All conversation records of a page"""
        return normalize_rows(self._request("GET", f"/customerChat/api/byPageId/{page_id}"))

    def get_record(self, page_id: int, guest_id: str) -> Optional[Dict[str, Any]]:
        """The conversation record of one guest, or None"""
        payload = self._request("GET", f"/customerChat/api/byPageId/byGuest/{page_id}/{guest_id}")
        return first_row(payload)

    def create_record(self, form: Dict[str, Any]) -> Optional[Any]:
        """POST a new record; returns the id the backend assigned, if any"""
        payload = self._send_form("POST", form)
        return extract_record_id(payload)

    def update_record(self, form: Dict[str, Any]) -> Any:
        """PATCH an existing record; `form` must carry `id`"""
        if not form.get("id"):
            raise ValueError("update_record requires an id")
        return self._send_form("PATCH", form)

    def delete_record(self, record_id: Any) -> Any:
        return self._send_form("DELETE", {"id": record_id})

    # -- AI --------------------------------------------------------------

    def ask_ai(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = self._request("POST", self.backend.ai_endpoint(), json=payload)
        if not isinstance(data, dict):
            raise MalformedPayloadError("AI endpoint did not return an object")
        return data

    def send_ai_feedback(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = self._request("POST", f"{self.backend.ai_endpoint()}/feedback", json=payload)
        return data if isinstance(data, dict) else {}

    # -- catalog ---------------------------------------------------------

    def get_page(self, page_id: int) -> Optional[Dict[str, Any]]:
        return first_row(self._request("GET", f"/page/api/{page_id}"))

    def get_catalog(self, source: str, page_id: int) -> List[Dict[str, Any]]:
        return normalize_rows(self._request("GET", f"/{source}/api/byPageId/{page_id}"))

    def get_catalog_item(self, source: str, item_id: Any) -> Optional[Dict[str, Any]]:
        return first_row(self._request("GET", f"/{source}/api/{item_id}"))

    def get_quick_replies(self, page_id: int) -> List[Dict[str, Any]]:
        return normalize_rows(self._request("GET", f"/shortQuestion/api/byPageId/{page_id}"))


def extract_record_id(payload: Any) -> Optional[Any]:
    """Pull the record id out of a create response (object, list or bare id)"""
    if isinstance(payload, (int, str)) and payload != "":
        return payload
    row = first_row(payload)
    if row is None:
        return None
    for key in ("Id", "id", "ID", "insertId"):
        if row.get(key):
            return row[key]
    return None


def decode_json_field(value: Any) -> Any:
    """Decode a field the backend may store either as JSON text or as structured data"""
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        if not value.strip():
            return None
        try:
            return json.loads(value)
        except ValueError as e:
            raise MalformedPayloadError(f"Field is not valid JSON: {e}") from e
    return value
