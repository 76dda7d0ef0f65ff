"""
Chat service data models for guests, messages and conversation records.

Upstream payloads are loosely typed (Title/title, Image/ImgOne/Thumbnail, ...).
All field-name resolution happens here, in the from_* constructors; the rest
of the code only sees the canonical shapes.
"""

import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Optional, Any, Tuple

from infrastructure.external.chat_backend_client import decode_json_field

SENDER_GUEST = "guest"
SENDER_PAGE = "page"

MESSAGE_STATUSES = ("sending", "sent", "delivered", "read", "failed")
DISPLAY_TYPES = ("normal", "carousel", "list")


class ConnectionStatus(str, Enum):
    """Connection banner state shown by the UI"""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


def _pick(raw: Dict[str, Any], *names: str) -> Any:
    """First non-empty value among candidate field names"""
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None


def parse_flag(value: Any) -> Optional[bool]:
    """Backend booleans arrive as 1/0, "1"/"0", true/false or nothing"""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    return None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MessageIdGenerator:
    """Millisecond-timestamp ids that never repeat or go backwards within a process"""

    def __init__(self):
        self._last = 0
        self._lock = threading.Lock()

    def next_id(self) -> int:
        with self._lock:
            candidate = int(time.time() * 1000)
            if candidate <= self._last:
                candidate = self._last + 1
            self._last = candidate
            return candidate


_id_generator = MessageIdGenerator()


def new_message_id() -> int:
    return _id_generator.next_id()


@dataclass
class Item:
    """Catalog entity attached to a message (book, product, service...)"""
    title: str
    author: Optional[str] = None
    image: Optional[str] = None
    thumbnail: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Any] = None
    link: Optional[str] = None
    links: Optional[Dict[str, str]] = None
    id: Optional[Any] = None
    type: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> 'Item':
        """Map heterogeneous upstream field names to the canonical item shape"""
        item_type = _pick(raw, "type", "Type", "source")
        links = raw.get("links") or raw.get("Links")
        return cls(
            title=str(_pick(raw, "title", "Title", "name", "Name") or ""),
            author=_pick(raw, "author", "Author"),
            image=_pick(raw, "image", "Image", "ImgOne"),
            thumbnail=_pick(raw, "thumbnail", "Thumbnail"),
            description=_pick(raw, "description", "Description"),
            price=_pick(raw, "price", "Price"),
            link=_pick(raw, "link", "Link"),
            links=links if isinstance(links, dict) else None,
            id=_pick(raw, "id", "Id", "ID"),
            type=str(item_type).lower() if item_type else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "title": self.title,
            "author": self.author,
            "image": self.image,
            "thumbnail": self.thumbnail,
            "description": self.description,
            "price": self.price,
            "link": self.link,
            "links": self.links,
            "id": self.id,
            "type": self.type,
        }
        return {key: value for key, value in data.items() if value is not None}


@dataclass
class Message:
    """One chat message; append-only, never edited after creation"""
    id: Any
    text: str
    sender: str
    time: str = field(default_factory=utc_now_iso)
    status: Optional[str] = None
    display_type: Optional[str] = None
    items: Optional[List[Item]] = None
    answer_id: Optional[Any] = None
    feedback_given: Optional[str] = None
    # Unknown fields written by other clients, kept so our writes don't drop them
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN = {"id", "text", "sender", "time", "status", "displayType", "items", "answerId", "feedbackGiven"}

    @property
    def has_items(self) -> bool:
        return bool(self.items)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'Message':
        raw_items = raw.get("items")
        items = None
        if isinstance(raw_items, list):
            items = [Item.from_raw(i) for i in raw_items if isinstance(i, dict)]
        sender = raw.get("sender")
        return cls(
            id=raw.get("id"),
            text=str(raw.get("text") or ""),
            sender=sender if sender in (SENDER_GUEST, SENDER_PAGE) else SENDER_PAGE,
            time=str(raw.get("time") or ""),
            status=raw.get("status") if raw.get("status") in MESSAGE_STATUSES else None,
            display_type=raw.get("displayType") if raw.get("displayType") in DISPLAY_TYPES else None,
            items=items or None,
            answer_id=raw.get("answerId"),
            feedback_given=raw.get("feedbackGiven"),
            extra={k: v for k, v in raw.items() if k not in cls._KNOWN},
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({"id": self.id, "text": self.text, "sender": self.sender, "time": self.time})
        if self.status:
            data["status"] = self.status
        if self.display_type:
            data["displayType"] = self.display_type
        if self.items:
            data["items"] = [item.to_dict() for item in self.items]
        if self.answer_id is not None:
            data["answerId"] = self.answer_id
        if self.feedback_given:
            data["feedbackGiven"] = self.feedback_given
        return data


def messages_from_list(raw: Any) -> List[Message]:
    if not isinstance(raw, list):
        return []
    return [Message.from_dict(m) for m in raw if isinstance(m, dict)]


def encode_item_list(messages: List[Message], revision: Optional[int]) -> str:
    """Serialize messages for the record's itemList field"""
    payload = [m.to_dict() for m in messages]
    if revision is None:
        return json.dumps(payload, ensure_ascii=False)
    return json.dumps({"revision": revision, "messages": payload}, ensure_ascii=False)


def decode_item_list(value: Any) -> Tuple[List[Message], Optional[int]]:
    """
    Parse a record's itemList.

    Returns (messages, revision). Legacy plain arrays carry no revision.
    Raises MalformedPayloadError on unparseable JSON.
    """
    parsed = decode_json_field(value)
    if isinstance(parsed, list):
        return messages_from_list(parsed), None
    if isinstance(parsed, dict):
        revision = parsed.get("revision")
        try:
            revision = int(revision) if revision is not None else None
        except (TypeError, ValueError):
            revision = None
        return messages_from_list(parsed.get("messages")), revision
    return [], None


@dataclass
class GuestIdentity:
    """Anonymous visitor identity, generated and owned by the client"""
    id: str
    name: str = ""
    phone: str = ""
    email: str = ""
    company: str = ""

    @property
    def is_registered(self) -> bool:
        return bool(self.name.strip() and self.phone.strip())


@dataclass
class ConversationRecord:
    """Authoritative server-side conversation of one guest with one page"""
    id: Optional[Any]
    page_id: Optional[Any]
    guest_id: str
    guest_name: str = ""
    guest_phone: str = ""
    guest_email: str = ""
    guest_company: str = ""
    messages: List[Message] = field(default_factory=list)
    revision: Optional[int] = None
    is_ai_active: Optional[bool] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'ConversationRecord':
        messages, revision = decode_item_list(_pick(row, "ItemList", "itemList"))
        server_revision = _pick(row, "Revision", "revision")
        if server_revision is not None:
            try:
                revision = int(server_revision)
            except (TypeError, ValueError):
                pass
        return cls(
            id=_pick(row, "Id", "id", "ID"),
            page_id=_pick(row, "PageId", "pageId"),
            guest_id=str(_pick(row, "GuestId", "guestId") or ""),
            guest_name=str(_pick(row, "GuestName", "guestName") or ""),
            guest_phone=str(_pick(row, "GuestPhone", "guestPhone") or ""),
            guest_email=str(_pick(row, "GuestEmail", "guestEmail") or ""),
            guest_company=str(_pick(row, "GuestCompany", "guestCompany") or ""),
            messages=messages,
            revision=revision,
            is_ai_active=parse_flag(_pick(row, "IsAIActive", "isAIActive")),
            updated_at=_pick(row, "UpdatedAt", "updatedAt"),
        )


@dataclass
class AdminThread:
    """Admin-facing projection of a conversation record"""
    guest_id: str
    guest_name: str
    guest_phone: str
    id: Any
    guest_email: Optional[str] = None
    updated_at: Optional[str] = None
    is_ai_active: Optional[bool] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'AdminThread':
        return cls(
            guest_id=str(_pick(row, "GuestId", "guestId") or ""),
            guest_name=str(_pick(row, "GuestName", "guestName") or ""),
            guest_phone=str(_pick(row, "GuestPhone", "guestPhone") or ""),
            id=_pick(row, "Id", "id", "ID"),
            guest_email=_pick(row, "GuestEmail", "guestEmail"),
            updated_at=_pick(row, "UpdatedAt", "updatedAt"),
            is_ai_active=parse_flag(_pick(row, "IsAIActive", "isAIActive")),
        )

    def matches(self, query: str) -> bool:
        needle = query.strip().lower()
        if not needle:
            return True
        return needle in self.guest_name.lower() or needle in self.guest_phone.lower()


def ai_settings_guest_id(page_id: Any) -> str:
    """Reserved guest id of the record holding the page-wide AI default"""
    return f"AI_SETTINGS_{page_id}"
