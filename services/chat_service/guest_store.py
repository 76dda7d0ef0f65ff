"""
Guest identity and local conversation mirror.
No login, no verification - a guest is a durable token kept on the device.
"""

import uuid
from typing import Any, Dict, List, Optional

from infrastructure.storage.local_store import LocalStore
from services.chat_service.models import GuestIdentity, Message, messages_from_list
from utils.logging_config import get_logger

_GUEST_FIELDS = ("name", "phone", "email", "company")


class GuestStore:
    """
    Page-scoped guest identity and per-guest message cache.

    Several pages on the same device use disjoint keys. When one store file
    serves many browsers, `device_id` namespaces every key so each browser
    keeps its own guest.
    """

    def __init__(self, store: LocalStore, page_id: Any, device_id: Optional[str] = None):
        self.logger = get_logger(__name__)
        self.store = store
        self.page_id = page_id
        self.device_id = device_id

    # -- keys ------------------------------------------------------------

    def _key(self, name: str) -> str:
        return f"{self.device_id}:{name}" if self.device_id else name

    def _guest_id_key(self) -> str:
        return self._key(f"PersistentGuestId_{self.page_id}")

    def _field_key(self, name: str) -> str:
        return self._key(f"StoredGuest{name.capitalize()}_{self.page_id}")

    def _messages_key(self, guest_id: str) -> str:
        return self._key(f"StoredMessages_{self.page_id}_{guest_id}")

    # -- identity --------------------------------------------------------

    def get_or_create_guest_id(self) -> str:
        """Return the durable guest id, generating and persisting one on first use"""
        guest_id = self.store.get_item(self._guest_id_key())
        if not guest_id:
            guest_id = f"guest_{uuid.uuid4().hex[:13]}"
            self.store.set_item(self._guest_id_key(), guest_id)
            self.logger.info(f"Created guest id {guest_id} for page {self.page_id}")
        return guest_id

    def get_stored_guest_info(self) -> Dict[str, str]:
        return {name: self.store.get_item(self._field_key(name)) or "" for name in _GUEST_FIELDS}

    def get_identity(self) -> GuestIdentity:
        info = self.get_stored_guest_info()
        return GuestIdentity(id=self.get_or_create_guest_id(), **info)

    def save_guest_info(self, name: str, phone: str, email: str = "", company: str = "") -> None:
        """Persist registration fields; empty optional fields are not written"""
        values = {"name": name, "phone": phone, "email": email, "company": company}
        for field_name, value in values.items():
            if value:
                self.store.set_item(self._field_key(field_name), value)

    def clear_identity(self) -> None:
        """Forget registration and guest id; the next open starts a new guest"""
        for field_name in _GUEST_FIELDS:
            self.store.remove_item(self._field_key(field_name))
        self.store.remove_item(self._guest_id_key())

    # -- conversation mirror ---------------------------------------------

    def save_to_local(self, guest_id: str, messages: List[Message], revision: Optional[int] = None) -> None:
        if not guest_id:
            return
        payload = {"revision": revision, "messages": [m.to_dict() for m in messages]}
        self.store.set_json(self._messages_key(guest_id), payload)

    def load_from_local(self, guest_id: str) -> Optional[List[Message]]:
        """Cached messages for a guest, or None when nothing usable is stored"""
        if not guest_id:
            return None
        data = self.store.get_json(self._messages_key(guest_id))
        if data is None:
            return None
        if isinstance(data, list):
            return messages_from_list(data)
        if isinstance(data, dict):
            return messages_from_list(data.get("messages"))
        return None

    def clear_local_messages(self, guest_id: str) -> None:
        if guest_id:
            self.store.remove_item(self._messages_key(guest_id))


def new_device_id() -> str:
    """Opaque token naming one browser's slice of a shared store"""
    return f"device_{uuid.uuid4().hex}"
