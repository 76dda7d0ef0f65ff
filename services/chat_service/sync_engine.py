"""
Conversation sync engine.

A ChatSession owns the state of one chat widget: guest identity, the
in-memory transcript, the server record id, AI toggles and (for admins) the
thread list. It writes optimistically, polls the server record on a fixed
interval, and asks the AI gateway for a reply after each guest message while
AI is enabled.

Writes carry a revision number inside the record's itemList envelope. A poll
result only replaces local state when it is at least as new as the last
revision this session confirmed and no write of ours is still in flight, so a
slow poll can never roll back a message the guest just sent. Records written
by older clients (plain message arrays) fall back to "replace only if the
remote list is at least as long as ours". Messages whose write failed are
kept on top of an adopted record and written again.
"""

import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional

from config.app_config import AppConfig, get_config
from infrastructure.external.chat_backend_client import BackendError, CustomerChatClient, MalformedPayloadError
from infrastructure.resilience.retry_service import RetryPolicy, RetryService, get_retry_service
from infrastructure.storage.local_store import LocalStore, get_local_store
from services.ai_service.ai_gateway import AIGateway, auto_link_items, display_type_for
from services.catalog_service.cache_service import CatalogCacheService
from services.chat_service.events import EventChannel
from services.chat_service.guest_store import GuestStore, new_device_id
from services.chat_service.models import (
    AdminThread,
    ConnectionStatus,
    ConversationRecord,
    GuestIdentity,
    Message,
    SENDER_GUEST,
    SENDER_PAGE,
    ai_settings_guest_id,
    encode_item_list,
    new_message_id,
    parse_flag,
    utc_now_iso,
)
from services.chat_service.polling import PollLoop
from utils.logging_config import get_logger, log_conversation_event, log_user_interaction

AI_SETTINGS_GUEST_NAME = "SYSTEM_AI_SETTINGS"

WAITING_MESSAGES = (
    "Connecting to a support agent...",
    "We're reviewing your message!",
    "Almost there, stay with us...",
    "One of our experts is picking this up.",
    "Hang tight, help is on the way!",
)


@dataclass(frozen=True)
class SelectedThread:
    """Conversation an admin has opened from the thread list"""
    guest_id: str
    guest_name: str = ""


class ChatSession:
    """
    Conversation state machine for one widget instance.

    Guest side: unregistered -> idle <-> sending -> ai_thinking -> idle.
    Admin side: thread_list <-> thread_selected (sending while a write runs).

    All network failures are caught here: they flip connection_status to
    ERROR and bump retry_count, and the local state is kept as it is.
    """

    def __init__(
        self,
        client: CustomerChatClient,
        store: LocalStore,
        config: Optional[AppConfig] = None,
        ai_gateway: Optional[AIGateway] = None,
        catalog=None,
        is_admin: bool = False,
        retry_service: Optional[RetryService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        poll_loop_factory: Callable[..., PollLoop] = PollLoop,
        device_id: Optional[str] = None
    ):
        self.logger = get_logger(__name__)
        self.client = client
        self.config = config or get_config()
        self.page_id = self.config.backend.page_id
        self.guest_store = GuestStore(store, self.page_id, device_id=device_id)
        self.ai_gateway = ai_gateway
        self.catalog = catalog
        self.is_admin = is_admin
        self.retry_service = retry_service or get_retry_service()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config.retry)
        self._poll_loop_factory = poll_loop_factory

        # Observer channels
        self.state_changed = EventChannel("state_changed")
        self.reply_requested = EventChannel("reply_requested")

        # Identity
        self.guest = GuestIdentity(id="")
        self.is_registered = False

        # Conversation
        self.messages: List[Message] = []
        self.record_id: Optional[Any] = None
        self.is_loading = False
        self.is_sending = False
        self.is_ai_thinking = False
        self.connection_status = ConnectionStatus.CONNECTING
        self.retry_count = 0

        # AI flags; None on the conversation means "follow the page default"
        self.global_ai_enabled = self.config.chat.enable_chat_ai
        self.conversation_ai_enabled: Optional[bool] = None

        # Admin
        self.admin_threads: List[AdminThread] = []
        self.selected_thread: Optional[SelectedThread] = None
        self.search_query = ""

        # Catalog context
        self.page_context = ""
        self.active_sources: List[str] = []
        self.contact_info: Optional[Dict[str, Any]] = None
        self.active_data_source: Optional[str] = None

        # Delivery tracking, kept apart from the immutable messages
        self.pending_message_ids: set = set()
        self.failed_message_ids: set = set()

        self._lock = threading.RLock()
        self._load_lock = threading.Lock()
        self._revisions: Dict[str, int] = {}
        self._pending_writes: Dict[str, int] = {}
        self._is_open = False
        self._poll_loop: Optional[PollLoop] = None

    # -- derived state ---------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self._is_open

    @property
    def revision(self) -> Optional[int]:
        """Last revision of the record this session has confirmed"""
        return self._revisions.get(self.target_guest_id() or "")

    @property
    def is_ai_enabled(self) -> bool:
        """Effective AI flag: the conversation's own flag if set, else the page default"""
        if self.is_admin and self.selected_thread is None:
            return self.global_ai_enabled
        if self.conversation_ai_enabled is not None:
            return self.conversation_ai_enabled
        return self.global_ai_enabled

    @property
    def state(self) -> str:
        if self.is_admin:
            if self.selected_thread is None:
                return "thread_list"
            return "sending" if self.is_sending else "thread_selected"
        if not self.is_registered:
            return "unregistered"
        if self.is_ai_thinking:
            return "ai_thinking"
        if self.is_sending:
            return "sending"
        return "idle"

    def target_guest_id(self) -> Optional[str]:
        """Guest id of the conversation this session currently reads and writes"""
        if self.is_admin:
            return self.selected_thread.guest_id if self.selected_thread else None
        return self.guest.id or None

    def message_status(self, message_id: Any) -> str:
        if message_id in self.failed_message_ids:
            return "failed"
        if message_id in self.pending_message_ids:
            return "sending"
        return "sent"

    def _notify(self) -> None:
        if self._is_open:
            self.state_changed.publish(self)

    # -- lifecycle -------------------------------------------------------

    def open(self, poll: bool = True) -> None:
        """
        Initialize the widget: load identity, paint the cached transcript,
        refresh catalog context, fetch the record and start polling.
        """
        with self._lock:
            if self._is_open:
                return
            self._is_open = True
            if not self.is_admin:
                self.guest = self.guest_store.get_identity()
                self.is_registered = self.guest.is_registered

        self.logger.info(f"Chat session opened for page {self.page_id}", extra={
            "is_admin": self.is_admin,
            "guest_id": self.guest.id,
        })
        self._notify()
        self.refresh_context()
        self.load_conversation(wait=True)

        if poll:
            self._poll_loop = self._poll_loop_factory(
                self.config.chat.poll_interval, self.load_conversation, name=f"chat-poll-{self.page_id}"
            )
            self._poll_loop.start()

    def close(self) -> None:
        """
        Stop polling and detach observers' updates. Requests already in
        flight finish and persist, but no longer notify anyone.
        """
        with self._lock:
            if not self._is_open:
                return
            self._is_open = False
            poll_loop, self._poll_loop = self._poll_loop, None
        if poll_loop is not None:
            poll_loop.stop()
        self.logger.info(f"Chat session closed for page {self.page_id}")

    # -- helpers ---------------------------------------------------------

    def _retry(self, func):
        def on_retry(attempt, error):
            with self._lock:
                self.connection_status = ConnectionStatus.CONNECTING
            self._notify()

        return self.retry_service.retry_with_backoff(func, policy=self.retry_policy, on_retry=on_retry)

    def _mark_failure(self, error: Exception, operation: str) -> None:
        with self._lock:
            self.connection_status = ConnectionStatus.ERROR
            self.retry_count += 1
        self.logger.error(f"{operation} failed: {error}", extra={
            "operation": operation,
            "retry_count": self.retry_count,
        })

    def _mark_connected(self) -> None:
        with self._lock:
            self.connection_status = ConnectionStatus.CONNECTED
            self.retry_count = 0

    def _begin_write(self, guest_id: str) -> None:
        self._pending_writes[guest_id] = self._pending_writes.get(guest_id, 0) + 1

    def _end_write(self, guest_id: str) -> None:
        remaining = self._pending_writes.get(guest_id, 0) - 1
        if remaining > 0:
            self._pending_writes[guest_id] = remaining
        else:
            self._pending_writes.pop(guest_id, None)

    def _record_form(self, guest_id: str) -> Dict[str, Any]:
        form = {"guestId": guest_id, "pageId": self.page_id}
        if self.is_admin:
            if self.selected_thread and self.selected_thread.guest_name:
                form["guestName"] = self.selected_thread.guest_name
        else:
            form.update({
                "guestName": self.guest.name or "Guest",
                "guestPhone": self.guest.phone,
                "guestEmail": self.guest.email,
                "guestCompany": self.guest.company,
            })
        return form

    def _persist(
        self,
        guest_id: str,
        messages: List[Message],
        record_id: Optional[Any],
        extra_fields: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Write the full transcript to the record (PATCH when the id is known,
        POST otherwise). The caller has already registered the write with
        _begin_write; this always ends it.
        """
        with self._lock:
            revision = self._revisions.get(guest_id, 0) + 1
            form = self._record_form(guest_id)
        form["itemList"] = encode_item_list(messages, revision)
        if extra_fields:
            form.update(extra_fields)

        try:
            if record_id:
                form["id"] = record_id
                self._retry(lambda: self.client.update_record(form))
                new_id = None
            else:
                new_id = self._retry(lambda: self.client.create_record(form))
        except BackendError as e:
            with self._lock:
                self._end_write(guest_id)
            self._mark_failure(e, "Conversation write")
            return False

        with self._lock:
            self._end_write(guest_id)
            self._revisions[guest_id] = max(self._revisions.get(guest_id, 0), revision)
            # The full transcript is on the server now, earlier failures included
            self.failed_message_ids.difference_update(m.id for m in messages)
            is_current = guest_id == self.target_guest_id()
            if is_current:
                if new_id and self.record_id is None:
                    self.record_id = new_id
                messages = list(self.messages)
        self._mark_connected()
        if is_current or self.is_admin:
            self.guest_store.save_to_local(guest_id, messages, revision)
        return True

    def _should_accept_remote(self, guest_id: str, remote: List[Message], remote_revision: Optional[int]) -> bool:
        if self._pending_writes.get(guest_id):
            return False
        if remote_revision is None:
            return len(remote) >= len(self.messages)
        known = self._revisions.get(guest_id)
        if known is None:
            return True
        return remote_revision >= known

    # -- context ---------------------------------------------------------

    def refresh_context(self) -> None:
        """Load catalog context from cache, refreshing it when stale"""
        if self.catalog is None:
            return
        snapshot = self.catalog.get_or_refresh_snapshot()
        with self._lock:
            self.page_context = snapshot.context or self.page_context
            self.active_sources = snapshot.sources
            self.contact_info = snapshot.contact_info

    def set_active_data_source(self, source: Optional[str]) -> None:
        """Narrow subsequent AI requests to one catalog source"""
        with self._lock:
            self.active_data_source = source or None

    # -- loading ---------------------------------------------------------

    def load_conversation(self, wait: bool = False) -> None:
        """
        One poll: refresh the page AI default, then the admin thread list or
        the current conversation record. At most one poll runs at a time;
        overlapping polls return immediately, user actions pass `wait`
        to queue behind the one in flight.
        """
        if not self._load_lock.acquire(blocking=wait):
            return
        try:
            if self.is_admin and self.selected_thread is None:
                self.load_threads()
                return

            guest_id = self.target_guest_id()
            if not guest_id:
                return
            with self._lock:
                self.is_loading = True
                if not self.messages:
                    cached = self.guest_store.load_from_local(guest_id)
                    if cached:
                        self.messages = cached
            self._notify()

            self._refresh_global_ai()
            try:
                row = self._retry(lambda: self.client.get_record(self.page_id, guest_id))
                record = ConversationRecord.from_row(row) if row else None
            except MalformedPayloadError as e:
                self.logger.warning(f"Ignoring unreadable conversation record for {guest_id}: {e}")
                record = None
            except BackendError as e:
                self._mark_failure(e, "Conversation poll")
                return

            if record is not None:
                self._apply_record(guest_id, record)
            self._mark_connected()
        finally:
            with self._lock:
                self.is_loading = False
            self._load_lock.release()
            self._notify()

    def _apply_record(self, guest_id: str, record: ConversationRecord) -> None:
        """
        Adopt the server record when it wins reconciliation. Messages whose
        write failed and that the server doesn't have yet are kept after the
        remote ones and written again.
        """
        with self._lock:
            if guest_id != self.target_guest_id():
                return
            if record.id:
                self.record_id = record.id
            self.conversation_ai_enabled = record.is_ai_active

            if not self.is_admin and not self.is_registered and record.guest_name and record.guest_phone:
                self.guest = replace(
                    self.guest,
                    name=record.guest_name,
                    phone=record.guest_phone,
                    email=record.guest_email,
                    company=record.guest_company,
                )
                self.guest_store.save_guest_info(
                    record.guest_name, record.guest_phone, record.guest_email, record.guest_company
                )
                self.is_registered = True
                self.logger.info(f"Recovered registration for {guest_id} from the server record")

            if not self._should_accept_remote(guest_id, record.messages, record.revision):
                self.logger.debug(
                    f"Kept local transcript ({len(self.messages)} messages) over remote "
                    f"({len(record.messages)} messages, revision {record.revision})"
                )
                return
            remote_ids = {m.id for m in record.messages}
            undelivered = [
                m for m in self.messages
                if m.id in self.failed_message_ids and m.id not in remote_ids
            ]
            self.messages = list(record.messages) + undelivered
            messages = list(self.messages)
            if record.revision is not None:
                self._revisions[guest_id] = record.revision
            self.failed_message_ids.intersection_update(m.id for m in self.messages)
            record_id = self.record_id
            if undelivered:
                self._begin_write(guest_id)
        self.guest_store.save_to_local(guest_id, messages, record.revision)

        if undelivered:
            self.logger.info(f"Resending {len(undelivered)} undelivered messages for {guest_id}")
            self._persist(guest_id, messages, record_id)

    def _refresh_global_ai(self) -> None:
        settings_id = ai_settings_guest_id(self.page_id)
        try:
            row = self.client.get_record(self.page_id, settings_id)
        except BackendError as e:
            self.logger.debug(f"AI settings unavailable, keeping default: {e}")
            return
        flag = parse_flag((row or {}).get("IsAIActive"))
        if flag is not None:
            with self._lock:
                self.global_ai_enabled = flag

    def load_threads(self) -> List[AdminThread]:
        """Admin only: reload the page's conversation list"""
        settings_id = ai_settings_guest_id(self.page_id)
        self._refresh_global_ai()
        try:
            rows = self._retry(lambda: self.client.list_threads(self.page_id))
        except BackendError as e:
            self._mark_failure(e, "Thread list")
            return self.admin_threads

        threads = [AdminThread.from_row(row) for row in rows]
        threads = [t for t in threads if t.guest_id and t.guest_id != settings_id]
        with self._lock:
            self.admin_threads = threads
        self._mark_connected()
        self._notify()
        return threads

    def filter_threads(self, query: Optional[str] = None) -> List[AdminThread]:
        """Threads whose guest name or phone contains the query"""
        needle = self.search_query if query is None else query
        return [t for t in self.admin_threads if t.matches(needle)]

    def select_thread(self, guest_id: str, guest_name: str = "") -> None:
        """Admin only: open one conversation from the thread list"""
        if not self.is_admin:
            return
        with self._lock:
            self.selected_thread = SelectedThread(guest_id=guest_id, guest_name=guest_name)
            self.messages = []
            self.record_id = None
            if not self._pending_writes.get(guest_id):
                self._revisions.pop(guest_id, None)
            self.conversation_ai_enabled = None
        self._notify()
        self.load_conversation(wait=True)

    def clear_selection(self) -> None:
        """Admin only: go back to the thread list"""
        if not self.is_admin:
            return
        with self._lock:
            self.selected_thread = None
            self.messages = []
            self.record_id = None
            self.conversation_ai_enabled = None
        self._notify()
        self.load_conversation(wait=True)

    # -- registration ----------------------------------------------------

    def register(self, name: str, phone: str, email: str = "", company: str = "") -> bool:
        """
        Register the guest. Name and phone are required; nothing is sent
        when either is blank.
        """
        name, phone = (name or "").strip(), (phone or "").strip()
        email, company = (email or "").strip(), (company or "").strip()
        if self.is_admin or not name or not phone:
            return False

        with self._lock:
            if not self.guest.id:
                self.guest = self.guest_store.get_identity()
            self.guest = replace(self.guest, name=name, phone=phone, email=email, company=company)
            self.is_registered = True
            guest_id = self.guest.id
            messages = list(self.messages)
            record_id = self.record_id
            self._begin_write(guest_id)
        self.guest_store.save_guest_info(name, phone, email, company)
        log_conversation_event(self.logger, "registered", guest_id, page_id=self.page_id)
        self._notify()

        self._persist(guest_id, messages, record_id)
        self.load_conversation(wait=True)
        return True

    # -- sending ---------------------------------------------------------

    def send_message(self, text: str) -> bool:
        """
        Append a message optimistically, persist the transcript, and for
        guests with AI enabled fetch and persist the AI reply.

        Returns False when nothing was sent (empty text, a send already in
        progress, unregistered guest or no selected thread).
        """
        text = (text or "").strip()
        with self._lock:
            guest_id = self.target_guest_id()
            if not text or self.is_sending or not guest_id:
                return False
            if not self.is_admin and not self.is_registered:
                return False

            self.is_sending = True
            message = Message(
                id=new_message_id(),
                text=text,
                sender=SENDER_PAGE if self.is_admin else SENDER_GUEST,
                time=utc_now_iso(),
            )
            self.messages = self.messages + [message]
            transcript = list(self.messages)
            record_id = self.record_id
            ai_enabled = self.is_ai_enabled
            self.pending_message_ids.add(message.id)
            self._begin_write(guest_id)

        self.guest_store.save_to_local(guest_id, transcript, self._revisions.get(guest_id))
        log_user_interaction(self.logger, "send", guest_id=guest_id, is_admin=self.is_admin, length=len(text))
        self._notify()

        try:
            persisted = self._persist(guest_id, transcript, record_id)
            with self._lock:
                self.pending_message_ids.discard(message.id)
                if not persisted:
                    self.failed_message_ids.add(message.id)
            log_conversation_event(self.logger, "message_sent", guest_id, persisted=persisted)

            if not self.is_admin and ai_enabled and self.ai_gateway is not None:
                self._request_ai_reply(guest_id, transcript)
        finally:
            with self._lock:
                self.is_sending = False
            self._notify()
        return True

    def _request_ai_reply(self, guest_id: str, transcript: List[Message]) -> None:
        with self._lock:
            self.is_ai_thinking = True
            record_id = self.record_id
            context = self.page_context or (self.catalog.get_cached_context() if self.catalog else "")
            data_source = self.active_data_source
        self._notify()

        try:
            response = self.ai_gateway.get_ai_response(transcript, context, data_source)
            if not response.has_reply:
                return

            items = auto_link_items(response.text, list(response.items or []), self.catalog)
            ai_message = Message(
                id=new_message_id(),
                text=response.text,
                sender=SENDER_PAGE,
                time=utc_now_iso(),
                display_type=display_type_for(items) if items else None,
                items=items or None,
                answer_id=response.answer_id,
            )

            with self._lock:
                is_current = guest_id == self.target_guest_id()
                base = self.messages if is_current else transcript
                updated = base + [ai_message]
                if is_current:
                    self.messages = updated
                    record_id = self.record_id or record_id
                self._begin_write(guest_id)

            if is_current:
                self.guest_store.save_to_local(guest_id, updated, self._revisions.get(guest_id))
            self._notify()
            self._persist(guest_id, updated, record_id)
            log_conversation_event(
                self.logger, "ai_reply", guest_id,
                item_count=len(items), provider=response.provider
            )
        finally:
            with self._lock:
                self.is_ai_thinking = False
            self._notify()

    def request_reply(self, text: str) -> None:
        """Ask subscribers (the input component) to send `text` on the guest's behalf"""
        self.reply_requested.publish(text)

    def select_quick_reply(self, reply, language: str = "mm") -> str:
        """Use a quick reply: narrow the AI data source and request its text be sent"""
        text = reply.text_for(language)
        self.set_active_data_source(reply.data_source)
        log_user_interaction(self.logger, "quick_reply", reply_id=reply.id, data_source=reply.data_source)
        self.request_reply(text)
        return text

    # -- feedback --------------------------------------------------------

    def send_feedback(self, message_id: Any, positive: bool) -> bool:
        """Rate an AI answer; the rating is remembered on the message locally"""
        with self._lock:
            message = next((m for m in self.messages if m.id == message_id), None)
        if message is None or message.answer_id is None or message.feedback_given or self.ai_gateway is None:
            return False

        if not self.ai_gateway.send_feedback(message.answer_id, positive):
            return False

        rating = "positive" if positive else "negative"
        with self._lock:
            self.messages = [
                replace(m, feedback_given=rating) if m.id == message_id else m
                for m in self.messages
            ]
            guest_id = self.target_guest_id()
            messages = list(self.messages)
        self.guest_store.save_to_local(guest_id, messages, self._revisions.get(guest_id))
        log_user_interaction(self.logger, "ai_feedback", answer_id=message.answer_id, positive=positive)
        self._notify()
        return True

    # -- deletion --------------------------------------------------------

    def delete_message(self, message_id: Any) -> bool:
        """Remove one message from the transcript and write the result back"""
        with self._lock:
            guest_id = self.target_guest_id()
            record_id = self.record_id
            if not guest_id or not record_id:
                return False
            remaining = [m for m in self.messages if m.id != message_id]
            if len(remaining) == len(self.messages):
                return False
            self.messages = remaining
            self._begin_write(guest_id)

        self.guest_store.save_to_local(guest_id, remaining, self._revisions.get(guest_id))
        self._notify()
        log_conversation_event(self.logger, "message_deleted", guest_id, message_id=message_id)
        return self._persist(guest_id, remaining, record_id)

    def delete_record(self, record_id: Optional[Any] = None) -> bool:
        """Admin only: delete a whole conversation record"""
        if not self.is_admin:
            return False
        with self._lock:
            target_id = record_id if record_id is not None else self.record_id
        if not target_id:
            return False

        try:
            self._retry(lambda: self.client.delete_record(target_id))
        except BackendError as e:
            self._mark_failure(e, "Conversation delete")
            return False

        self._mark_connected()
        log_conversation_event(self.logger, "record_deleted", str(target_id), page_id=self.page_id)
        with self._lock:
            self.admin_threads = [t for t in self.admin_threads if t.id != target_id]
            deleting_current = target_id == self.record_id
        if deleting_current or self.selected_thread is None:
            self.clear_selection()
        else:
            self._notify()
        return True

    def end_chat(self) -> None:
        """
        Guest leaves: forget the local identity and transcript. The server
        record is left as it is.
        """
        if self.is_admin:
            return
        guest_id = self.guest.id
        self.guest_store.clear_local_messages(guest_id)
        self.guest_store.clear_identity()
        with self._lock:
            self.guest = GuestIdentity(id="")
            self.is_registered = False
            self.messages = []
            self.record_id = None
            self._revisions.pop(guest_id, None)
            self.conversation_ai_enabled = None
            self.pending_message_ids.clear()
            self.failed_message_ids.clear()
        log_conversation_event(self.logger, "ended", guest_id)
        self._notify()
        self.close()

    # -- AI toggle -------------------------------------------------------

    def toggle_ai(self) -> bool:
        """
        Flip AI replies and persist the new value.

        A guest, or an admin with a thread open, toggles that conversation's
        flag. An admin on the thread list toggles the page-wide default.
        Returns the new effective value.
        """
        with self._lock:
            new_value = not self.is_ai_enabled
            per_conversation = not self.is_admin or self.selected_thread is not None
            guest_id = self.target_guest_id()
            record_id = self.record_id
            if per_conversation:
                self.conversation_ai_enabled = new_value
            else:
                self.global_ai_enabled = new_value
        self._notify()
        flag = "1" if new_value else "0"

        try:
            if per_conversation and record_id:
                self._retry(lambda: self.client.update_record({"id": record_id, "IsAIActive": flag}))
            elif per_conversation:
                if not guest_id or not (self.is_admin or self.is_registered):
                    return new_value
                with self._lock:
                    messages = list(self.messages)
                    self._begin_write(guest_id)
                self._persist(guest_id, messages, None, extra_fields={"IsAIActive": flag})
            else:
                self._save_global_ai(new_value)
        except BackendError as e:
            self._mark_failure(e, "AI toggle")

        log_user_interaction(
            self.logger, "toggle_ai",
            enabled=new_value, scope="conversation" if per_conversation else "page"
        )
        return new_value

    def _save_global_ai(self, enabled: bool) -> None:
        settings_id = ai_settings_guest_id(self.page_id)
        form = {
            "guestId": settings_id,
            "pageId": self.page_id,
            "guestName": AI_SETTINGS_GUEST_NAME,
            "itemList": '{"isAiEnabled": %s}' % ("true" if enabled else "false"),
            "IsAIActive": "1" if enabled else "0",
        }
        existing = self._retry(lambda: self.client.get_record(self.page_id, settings_id))
        existing_id = ConversationRecord.from_row(existing).id if existing else None
        if existing_id:
            form["id"] = existing_id
            self._retry(lambda: self.client.update_record(form))
        else:
            self._retry(lambda: self.client.create_record(form))

    # -- presentation helpers ----------------------------------------------

    def waiting_message(self, now: Optional[float] = None) -> Optional[str]:
        """
        Rotating "we'll be with you shortly" text, shown to guests while the
        last message is their own.
        """
        with self._lock:
            if self.is_admin or not self.messages or self.messages[-1].sender == SENDER_PAGE:
                return None
        now = time.time() if now is None else now
        interval = self.config.chat.waiting_message_interval or 1
        return WAITING_MESSAGES[int(now // interval) % len(WAITING_MESSAGES)]


def create_chat_session(
    is_admin: bool = False,
    config: Optional[AppConfig] = None,
    device_id: Optional[str] = None
) -> ChatSession:
    """
    Wire a session against the configured backend and device store.

    `device_id` identifies the browser the session serves; guest identity and
    the message mirror are kept under it. A fresh one is generated when the
    caller has none.
    """
    config = config or get_config()
    client = CustomerChatClient(config.backend)
    store = get_local_store(config.storage.db_path)
    catalog = CatalogCacheService(client, store, config)
    gateway = AIGateway(client, config, catalog=catalog)
    return ChatSession(
        client, store,
        config=config,
        ai_gateway=gateway,
        catalog=catalog,
        is_admin=is_admin,
        device_id=device_id or new_device_id(),
    )
