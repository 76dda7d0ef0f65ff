"""
Tests for the conversation sync engine
"""

import json

import pytest
from unittest.mock import Mock

from services.ai_service.ai_gateway import AIGateway
from services.catalog_service.quick_replies import QuickReply
from services.chat_service.guest_store import GuestStore
from services.chat_service.models import (
    ConnectionStatus, Message, decode_item_list, encode_item_list, new_message_id
)
from services.chat_service.sync_engine import (
    AI_SETTINGS_GUEST_NAME, WAITING_MESSAGES, ChatSession, create_chat_session
)


def legacy_item_list(*texts, sender="guest"):
    """Plain message array, as written by clients without revisions"""
    return json.dumps([
        {"id": i + 1, "text": text, "sender": sender, "time": f"2024-01-01T00:00:0{i}Z"}
        for i, text in enumerate(texts)
    ])


@pytest.fixture
def make_session(backend, local_store, app_config, retry_service, retry_policy):
    sessions = []

    def factory(is_admin=False, with_ai=True, catalog=None, poll_loop_factory=None, device_id=None):
        gateway = None
        if with_ai:
            gateway = AIGateway(
                backend, app_config,
                retry_service=retry_service, retry_policy=retry_policy, catalog=catalog
            )
        kwargs = {}
        if poll_loop_factory is not None:
            kwargs["poll_loop_factory"] = poll_loop_factory
        session = ChatSession(
            backend, local_store,
            config=app_config,
            ai_gateway=gateway,
            catalog=catalog,
            is_admin=is_admin,
            retry_service=retry_service,
            retry_policy=retry_policy,
            device_id=device_id,
            **kwargs
        )
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()


@pytest.fixture
def guest_session(make_session):
    """Opened, registered guest session without AI"""
    session = make_session(with_ai=False)
    session.open(poll=False)
    assert session.register("Jane", "+15550100")
    return session


class TestRegistration:
    """Test guest registration"""

    def test_name_and_phone_required(self, make_session, backend):
        """Test blank name or phone is rejected without touching the backend"""
        session = make_session()
        session.open(poll=False)

        assert session.register("", "+15550100") is False
        assert session.register("Jane", "   ") is False
        assert session.state == "unregistered"
        assert "create_record" not in backend.methods_called()

    def test_register_creates_record(self, make_session, backend, local_store, app_config):
        """Test registration stores the identity and creates the server record"""
        session = make_session()
        session.open(poll=False)

        assert session.register("Jane", "+15550100", email="jane@example.com")

        guest_id = session.guest.id
        assert session.is_registered
        assert session.state == "idle"
        assert session.record_id == backend.records[guest_id]["Id"]
        assert backend.records[guest_id]["GuestName"] == "Jane"

        stored = GuestStore(local_store, app_config.backend.page_id).get_stored_guest_info()
        assert stored["name"] == "Jane"
        assert stored["phone"] == "+15550100"
        assert stored["email"] == "jane@example.com"

    def test_registration_recovered_from_server_record(self, make_session, backend, local_store, app_config):
        """Test an unregistered device adopts name and phone from its existing record"""
        guest_id = GuestStore(local_store, app_config.backend.page_id).get_or_create_guest_id()
        backend.seed_record(guest_id, legacy_item_list("hi"), GuestName="Jane", GuestPhone="+15550100")

        session = make_session()
        session.open(poll=False)

        assert session.is_registered
        assert session.guest.name == "Jane"
        assert [m.text for m in session.messages] == ["hi"]


class TestDeviceIsolation:
    """Test guests on different browsers sharing one store file"""

    def test_devices_get_separate_guests(self, make_session, backend):
        """Test each device keeps its own guest id and registration"""
        alice = make_session(with_ai=False, device_id="device_a")
        alice.open(poll=False)
        alice.register("Alice", "111")

        bob = make_session(with_ai=False, device_id="device_b")
        bob.open(poll=False)

        assert bob.guest.id != alice.guest.id
        assert bob.is_registered is False
        assert bob.guest.name == ""
        assert bob.messages == []

    def test_same_device_keeps_guest(self, make_session):
        """Test reopening on the same device restores the guest"""
        first = make_session(with_ai=False, device_id="device_a")
        first.open(poll=False)
        first.register("Alice", "111")

        again = make_session(with_ai=False, device_id="device_a")
        again.open(poll=False)

        assert again.guest.id == first.guest.id
        assert again.guest.name == "Alice"

    def test_created_sessions_do_not_share_identity(self, app_config, tmp_path):
        """Test the factory gives every session its own device at the configured path"""
        app_config.storage.db_path = str(tmp_path / "chat.db")

        first = create_chat_session(config=app_config)
        second = create_chat_session(config=app_config)
        first.guest_store.save_guest_info("Alice", "111")

        assert first.guest_store.store is second.guest_store.store
        assert first.guest_store.store.db_path == app_config.storage.db_path
        assert first.guest_store.get_or_create_guest_id() != second.guest_store.get_or_create_guest_id()
        assert second.guest_store.get_stored_guest_info()["name"] == ""

    def test_explicit_device_is_used(self, app_config, tmp_path):
        app_config.storage.db_path = str(tmp_path / "chat.db")

        session = create_chat_session(config=app_config, device_id="device_a")

        assert session.guest_store.device_id == "device_a"


class TestSending:
    """Test optimistic sends and AI replies"""

    def test_full_guest_flow(self, make_session, backend):
        """Test register, send, and a carousel AI reply end up in state and on the record"""
        session = make_session()
        session.open(poll=False)
        session.register("Jane", "+15550100")
        backend.ai_replies.append({
            "success": True,
            "text": "Yes, we have it.",
            "items": [{"title": "Book A", "type": "book", "id": 1, "image": "http://img.test/a.png"}],
            "provider": "x",
        })

        assert session.send_message("Do you sell Book A?")

        assert len(session.messages) == 2
        guest_message, reply = session.messages
        assert guest_message.sender == "guest"
        assert reply.sender == "page"
        assert len(reply.items) == 1
        assert reply.items[0].link == "/book/view/1"
        assert reply.display_type == "carousel"

        persisted, revision = decode_item_list(backend.records[session.guest.id]["ItemList"])
        assert [m.text for m in persisted] == ["Do you sell Book A?", "Yes, we have it."]
        assert revision == session.revision
        assert session.state == "idle"

    def test_fenced_json_reply_is_unwrapped(self, make_session, backend):
        """Test a reply whose text is a fenced JSON payload is displayed as text plus items"""
        session = make_session()
        session.open(poll=False)
        session.register("Jane", "+15550100")
        backend.ai_replies.append({
            "success": True,
            "text": "```json\n{\"text\":\"Hi\",\"items\":[{\"title\":\"Book A\"}]}\n```",
            "provider": "x",
        })

        session.send_message("hello")

        reply = session.messages[-1]
        assert reply.text == "Hi"
        assert [item.title for item in reply.items] == ["Book A"]

    def test_message_visible_before_network_write(self, guest_session, backend):
        """Test the new message is in state when the write reaches the backend"""
        seen = []
        original_update = backend.update_record

        def spying_update(form):
            seen.append([m.text for m in guest_session.messages])
            return original_update(form)

        backend.update_record = spying_update
        guest_session.send_message("hello")

        assert seen and seen[0] == ["hello"]

    def test_failed_write_keeps_message(self, guest_session, backend):
        """Test a failed write is not rolled back and flags the connection"""
        backend.fail_next("update_record", times=3)

        assert guest_session.send_message("hello")

        assert [m.text for m in guest_session.messages] == ["hello"]
        assert guest_session.connection_status == ConnectionStatus.ERROR
        assert guest_session.retry_count == 1
        assert guest_session.message_status(guest_session.messages[0].id) == "failed"
        assert guest_session.is_sending is False

    def test_poll_after_failed_write_resends_message(self, guest_session, backend):
        """Test a poll keeps the undelivered message and writes it to the record"""
        backend.fail_next("update_record", times=3)
        guest_session.send_message("hello")

        guest_session.load_conversation()

        assert [m.text for m in guest_session.messages] == ["hello"]
        persisted, _ = decode_item_list(backend.records[guest_session.guest.id]["ItemList"])
        assert [m.text for m in persisted] == ["hello"]
        assert guest_session.message_status(guest_session.messages[0].id) == "sent"
        assert guest_session.connection_status == ConnectionStatus.CONNECTED

    def test_undelivered_message_survives_failed_resend(self, guest_session, backend):
        """Test the message stays on screen as failed while the backend keeps rejecting writes"""
        backend.fail_next("update_record", times=6)
        guest_session.send_message("hello")

        guest_session.load_conversation()

        assert [m.text for m in guest_session.messages] == ["hello"]
        assert guest_session.message_status(guest_session.messages[0].id) == "failed"

    def test_later_write_clears_failed_status(self, guest_session, backend):
        """Test a successful full-transcript write marks earlier failed messages as sent"""
        backend.fail_next("update_record", times=3)
        guest_session.send_message("hello")
        failed_id = guest_session.messages[0].id
        assert guest_session.message_status(failed_id) == "failed"

        guest_session.send_message("again")

        persisted, _ = decode_item_list(backend.records[guest_session.guest.id]["ItemList"])
        assert [m.text for m in persisted] == ["hello", "again"]
        assert guest_session.message_status(failed_id) == "sent"
        assert guest_session.failed_message_ids == set()

    def test_transient_failure_is_retried(self, guest_session, backend):
        """Test one transient failure is retried and the send succeeds"""
        backend.fail_next("update_record", times=1)

        guest_session.send_message("hello")

        assert guest_session.connection_status == ConnectionStatus.CONNECTED
        persisted, _ = decode_item_list(backend.records[guest_session.guest.id]["ItemList"])
        assert [m.text for m in persisted] == ["hello"]

    def test_rejected_sends(self, guest_session):
        """Test empty text and concurrent sends are ignored"""
        assert guest_session.send_message("   ") is False

        guest_session.is_sending = True
        assert guest_session.send_message("hello") is False
        guest_session.is_sending = False
        assert guest_session.messages == []

    def test_unregistered_guest_cannot_send(self, make_session):
        """Test a guest must register before sending"""
        unregistered = make_session()
        unregistered.open(poll=False)
        assert unregistered.send_message("hello") is False
        assert unregistered.messages == []

    def test_messages_keep_send_order(self, guest_session):
        """Test ids increase and times never go backwards across sends"""
        for text in ("one", "two", "three", "four"):
            guest_session.send_message(text)

        messages = guest_session.messages
        assert [m.text for m in messages] == ["one", "two", "three", "four"]
        assert all(a.id < b.id for a, b in zip(messages, messages[1:]))
        assert all(a.time <= b.time for a, b in zip(messages, messages[1:]))

    def test_no_ai_request_when_disabled(self, make_session, backend):
        """Test turning AI off for the conversation stops AI requests"""
        session = make_session()
        session.open(poll=False)
        session.register("Jane", "+15550100")

        assert session.toggle_ai() is False
        session.send_message("hello")

        assert "ask_ai" not in backend.methods_called()
        assert backend.records[session.guest.id]["IsAIActive"] == "0"

    def test_failed_ai_request_adds_no_reply(self, make_session, backend):
        """Test an AI failure leaves only the guest message"""
        session = make_session()
        session.open(poll=False)
        session.register("Jane", "+15550100")
        backend.ai_replies.append({"success": False, "error": "quota"})

        session.send_message("hello")

        assert [m.sender for m in session.messages] == ["guest"]
        assert session.is_ai_thinking is False

    def test_late_ai_reply_after_close(self, make_session, backend):
        """Test a reply arriving after close is persisted without notifying observers"""
        session = make_session()
        session.open(poll=False)
        session.register("Jane", "+15550100")
        notifications = []
        session.state_changed.subscribe(lambda s: notifications.append(s.state))

        original_ask = backend.ask_ai
        closed_at = []

        def ask_then_close(payload):
            session.close()
            closed_at.append(len(notifications))
            return original_ask(payload)

        backend.ask_ai = ask_then_close
        session.send_message("hello")

        assert len(notifications) == closed_at[0]
        persisted, _ = decode_item_list(backend.records[session.guest.id]["ItemList"])
        assert [m.sender for m in persisted] == ["guest", "page"]


class TestReconciliation:
    """Test how polls merge the server record into local state"""

    def test_stale_poll_does_not_regress(self, guest_session, backend):
        """Test a poll with an older revision is ignored and a newer one is adopted"""
        for text in ("one", "two", "three"):
            guest_session.send_message(text)
        local = list(guest_session.messages)
        record = backend.records[guest_session.guest.id]

        record["ItemList"] = encode_item_list(local[:2], guest_session.revision - 1)
        guest_session.load_conversation()
        assert len(guest_session.messages) == 3

        newer = local + [Message(id=new_message_id(), text="from the team", sender="page")]
        record["ItemList"] = encode_item_list(newer, guest_session.revision + 1)
        guest_session.load_conversation()
        assert [m.text for m in guest_session.messages] == ["one", "two", "three", "from the team"]

    def test_legacy_record_uses_length_rule(self, make_session, backend, local_store, app_config):
        """Test plain arrays replace local state only when at least as long"""
        guest_id = GuestStore(local_store, app_config.backend.page_id).get_or_create_guest_id()
        record = backend.seed_record(guest_id, legacy_item_list("a", "b", "c"), GuestName="Jane", GuestPhone="1")

        session = make_session(with_ai=False)
        session.open(poll=False)
        assert len(session.messages) == 3

        record["ItemList"] = legacy_item_list("a", "b")
        session.load_conversation()
        assert len(session.messages) == 3

        record["ItemList"] = legacy_item_list("a", "b", "c", "d")
        session.load_conversation()
        assert len(session.messages) == 4

    def test_cached_transcript_shown_when_backend_down(self, make_session, backend, local_store, app_config):
        """Test the local mirror paints the transcript when the poll fails"""
        guest_store = GuestStore(local_store, app_config.backend.page_id)
        guest_id = guest_store.get_or_create_guest_id()
        guest_store.save_guest_info("Jane", "+15550100")
        guest_store.save_to_local(guest_id, [Message(id=1, text="cached", sender="guest")])
        backend.fail_next("get_record", times=10)

        session = make_session(with_ai=False)
        session.open(poll=False)

        assert [m.text for m in session.messages] == ["cached"]
        assert session.connection_status == ConnectionStatus.ERROR
        assert session.retry_count == 1

    def test_unreadable_record_is_an_empty_result(self, guest_session, backend):
        """Test an unparseable item list is skipped without flagging the connection"""
        guest_session.send_message("hello")
        backend.records[guest_session.guest.id]["ItemList"] = "{broken"

        guest_session.load_conversation()

        assert [m.text for m in guest_session.messages] == ["hello"]
        assert guest_session.connection_status == ConnectionStatus.CONNECTED
        assert guest_session.retry_count == 0

    def test_successful_poll_resets_retry_count(self, guest_session, backend):
        """Test the retry counter resets once the backend answers again"""
        backend.fail_next("get_record", times=4)
        guest_session.load_conversation()
        assert guest_session.connection_status == ConnectionStatus.ERROR

        guest_session.load_conversation()
        assert guest_session.connection_status == ConnectionStatus.CONNECTED
        assert guest_session.retry_count == 0


class TestAiToggle:
    """Test page-wide and per-conversation AI flags"""

    def test_per_conversation_override(self, make_session, backend):
        """Test turning AI off for one conversation leaves others on the page default"""
        backend.seed_record("guest_x", legacy_item_list("hi"), GuestName="X")
        backend.seed_record("guest_y", legacy_item_list("hello"), GuestName="Y")
        admin = make_session(is_admin=True)
        admin.open(poll=False)

        admin.select_thread("guest_x", "X")
        assert admin.toggle_ai() is False
        assert backend.records["guest_x"]["IsAIActive"] == "0"

        admin.select_thread("guest_y", "Y")
        assert admin.is_ai_enabled is True

        admin.select_thread("guest_x", "X")
        assert admin.is_ai_enabled is False

    def test_admin_global_toggle_uses_settings_record(self, make_session, backend, app_config):
        """Test the page-wide toggle creates then updates the settings record"""
        admin = make_session(is_admin=True)
        admin.open(poll=False)
        settings_id = f"AI_SETTINGS_{app_config.backend.page_id}"

        assert admin.toggle_ai() is False
        settings = backend.records[settings_id]
        assert settings["GuestName"] == AI_SETTINGS_GUEST_NAME
        assert settings["IsAIActive"] == "0"

        assert admin.toggle_ai() is True
        assert backend.records[settings_id]["Id"] == settings["Id"]
        assert backend.records[settings_id]["IsAIActive"] == "1"

    def test_page_default_applies_to_guests(self, make_session, backend, app_config):
        """Test a guest follows the page-wide default when no override is set"""
        backend.seed_record(f"AI_SETTINGS_{app_config.backend.page_id}", '{"isAiEnabled": false}', IsAIActive=0)
        session = make_session()
        session.open(poll=False)
        session.register("Jane", "+15550100")

        assert session.is_ai_enabled is False
        session.send_message("hello")
        assert "ask_ai" not in backend.methods_called()


class TestAdmin:
    """Test admin thread management"""

    def test_thread_list_excludes_settings_record(self, make_session, backend, app_config):
        """Test the AI settings record never shows up as a thread"""
        backend.seed_record("guest_a", legacy_item_list("a"), GuestName="Ann")
        backend.seed_record("guest_b", legacy_item_list("b"), GuestName="Bob")
        backend.seed_record(f"AI_SETTINGS_{app_config.backend.page_id}", "{}", IsAIActive=1)
        admin = make_session(is_admin=True)
        admin.open(poll=False)

        assert sorted(t.guest_id for t in admin.admin_threads) == ["guest_a", "guest_b"]
        assert admin.state == "thread_list"

    def test_delete_thread(self, make_session, backend):
        """Test deleting one of two threads leaves one after the list reloads"""
        first = backend.seed_record("guest_a", legacy_item_list("a"), GuestName="Ann")
        backend.seed_record("guest_b", legacy_item_list("b"), GuestName="Bob")
        admin = make_session(is_admin=True)
        admin.open(poll=False)
        assert len(admin.admin_threads) == 2

        assert admin.delete_record(first["Id"])

        assert [t.guest_id for t in admin.admin_threads] == ["guest_b"]
        assert len(backend.list_threads(0)) == 1

    def test_filter_threads(self, make_session, backend):
        """Test search matches guest name or phone"""
        backend.seed_record("guest_a", "[]", GuestName="Ann Lee", GuestPhone="0911")
        backend.seed_record("guest_b", "[]", GuestName="Bob", GuestPhone="0922")
        admin = make_session(is_admin=True)
        admin.open(poll=False)

        assert [t.guest_name for t in admin.filter_threads("ann")] == ["Ann Lee"]
        assert [t.guest_name for t in admin.filter_threads("0922")] == ["Bob"]
        assert len(admin.filter_threads("")) == 2

    def test_admin_reply(self, make_session, backend):
        """Test an admin reply is written as a page message without asking the AI"""
        backend.seed_record("guest_a", legacy_item_list("Is the shop open?"), GuestName="Ann", GuestPhone="0911")
        admin = make_session(is_admin=True)
        admin.open(poll=False)
        admin.select_thread("guest_a", "Ann")
        assert admin.state == "thread_selected"

        assert admin.send_message("Yes, until 6pm")

        persisted, _ = decode_item_list(backend.records["guest_a"]["ItemList"])
        assert [m.sender for m in persisted] == ["guest", "page"]
        assert backend.records["guest_a"]["GuestPhone"] == "0911"
        assert "ask_ai" not in backend.methods_called()

    def test_delete_message(self, make_session, backend):
        """Test deleting one message rewrites the record without it"""
        backend.seed_record("guest_a", legacy_item_list("keep", "drop"), GuestName="Ann")
        admin = make_session(is_admin=True)
        admin.open(poll=False)
        admin.select_thread("guest_a", "Ann")
        drop_id = admin.messages[1].id

        assert admin.delete_message(drop_id)

        persisted, _ = decode_item_list(backend.records["guest_a"]["ItemList"])
        assert [m.text for m in persisted] == ["keep"]
        assert admin.delete_message(drop_id) is False

    def test_guest_cannot_delete_records(self, guest_session, backend):
        """Test whole-record deletion is admin only"""
        assert guest_session.delete_record() is False
        assert "delete_record" not in backend.methods_called()


class TestLifecycle:
    """Test session lifecycle and presentation helpers"""

    def test_open_and_close_drive_poll_loop(self, make_session, app_config):
        """Test open starts the poll loop at the configured interval and close stops it"""
        poll_factory = Mock()
        session = make_session(poll_loop_factory=poll_factory)

        session.open()
        args, _ = poll_factory.call_args
        assert args[0] == app_config.chat.poll_interval
        assert args[1] == session.load_conversation
        poll_factory.return_value.start.assert_called_once()

        session.close()
        poll_factory.return_value.stop.assert_called_once()
        assert session.is_open is False

    def test_end_chat_forgets_guest(self, guest_session, backend, local_store, app_config):
        """Test ending the chat clears local identity but keeps the server record"""
        old_id = guest_session.guest.id

        guest_session.end_chat()

        assert guest_session.is_registered is False
        assert guest_session.messages == []
        assert guest_session.is_open is False
        assert old_id in backend.records
        new_id = GuestStore(local_store, app_config.backend.page_id).get_or_create_guest_id()
        assert new_id != old_id

    def test_waiting_message_rotates(self, guest_session, app_config):
        """Test the waiting text rotates while the guest's message is last"""
        assert guest_session.waiting_message(now=0) is None

        guest_session.send_message("anyone there?")
        interval = app_config.chat.waiting_message_interval
        assert guest_session.waiting_message(now=0) == WAITING_MESSAGES[0]
        assert guest_session.waiting_message(now=interval) == WAITING_MESSAGES[1]

    def test_quick_reply_requests_send(self, guest_session):
        """Test a quick reply narrows the data source and publishes its text"""
        requested = []
        guest_session.reply_requested.subscribe(requested.append)
        reply = QuickReply(id=1, title="Prices?", local_title="", data_source="product")

        text = guest_session.select_quick_reply(reply, language="en")

        assert text == "Prices?"
        assert requested == ["Prices?"]
        assert guest_session.active_data_source == "product"

    def test_feedback_on_ai_answer(self, make_session, backend):
        """Test feedback is sent once and remembered on the message"""
        session = make_session()
        session.open(poll=False)
        session.register("Jane", "+15550100")
        backend.ai_replies.append({"success": True, "text": "Sure", "provider": "x", "answerId": 55})
        session.send_message("hello")
        reply = session.messages[-1]

        assert session.send_feedback(reply.id, True)
        assert backend.feedback == [{"answerId": 55, "isPositive": True}]
        assert session.messages[-1].feedback_given == "positive"
        assert session.send_feedback(reply.id, False) is False
