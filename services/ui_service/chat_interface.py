"""
Chat interface service - Streamlit components for the customer chat widget.

The components only read session state and call session operations; all
conversation logic lives in ChatSession.
"""

import streamlit as st
from typing import List, Optional

from services.catalog_service.quick_replies import QuickReplyService
from services.chat_service.models import ConnectionStatus, Item, Message, SENDER_GUEST, SENDER_PAGE
from services.chat_service.sync_engine import ChatSession
from utils.logging_config import get_logger

CAROUSEL_COLUMNS = 3

_STATUS_LABELS = {
    ConnectionStatus.CONNECTING: "🟡 Connecting...",
    ConnectionStatus.CONNECTED: "🟢 Online",
    ConnectionStatus.ERROR: "🔴 Connection problem, retrying",
}


class ChatInterface:
    """
    Renders one chat session: status header, registration form, transcript,
    quick replies, admin thread list and the message input.
    """

    def __init__(self, session: ChatSession, quick_replies: Optional[QuickReplyService] = None, language: str = "mm"):
        self.logger = get_logger(__name__)
        self.session = session
        self.quick_replies = quick_replies
        self.language = language
        # Quick replies ask for a send through the session's reply channel
        self._unsubscribe = session.reply_requested.subscribe(self._on_reply_requested)

    def detach(self):
        self._unsubscribe()

    def _on_reply_requested(self, text: str):
        self.session.send_message(text)

    # -- header ----------------------------------------------------------

    def render_status_header(self):
        """App name, connection banner, AI toggle and leave/back buttons"""
        session = self.session
        title_col, toggle_col, action_col = st.columns([3, 1, 1])

        with title_col:
            st.markdown(f"### 💬 {session.config.backend.app_name}")
            label = _STATUS_LABELS.get(session.connection_status, "")
            if session.connection_status == ConnectionStatus.ERROR:
                st.caption(f"{label} (attempt {session.retry_count})")
            else:
                st.caption(label)

        with toggle_col:
            if session.is_admin or session.is_registered:
                help_text = "Page-wide default" if session.is_admin and session.selected_thread is None else "This conversation"
                enabled = st.toggle("AI", value=session.is_ai_enabled, key="ai_toggle", help=help_text)
                if enabled != session.is_ai_enabled:
                    session.toggle_ai()
                    st.rerun()

        with action_col:
            if session.is_admin and session.selected_thread is not None:
                if st.button("⬅ Threads", key="back_to_threads", use_container_width=True):
                    session.clear_selection()
                    st.rerun()
            elif not session.is_admin and session.is_registered:
                if st.button("End chat", key="end_chat", use_container_width=True):
                    session.end_chat()
                    st.rerun()

    # -- registration ----------------------------------------------------

    def render_registration_form(self):
        st.info("Please introduce yourself so our team can get back to you.")
        with st.form("guest_registration"):
            name = st.text_input("Name *")
            phone = st.text_input("Phone *")
            email = st.text_input("Email")
            company = st.text_input("Company")
            submitted = st.form_submit_button("Start chat", type="primary", use_container_width=True)

        if submitted:
            if self.session.register(name, phone, email, company):
                st.rerun()
            else:
                st.error("Name and phone are required.")

    # -- transcript ------------------------------------------------------

    def _render_items(self, message: Message):
        items: List[Item] = message.items or []
        if message.display_type == "list":
            for item in items:
                title = f"[{item.title}]({item.link})" if item.link else item.title
                detail = f" - {item.price}" if item.price is not None else ""
                st.markdown(f"- {title}{detail}")
            return

        for start in range(0, len(items), CAROUSEL_COLUMNS):
            cols = st.columns(CAROUSEL_COLUMNS)
            for col, item in zip(cols, items[start:start + CAROUSEL_COLUMNS]):
                with col:
                    image = item.image or item.thumbnail
                    if image:
                        st.image(image, use_container_width=True)
                    st.markdown(f"**[{item.title}]({item.link})**" if item.link else f"**{item.title}**")
                    if item.author:
                        st.caption(item.author)
                    if item.price is not None:
                        st.caption(str(item.price))

    def _render_message_actions(self, message: Message):
        session = self.session
        if message.answer_id is not None and not session.is_admin:
            if message.feedback_given:
                st.caption("Thanks for your feedback" if message.feedback_given == "positive" else "Feedback noted")
            else:
                up, down, _ = st.columns([1, 1, 8])
                if up.button("👍", key=f"fb_up_{message.id}"):
                    session.send_feedback(message.id, True)
                    st.rerun()
                if down.button("👎", key=f"fb_down_{message.id}"):
                    session.send_feedback(message.id, False)
                    st.rerun()

        if session.is_admin:
            if st.session_state.get("confirm_delete_message") == message.id:
                confirm_col, cancel_col, _ = st.columns([2, 2, 6])
                if confirm_col.button("Delete", key=f"confirm_delete_{message.id}", type="primary"):
                    st.session_state.confirm_delete_message = None
                    session.delete_message(message.id)
                    st.rerun()
                if cancel_col.button("Cancel", key=f"cancel_delete_{message.id}"):
                    st.session_state.confirm_delete_message = None
                    st.rerun()
            elif st.button("🗑️", key=f"delete_{message.id}", help="Delete message"):
                st.session_state.confirm_delete_message = message.id
                st.rerun()

    def render_chat_messages(self):
        """Render the transcript, oldest first"""
        session = self.session
        # Guests see themselves as "user"; admins answer as the page
        own_sender = SENDER_PAGE if session.is_admin else SENDER_GUEST
        for message in list(session.messages):
            role = "user" if message.sender == own_sender else "assistant"
            with st.chat_message(role):
                st.markdown(message.text)
                if message.has_items:
                    self._render_items(message)
                status = session.message_status(message.id)
                if status != "sent":
                    st.caption("Sending..." if status == "sending" else "⚠️ Not delivered yet")
                self._render_message_actions(message)

        if session.is_ai_thinking:
            with st.chat_message("assistant"):
                st.markdown("_Thinking..._")
        else:
            waiting = session.waiting_message()
            if waiting:
                st.caption(waiting)

    def render_live_messages(self):
        """Transcript that re-renders on the poll interval to pick up new messages"""
        interval = self.session.config.chat.poll_interval
        st.fragment(run_every=interval)(self.render_chat_messages)()

    # -- quick replies ---------------------------------------------------

    def render_quick_replies(self):
        if self.quick_replies is None or self.session.messages:
            return
        replies = self.quick_replies.display_questions(self.language)
        if not replies:
            return

        st.markdown("**💡 Common questions**")
        cols = st.columns(min(len(replies), 3))
        for i, reply in enumerate(replies):
            with cols[i % len(cols)]:
                if st.button(reply.text_for(self.language), key=f"quick_reply_{reply.id}_{i}", use_container_width=True):
                    self.session.select_quick_reply(reply, self.language)
                    st.rerun()

    # -- admin -----------------------------------------------------------

    def render_thread_list(self):
        session = self.session
        session.search_query = st.text_input("Search by name or phone", value=session.search_query, key="thread_search")
        threads = session.filter_threads()
        st.caption(f"📊 {len(threads)} conversation{'s' if len(threads) != 1 else ''}")

        for thread in threads:
            open_col, delete_col = st.columns([5, 1])
            label = f"💬 {thread.guest_name or thread.guest_id}"
            if thread.guest_phone:
                label += f" · {thread.guest_phone}"
            if open_col.button(label, key=f"thread_{thread.guest_id}", use_container_width=True):
                session.select_thread(thread.guest_id, thread.guest_name)
                st.rerun()
            if thread.id and delete_col.button("🗑️", key=f"delete_thread_{thread.id}", help="Delete conversation"):
                session.delete_record(thread.id)
                st.rerun()

    # -- input -----------------------------------------------------------

    def render_input(self):
        session = self.session
        placeholder = "Reply to guest..." if session.is_admin else "Type your message..."
        text = st.chat_input(placeholder, disabled=session.is_sending)
        if text:
            session.send_message(text)
            st.rerun()

    # -- page ------------------------------------------------------------

    def render(self):
        session = self.session
        self.render_status_header()

        if session.is_admin and session.selected_thread is None:
            self.render_thread_list()
            return

        if not session.is_admin and not session.is_registered:
            self.render_registration_form()
            return

        self.render_live_messages()
        self.render_quick_replies()
        self.render_input()
