import streamlit as st

from config.app_config import get_config
from infrastructure.resilience import get_retry_service
from services.catalog_service.quick_replies import QuickReplyService
from services.chat_service.guest_store import new_device_id
from services.chat_service.sync_engine import create_chat_session
from services.ui_service.chat_interface import ChatInterface
from utils.logging_config import initialize_logging, get_logger

# Initialize logging and error tracking
error_tracker = initialize_logging()
logger = get_logger(__name__)

# Get configuration
config = get_config()


def is_admin_request() -> bool:
    """Admin mode needs both the ?admin=1 flag and a configured auth token"""
    return st.query_params.get("admin") == "1" and bool(config.backend.auth_token)


def get_device_id() -> str:
    """Token for this browser session; guest identity and cached messages live under it"""
    if "device_id" not in st.session_state:
        st.session_state.device_id = new_device_id()
    return st.session_state.device_id


def get_chat_interface() -> ChatInterface:
    """One session and interface per browser session, reopened after the guest ends a chat"""
    is_admin = is_admin_request()
    session = st.session_state.get("chat_session")

    if session is None or session.is_admin != is_admin:
        if session is not None:
            session.close()
            st.session_state.chat_interface.detach()
        session = create_chat_session(is_admin=is_admin, config=config, device_id=get_device_id())
        quick_replies = QuickReplyService(session.client, config.backend.page_id)
        st.session_state.chat_session = session
        st.session_state.chat_interface = ChatInterface(session, quick_replies)

    if not session.is_open:
        with st.spinner("Connecting to support..."):
            session.open()

    return st.session_state.chat_interface


def main_app():
    st.set_page_config(page_title=config.backend.app_name, page_icon="💬")

    if not config.chat.enable_customer_chat:
        st.info("Chat is currently unavailable.")
        return

    try:
        interface = get_chat_interface()
    except Exception as e:
        error_tracker.track_error(e, "chat_session_initialization")
        st.error("Failed to start the chat. Please refresh the page.")
        return

    interface.render()

    if config.debug:
        with st.sidebar.expander("Diagnostics"):
            st.json(config.to_dict())
            st.json(error_tracker.get_error_summary())
            st.json(get_retry_service().get_circuit_breaker(f"ai_{config.backend.page_id}").get_state())


main_app()
