"""
Quick reply suggestions ("common questions") configured per page.
"""

from dataclasses import dataclass
from typing import List, Optional

from infrastructure.external.chat_backend_client import BackendError, CustomerChatClient
from utils.logging_config import get_logger


@dataclass
class QuickReply:
    id: Optional[int]
    title: str
    local_title: str = ""
    data_source: str = ""

    def text_for(self, language: str) -> str:
        """Title in the requested language; "mm" falls back to the English title"""
        if language == "mm":
            return self.local_title or self.title
        return self.title


class QuickReplyService:
    """Loads the page's quick replies once and serves them per language"""

    def __init__(self, client: CustomerChatClient, page_id: int):
        self.logger = get_logger(__name__)
        self.client = client
        self.page_id = page_id
        self._replies: Optional[List[QuickReply]] = None

    def fetch_quick_replies(self, force: bool = False) -> List[QuickReply]:
        if self._replies is not None and not force:
            return self._replies
        try:
            rows = self.client.get_quick_replies(self.page_id)
        except BackendError as e:
            self.logger.error(f"Quick replies fetch failed: {e}")
            return self._replies or []

        self._replies = [
            QuickReply(
                id=row.get("Id"),
                title=str(row.get("Title") or ""),
                local_title=str(row.get("BurmeseTitle") or ""),
                data_source=str(row.get("DataSource") or ""),
            )
            for row in rows
        ]
        return self._replies

    def display_questions(self, language: str = "mm") -> List[QuickReply]:
        """Replies that have a title in the requested language"""
        return [reply for reply in self.fetch_quick_replies() if reply.text_for(language)]
