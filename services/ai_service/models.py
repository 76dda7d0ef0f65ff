"""
AI service data models.
"""

from dataclasses import dataclass
from typing import Any, List, Optional

from services.chat_service.models import Item


@dataclass
class AiResponse:
    """Normalized reply of the backend AI endpoint; text None means "no reply" """
    text: Optional[str] = None
    items: Optional[List[Item]] = None
    provider: Optional[str] = None
    answer_id: Optional[Any] = None

    @property
    def has_reply(self) -> bool:
        return bool(self.text)

    @classmethod
    def empty(cls) -> 'AiResponse':
        return cls()
