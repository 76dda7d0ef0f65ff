"""
AI service - client side of the backend AI endpoint.
"""

from .ai_gateway import AIGateway, auto_link_items, display_type_for, unwrap_structured_text
from .models import AiResponse

__all__ = [
    'AIGateway',
    'AiResponse',
    'auto_link_items',
    'display_type_for',
    'unwrap_structured_text'
]
