"""
AI response gateway - routes the running conversation to the backend AI
endpoint and normalizes whatever comes back.

Provider selection and prompting happen server-side; the client only sees an
opaque provider tag. Any failure degrades to "no AI reply".
"""

import json
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Tuple

from config.app_config import AppConfig, get_config
from infrastructure.external.chat_backend_client import BackendError, CustomerChatClient
from infrastructure.resilience.retry_service import (
    CircuitBreakerError, RetryPolicy, RetryService, get_retry_service
)
from services.ai_service.models import AiResponse
from services.catalog_service.cache_service import format_search_results_for_ai
from services.chat_service.models import Item, Message, SENDER_GUEST
from utils.logging_config import get_logger

# Candidate image fields on a full catalog record, in priority order
IMAGE_FIELDS = ("Image", "ImgOne", "Thumbnail", "image")

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)
_BULLET_RE = re.compile(r"^\*\s*")

AUTO_LINK_MAX_ITEMS = 3
LIST_DISPLAY_THRESHOLD = 5


def unwrap_structured_text(text: Optional[str], items: Optional[list]) -> Tuple[Optional[str], Optional[list]]:
    """
    Some providers answer with the whole {text, items} payload JSON-encoded in
    the text field, often inside a code fence. Unwrap it so the guest never
    sees raw JSON. Text that only looks like JSON is returned unchanged.
    """
    if not text:
        return text, items

    stripped = text.strip()
    if not (stripped.startswith("{") or stripped.startswith("```")):
        return text, items

    cleaned = _FENCE_RE.sub("", stripped).strip()
    try:
        parsed = json.loads(cleaned)
    except ValueError as e:
        get_logger(__name__).warning(f"AI text looked like JSON but did not parse: {e}")
        return text, items

    if not isinstance(parsed, dict):
        return text, items
    if parsed.get("text"):
        text = str(parsed["text"])
    if isinstance(parsed.get("items"), list):
        items = parsed["items"]
    return text, items


def format_image_url(image: str, image_base_url: str) -> str:
    if image.startswith("http"):
        return image
    return f"{image_base_url}/uploads/{image.lstrip('/')}"


def display_type_for(items: Optional[List[Item]]) -> str:
    return "list" if items and len(items) > LIST_DISPLAY_THRESHOLD else "carousel"


def extract_bullet_titles(text: str) -> List[str]:
    titles = []
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("*"):
            continue
        title = _BULLET_RE.sub("", line).strip().strip("*").strip()
        if len(title) > 2:
            titles.append(title)
    return titles


def auto_link_items(text: str, items: List[Item], catalog) -> List[Item]:
    """
    When the AI lists things as bullets but attaches few cards, look the
    bullet titles up in the catalog cache and attach the matches.
    """
    if catalog is None or len(items) >= AUTO_LINK_MAX_ITEMS or "*" not in text:
        return items

    linked = list(items)
    known_ids = {item.id for item in items if item.id is not None}
    for title in extract_bullet_titles(text):
        matches = catalog.find_items_by_title(title)
        if not matches:
            continue
        best = matches[0]
        raw = dict(best.item)
        raw.setdefault("type", best.source)
        item = Item.from_raw(raw)
        if item.id is not None:
            if item.id in known_ids:
                continue
            item.link = item.link or f"/{best.source}/view/{item.id}"
            known_ids.add(item.id)
        linked.append(item)

    if len(linked) > len(items):
        get_logger(__name__).info(f"Auto-linked {len(linked) - len(items)} catalog items from AI text")
    return linked


class AIGateway:
    """
    Client side of the backend AI endpoint.
    """

    def __init__(
        self,
        client: CustomerChatClient,
        config: Optional[AppConfig] = None,
        retry_service: Optional[RetryService] = None,
        retry_policy: Optional[RetryPolicy] = None,
        catalog=None
    ):
        self.logger = get_logger(__name__)
        self.client = client
        self.config = config or get_config()
        self.retry_service = retry_service or get_retry_service()
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.config.retry)
        self.catalog = catalog
        self.circuit_breaker = self.retry_service.get_circuit_breaker(
            f"ai_{self.config.backend.page_id}", failure_threshold=5, recovery_timeout=60
        )

    def _call(self, func):
        """Retry transient failures; an open circuit fails immediately"""
        return self.retry_service.retry_with_backoff(
            lambda: self.circuit_breaker.execute(func), policy=self.retry_policy
        )

    def _search_context(self, messages: List[Message]) -> str:
        if self.catalog is None:
            return ""
        last_guest = next((m for m in reversed(messages) if m.sender == SENDER_GUEST), None)
        if last_guest is None or not last_guest.text.strip():
            return ""
        results = self.catalog.search_cached_data(last_guest.text)
        if not results:
            return ""
        return f'\n[SEARCH_RESULTS for "{last_guest.text}"]\n{format_search_results_for_ai(results, last_guest.text)}\n'

    def _enrich_item(self, raw: Dict[str, Any]) -> Item:
        item = Item.from_raw(raw)
        if item.type and item.id is not None and not item.link:
            item.link = f"/{item.type}/view/{item.id}"

        if not item.image and item.type and item.id is not None:
            try:
                record = self.client.get_catalog_item(item.type, item.id)
            except BackendError as e:
                self.logger.debug(f"Image lookup failed for {item.type}/{item.id}: {e}")
                record = None
            if record:
                image = next((record[f] for f in IMAGE_FIELDS if isinstance(record.get(f), str) and record[f]), None)
                if image:
                    item.image = format_image_url(image, self.config.backend.image_url)
        return item

    def enrich_items(self, raw_items: List[Any]) -> List[Item]:
        raw_items = [raw for raw in raw_items if isinstance(raw, dict)]
        if not raw_items:
            return []
        with ThreadPoolExecutor(max_workers=min(8, len(raw_items))) as pool:
            return list(pool.map(self._enrich_item, raw_items))

    def get_ai_response(
        self,
        messages: List[Message],
        page_context: Optional[str] = None,
        data_source: Optional[str] = None
    ) -> AiResponse:
        """
        Ask the backend AI for the next reply in the conversation.

        Returns AiResponse.empty() on any network, HTTP or payload failure.
        """
        context = (page_context or "") + self._search_context(messages)
        payload = {
            "messages": [m.to_dict() for m in messages],
            "pageContext": context,
            "dataSource": data_source,
        }

        try:
            data = self._call(lambda: self.client.ask_ai(payload))
        except CircuitBreakerError as e:
            self.logger.warning(f"AI endpoint skipped: {e}")
            return AiResponse.empty()
        except BackendError as e:
            self.logger.error(f"AI request failed: {e}")
            return AiResponse.empty()

        if not data.get("success"):
            self.logger.error(f"AI service error: {data.get('error')}")
            return AiResponse.empty()

        text, raw_items = unwrap_structured_text(data.get("text"), data.get("items"))
        items = self.enrich_items(raw_items) if isinstance(raw_items, list) else None

        self.logger.info(f"AI reply received via {data.get('provider')}", extra={
            "provider": data.get("provider"),
            "item_count": len(items or []),
        })
        return AiResponse(
            text=text if isinstance(text, str) else None,
            items=items or None,
            provider=data.get("provider"),
            answer_id=data.get("answerId"),
        )

    def send_feedback(self, answer_id: Any, positive: bool) -> bool:
        """Thumbs up/down on a stored AI answer; False on any failure"""
        try:
            data = self._call(lambda: self.client.send_ai_feedback({"answerId": answer_id, "isPositive": positive}))
        except (BackendError, CircuitBreakerError) as e:
            self.logger.error(f"AI feedback failed: {e}")
            return False
        return data.get("success") is True
