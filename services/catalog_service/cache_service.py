"""
Catalog cache service - time-bounded local snapshot of the page's business data.

The snapshot grounds the AI (as a condensed text context) and backs local
keyword search for quick replies and auto-linking. A refresh always replaces
the whole snapshot; entries are never merged incrementally.
"""

import json
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from config.app_config import AppConfig, get_config
from infrastructure.external.chat_backend_client import (
    BackendError, CustomerChatClient, decode_json_field
)
from infrastructure.storage.local_store import LocalStore
from utils.logging_config import get_logger, log_execution_time

SEARCH_FIELDS = ("Title", "Description", "Name", "Subtitle", "Author", "Category", "Tags")

_LATIN_RE = re.compile(r"^[A-Za-z0-9\s.,!?-]+$")


@dataclass
class CatalogCacheEntry:
    """Items of one catalog source as fetched at `fetched_at`"""
    data: List[Dict[str, Any]]
    source: str
    fetched_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "source": self.source, "fetchedAt": self.fetched_at}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> 'CatalogCacheEntry':
        data = raw.get("data")
        return cls(
            data=[row for row in data if isinstance(row, dict)] if isinstance(data, list) else [],
            source=str(raw.get("source") or ""),
            fetched_at=float(raw.get("fetchedAt") or 0),
        )


@dataclass
class CatalogSnapshot:
    """Result of a catalog refresh"""
    context: str = ""
    sources: List[str] = field(default_factory=list)
    contact_info: Optional[Dict[str, Any]] = None
    data: Dict[str, List[Dict[str, Any]]] = field(default_factory=dict)


@dataclass
class SearchResult:
    item: Dict[str, Any]
    source: str
    score: float
    matched_fields: List[str] = field(default_factory=list)


def calculate_similarity(query: str, text: str) -> float:
    """
    Similarity score between a query and a field value (0-100).

    Exact match scores 100, substring overlap 70-95, word overlap up to 60 for
    Latin text, and shared characters up to 80 for scripts without spaces.
    """
    if not text or not query:
        return 0.0

    query_lower = query.lower().strip()
    text_lower = text.lower().strip()
    if not query_lower or not text_lower:
        return 0.0

    if text_lower == query_lower:
        return 100.0

    if query_lower in text_lower or text_lower in query_lower:
        overlap = min(len(query_lower), len(text_lower)) / max(len(query_lower), len(text_lower))
        return 70 + overlap * 25

    if _LATIN_RE.match(query_lower):
        query_words = query_lower.split()
        text_words = text_lower.split()
        matched = 0
        for q_word in query_words:
            if len(q_word) < 2:
                continue
            if any(q_word in t_word or t_word in q_word for t_word in text_words):
                matched += 1
        return (matched / len(query_words)) * 60 if query_words else 0.0

    short, long = sorted((query_lower, text_lower), key=len)
    matches = sum(1 for ch in short if ch in long)
    return (matches / len(short)) * 80


class CatalogCacheService:
    """
    Fetches the page's catalog sources and contact info, keeps them in local
    storage for a bounded time window, and searches them locally.
    """

    def __init__(
        self,
        client: CustomerChatClient,
        store: LocalStore,
        config: Optional[AppConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        self.logger = get_logger(__name__)
        self.client = client
        self.store = store
        self.config = config or get_config()
        self.page_id = self.config.backend.page_id
        self._clock = clock

    # -- keys ------------------------------------------------------------

    def _cache_key(self) -> str:
        return f"ChatDataCache_{self.page_id}"

    def _timestamp_key(self) -> str:
        return f"ChatDataCacheTime_{self.page_id}"

    def _context_key(self) -> str:
        return f"AiContext_{self.page_id}"

    def _sources_key(self) -> str:
        return f"ChatSources_{self.page_id}"

    def _contact_key(self) -> str:
        return f"ChatContactInfo_{self.page_id}"

    # -- cache state -----------------------------------------------------

    def is_cache_valid(self) -> bool:
        """True iff the last refresh happened within the freshness window"""
        raw = self.store.get_item(self._timestamp_key())
        if not raw:
            return False
        try:
            fetched_at = float(raw)
        except ValueError:
            return False
        return self._clock() - fetched_at < self.config.cache.expiry_seconds

    def get_cache_entries(self) -> Dict[str, CatalogCacheEntry]:
        blob = self.store.get_json(self._cache_key())
        if not isinstance(blob, dict):
            return {}
        return {
            source: CatalogCacheEntry.from_dict(entry)
            for source, entry in blob.items() if isinstance(entry, dict)
        }

    def get_cached_data(self) -> Dict[str, List[Dict[str, Any]]]:
        return {source: entry.data for source, entry in self.get_cache_entries().items()}

    def get_cached_context(self) -> str:
        return self.store.get_item(self._context_key()) or ""

    def get_cached_sources(self) -> List[str]:
        sources = self.store.get_json(self._sources_key())
        return [s for s in sources if isinstance(s, str)] if isinstance(sources, list) else []

    def get_contact_info(self) -> Optional[Dict[str, Any]]:
        contact = self.store.get_json(self._contact_key())
        return contact if isinstance(contact, dict) else None

    def get_cached_snapshot(self) -> CatalogSnapshot:
        return CatalogSnapshot(
            context=self.get_cached_context(),
            sources=self.get_cached_sources(),
            contact_info=self.get_contact_info(),
            data=self.get_cached_data(),
        )

    def clear_cache(self) -> None:
        for key in (self._cache_key(), self._timestamp_key(), self._context_key(),
                    self._sources_key(), self._contact_key()):
            self.store.remove_item(key)

    def get_items_by_source(self, source: str) -> List[Dict[str, Any]]:
        return self.get_cached_data().get(source, [])

    # -- refresh ---------------------------------------------------------

    def _discover_sources(self) -> List[str]:
        """Catalog sources used by the page's blocks, plus the core sources"""
        cache_config = self.config.cache
        try:
            page = self.client.get_page(self.page_id)
            blocks = decode_json_field(page.get("ItemList")) if page else None
        except BackendError as e:
            self.logger.warning(f"Could not read page blocks, using default sources: {e}")
            blocks = None

        if not isinstance(blocks, list):
            return ["brand", "product", "service", "article"]

        pattern = re.compile(r"^(" + "|".join(cache_config.block_sources) + ")", re.IGNORECASE)
        discovered = []
        for block in blocks:
            name = block.get("Block", "") if isinstance(block, dict) else ""
            match = pattern.match(str(name))
            if match:
                discovered.append(match.group(0).lower())

        # Keep first-seen order, drop duplicates
        return list(dict.fromkeys(discovered + list(cache_config.core_sources)))

    def _fetch_source(self, source: str) -> Optional[Any]:
        try:
            return self.client.get_catalog(source, self.page_id)
        except BackendError as e:
            self.logger.debug(f"Catalog source {source} unavailable: {e}")
            return None

    def _build_context(self, data: Dict[str, List[Dict[str, Any]]], contact: Optional[Dict[str, Any]]) -> str:
        app_name = self.config.backend.app_name
        lines = [f"--- OFFICIAL SYSTEM CONTEXT (System ID: {self.page_id}) ---", f"Website Name: {app_name}"]

        if contact:
            lines.append("")
            lines.append("[BUSINESS_PROFILE]")
            lines.append(f"Title: {contact.get('Title') or app_name}")
            for key, label in (("Address", "Address"), ("PhoneOne", "Phone"), ("Email", "Email"),
                               ("OpenTime", "Opening Hours"), ("Description", "About")):
                if contact.get(key):
                    lines.append(f"{label}: {contact[key]}")

        limit = self.config.cache.context_item_limit
        for source, items in data.items():
            condensed = [
                {
                    "Id": item.get("Id"),
                    "Title": item.get("Title"),
                    "Description": str(item.get("Description") or "")[:100] or None,
                    "Price": item.get("Price"),
                    "Author": item.get("Author"),
                    "Category": item.get("Category"),
                }
                for item in items[:limit]
            ]
            lines.append("")
            lines.append(f"[DATASOURCE: {source}]")
            lines.append(json.dumps(condensed, ensure_ascii=False, default=str))

        return "\n".join(lines) + "\n"

    def fetch_and_cache_data(self) -> CatalogSnapshot:
        """
        Fetch every catalog source and the contact info in parallel, build the
        AI context, and replace the cached snapshot.

        Never raises. When nothing could be fetched the previous snapshot is
        kept and returned.
        """
        with log_execution_time(self.logger, "catalog refresh", page_id=self.page_id):
            sources = self._discover_sources()
            to_fetch = ["contactInfo"] + sources

            with ThreadPoolExecutor(max_workers=min(8, len(to_fetch))) as pool:
                results = dict(zip(to_fetch, pool.map(self._fetch_source, to_fetch)))

            contact_rows = results.pop("contactInfo", None) or []
            contact = contact_rows[0] if contact_rows else None
            data = {source: rows for source, rows in results.items() if rows}

            if not data and contact is None:
                self.logger.warning("Catalog refresh returned nothing, keeping previous cache")
                return self.get_cached_snapshot()

            fetched_at = self._clock()
            context = self._build_context(data, contact)
            entries = {source: CatalogCacheEntry(rows, source, fetched_at).to_dict() for source, rows in data.items()}

            self.store.set_json(self._cache_key(), entries)
            self.store.set_item(self._timestamp_key(), str(fetched_at))
            self.store.set_item(self._context_key(), context)
            self.store.set_json(self._sources_key(), list(data.keys()))
            if contact is not None:
                self.store.set_json(self._contact_key(), contact)

            self.logger.info(f"Catalog cached for page {self.page_id}. Sources: {', '.join(data.keys())}")
            return CatalogSnapshot(context=context, sources=list(data.keys()), contact_info=contact, data=data)

    def get_or_refresh_cache(self) -> Dict[str, List[Dict[str, Any]]]:
        """Cached catalog data if still fresh, otherwise a freshly fetched one"""
        if self.is_cache_valid():
            cached = self.get_cached_data()
            if cached:
                self.logger.debug("Using valid catalog cache")
                return cached

        self.logger.info("Catalog cache expired or empty, fetching fresh data")
        return self.fetch_and_cache_data().data

    def get_or_refresh_snapshot(self) -> CatalogSnapshot:
        if self.is_cache_valid() and self.get_cached_context():
            return self.get_cached_snapshot()
        return self.fetch_and_cache_data()

    # -- search ----------------------------------------------------------

    def search_cached_data(self, query: str, sources: Optional[List[str]] = None) -> List[SearchResult]:
        """Rank cached items against a query; best results first, capped"""
        cache = self.get_cached_data()
        if not cache or not query or not query.strip():
            return []

        min_score = self.config.cache.min_score
        results = []
        for source in (sources if sources is not None else list(cache.keys())):
            for item in cache.get(source, []):
                best_score = 0.0
                matched_fields = []
                for field_name in SEARCH_FIELDS:
                    value = item.get(field_name)
                    if not isinstance(value, str):
                        continue
                    score = calculate_similarity(query, value)
                    best_score = max(best_score, score)
                    if score >= min_score:
                        matched_fields.append(field_name)

                if best_score >= min_score:
                    results.append(SearchResult(item, source, best_score, matched_fields))

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:self.config.cache.search_limit]

    def find_items_by_title(self, title: str) -> List[SearchResult]:
        """Items whose title equals, contains, or is contained in `title`"""
        wanted = title.lower().strip()
        if not wanted:
            return []

        results = []
        for source, items in self.get_cached_data().items():
            for item in items:
                item_title = str(item.get("Title") or item.get("Name") or "").lower()
                if not item_title:
                    continue
                if item_title == wanted or wanted in item_title or item_title in wanted:
                    results.append(SearchResult(item, source, 100.0, ["Title"]))
        return results


def format_search_results_for_ai(results: List[SearchResult], query: str) -> str:
    """Plain-text listing of search results for inclusion in a prompt"""
    if not results:
        return f'No items found matching "{query}". Please try a different search term.'

    lines = []
    for index, result in enumerate(results[:5], 1):
        item = result.item
        line = f"{index}. [{result.source.upper()}] {item.get('Title') or 'Untitled'}"
        if item.get("Price"):
            line += f" - Price: {item['Price']}"
        if item.get("Description"):
            line += f" - {str(item['Description'])[:50]}..."
        lines.append(line)

    return f'Found {len(results)} items matching "{query}":\n' + "\n".join(lines)
