import enum
import logging
import urllib.parse
from dataclasses import replace
from typing import Iterable, List, Optional, Sequence, Tuple

from playlist import CatalogEntry

LOG = logging.getLogger(__name__)

FAST_DOMAINS = (
    "samsungtv",
    "pluto.tv",
    "rakuten",
    "plex",
    "tubi",
    "roku",
    "amagi",
    "mux",
)

PINNED_KEYWORDS = (
    "fifa+",
    "red bull",
    "espn",
    "sky sport",
    "bein sport",
    "nasa",
    "formula 1",
)

CATEGORY_KEYWORDS = (
    "sport",
    "football",
    "soccer",
    "racing",
    "nba",
    "nfl",
    "tennis",
    "ufc",
    "wwe",
    "league",
    "fox",
    "arena",
    "fight",
    "golf",
)

FAST_DOMAIN_BONUS = 50
SECURE_BONUS = 10
PINNED_BONUS = 2000
KNOWN_GOOD_BONUS = 100
KNOWN_GOOD_CAPACITY = 50


class ViewMode(str, enum.Enum):
    CURATED = "curated"
    ALL = "all"


class KnownGoodSet:
    """Ids of channels that played before, most recent first, bounded.

    ``store`` is anything with ``read()`` and ``write(ids)``; both may fail
    or be missing without breaking playback.
    """

    def __init__(self, store=None, capacity: int = KNOWN_GOOD_CAPACITY):
        self._store = store
        self.capacity = max(1, int(capacity))
        self._ids: List[str] = []
        if store is not None:
            try:
                loaded = store.read()
            except Exception as err:
                LOG.warning("Could not read known-good channels: %s", err)
                loaded = []
            if isinstance(loaded, (list, tuple)):
                for cid in loaded:
                    if isinstance(cid, str) and cid not in self._ids:
                        self._ids.append(cid)
            self._ids = self._ids[:self.capacity]

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def __iter__(self):
        return iter(list(self._ids))

    def ids(self) -> List[str]:
        return list(self._ids)

    def add(self, channel_id: str) -> bool:
        """Put ``channel_id`` at the front unless already known. Returns True if added."""
        if channel_id in self._ids:
            return False
        self._ids = [channel_id] + self._ids[:self.capacity - 1]
        if self._store is not None:
            try:
                self._store.write(list(self._ids))
            except Exception as err:
                LOG.warning("Could not persist known-good channels: %s", err)
        return True


def _host(address: str) -> str:
    try:
        return (urllib.parse.urlparse(address).hostname or "").lower()
    except ValueError:
        return ""


def static_score(
    entry: CatalogEntry,
    fast_domains: Sequence[str] = FAST_DOMAINS,
    pinned_keywords: Sequence[str] = PINNED_KEYWORDS,
) -> Tuple[int, bool]:
    score = 0
    pinned = False
    host = _host(entry.address)
    if host and any(d.lower() in host for d in fast_domains):
        score += FAST_DOMAIN_BONUS
    if entry.address.lower().startswith("https://"):
        score += SECURE_BONUS
    lower_name = entry.name.lower()
    if any(k.lower() in lower_name for k in pinned_keywords):
        pinned = True
        score += PINNED_BONUS
    return score, pinned


def apply_heuristics(
    entries: Iterable[CatalogEntry],
    fast_domains: Sequence[str] = FAST_DOMAINS,
    pinned_keywords: Sequence[str] = PINNED_KEYWORDS,
) -> List[CatalogEntry]:
    out: List[CatalogEntry] = []
    for entry in entries:
        if entry.is_manual:
            out.append(replace(entry, is_pinned=True))
            continue
        score, pinned = static_score(entry, fast_domains, pinned_keywords)
        out.append(replace(entry, score=score, is_pinned=pinned))
    return out


def score(entry: CatalogEntry, known_good: Optional[KnownGoodSet] = None) -> int:
    bonus = KNOWN_GOOD_BONUS if known_good is not None and entry.id in known_good else 0
    return entry.score + bonus


def rank(entries: Iterable[CatalogEntry], known_good: Optional[KnownGoodSet] = None) -> List[CatalogEntry]:
    # sorted() is stable: equal scores keep feed order
    return sorted(entries, key=lambda e: score(e, known_good), reverse=True)


def looks_like_url(text: str) -> bool:
    return (text or "").strip().lower().startswith("http")


def filter_catalog(
    entries: Iterable[CatalogEntry],
    mode: ViewMode = ViewMode.CURATED,
    search_text: str = "",
    category_keywords: Sequence[str] = CATEGORY_KEYWORDS,
    limit: Optional[int] = None,
) -> List[CatalogEntry]:
    mode = ViewMode(mode)
    keywords = [k.lower() for k in category_keywords]
    out: List[CatalogEntry] = []
    for entry in entries:
        if mode is ViewMode.CURATED and not (entry.is_pinned or entry.is_manual):
            txt = (entry.name + entry.group).lower()
            if not any(k in txt for k in keywords):
                continue
        out.append(entry)

    query = (search_text or "").strip().lower()
    if query and not looks_like_url(query):
        out = [e for e in out if query in e.name.lower()]

    if limit is not None:
        out = out[:max(0, int(limit))]
    return out


def visible_catalog(
    entries: Iterable[CatalogEntry],
    known_good: Optional[KnownGoodSet] = None,
    mode: ViewMode = ViewMode.CURATED,
    search_text: str = "",
    category_keywords: Sequence[str] = CATEGORY_KEYWORDS,
    limit: Optional[int] = None,
) -> List[CatalogEntry]:
    return filter_catalog(rank(entries, known_good), mode, search_text, category_keywords, limit)


def signal_badge(entry: CatalogEntry, known_good: Optional[KnownGoodSet] = None) -> str:
    if entry.is_manual:
        return "manual"
    if (known_good is not None and entry.id in known_good) or entry.score >= FAST_DOMAIN_BONUS:
        return "verified"
    return "unverified"
