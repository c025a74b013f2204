import logging
import os
import re
import time
import uuid
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from routing import wrap_relay

LOG = logging.getLogger(__name__)

DEFAULT_FEED_URL = "https://iptv-org.github.io/iptv/index.m3u"
DEFAULT_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36"
)

UNKNOWN_NAME = "Unknown"
UNCATEGORIZED = "Uncategorized"
MANUAL_SCORE = 10000
CUSTOM_SCORE = 5000

_M3U_ATTR_RE = re.compile(r'([A-Za-z0-9_\-]+)\s*=\s*(?:"([^"]*)"|\'([^\']*)\'|([^",\s]+))')
_ADDRESS_RE = re.compile(r'^[A-Za-z][A-Za-z0-9+.\-]*://\S+$')


class FetchFailure(RuntimeError):
    """Raised when the feed (directly or through the relay) cannot be fetched."""


@dataclass
class CatalogEntry:
    id: str
    name: str
    address: str
    logo_url: str = ""
    group: str = UNCATEGORIZED
    is_manual: bool = False
    is_pinned: bool = False
    score: int = 0


@dataclass
class CatalogLoad:
    entries: List[CatalogEntry] = field(default_factory=list)
    error: Optional[str] = None
    stale: bool = False


def is_address(line: str) -> bool:
    return bool(_ADDRESS_RE.match(line))


def _split_extinf(line: str):
    """Return (attribute segment, name) split on the last comma outside double quotes.

    Apostrophes are ordinary characters here (Children's TV, O'Brien).
    """
    in_quotes = False
    last_comma = -1
    for idx, ch in enumerate(line):
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            last_comma = idx
    if last_comma == -1:
        return line, ""
    return line[:last_comma], line[last_comma + 1:].strip()


def _parse_attrs(segment: str) -> Dict[str, str]:
    colon_idx = segment.find(":")
    if colon_idx == -1:
        return {}
    attrs: Dict[str, str] = {}
    for match in _M3U_ATTR_RE.finditer(segment[colon_idx + 1:]):
        key = match.group(1).lower()
        value = match.group(2) or match.group(3) or match.group(4) or ""
        if key not in attrs:
            attrs[key] = value.strip()
    return attrs


def parse_m3u(text: str) -> List[CatalogEntry]:
    """Parse extended-M3U text into catalog entries, in feed order.

    Malformed lines are skipped; nothing here raises on bad input.
    """
    out: List[CatalogEntry] = []
    if not text:
        return out

    # Per-entry metadata, reset after each address
    pending = False
    name = ""
    logo = ""
    group = ""

    for idx, raw_line in enumerate(text.splitlines()):
        s = raw_line.strip()
        if not s:
            continue

        if s[0] == "#":
            upper_prefix = s[:10].upper()
            if upper_prefix.startswith("#EXTINF"):
                attr_segment, name = _split_extinf(s)
                attrs = _parse_attrs(attr_segment)
                logo = attrs.get("tvg-logo") or attrs.get("logo") or ""
                group = attrs.get("group-title", "")
                pending = True
            elif upper_prefix.startswith("#EXTGRP") and pending and not group:
                group = s.split(":", 1)[1].strip() if ":" in s else ""
            continue

        if not is_address(s):
            LOG.debug("Skipping malformed playlist line %d: %.80s", idx + 1, s)
            pending = False
            name = logo = group = ""
            continue

        display = name or UNKNOWN_NAME
        out.append(CatalogEntry(
            id=f"{display}-{idx}",
            name=display,
            address=s,
            logo_url=logo if pending else "",
            group=(group if pending else "") or UNCATEGORIZED,
        ))
        pending = False
        name = logo = group = ""

    return out


def dedupe_entries(entries: Iterable[CatalogEntry]) -> List[CatalogEntry]:
    seen = set()
    out: List[CatalogEntry] = []
    for entry in entries:
        if entry.address in seen:
            continue
        seen.add(entry.address)
        out.append(entry)
    return out


def make_manual_entry(address: str, name: str = "Direct Stream", group: str = "Input") -> CatalogEntry:
    return CatalogEntry(
        id=f"manual-{uuid.uuid4().hex[:12]}",
        name=name,
        address=address.strip(),
        group=group,
        is_manual=True,
        is_pinned=True,
        score=MANUAL_SCORE,
    )


def custom_entries(channels: Optional[List[Dict[str, str]]]) -> List[CatalogEntry]:
    out: List[CatalogEntry] = []
    for i, ch in enumerate(channels or []):
        if not isinstance(ch, dict):
            continue
        address = (ch.get("url") or "").strip()
        if not address:
            continue
        out.append(CatalogEntry(
            id=f"custom-{i}",
            name=ch.get("name") or UNKNOWN_NAME,
            address=address,
            logo_url=ch.get("logo") or "",
            group=ch.get("group") or "Custom",
            is_manual=True,
            is_pinned=True,
            score=CUSTOM_SCORE,
        ))
    return out


def _cache_bust(url: str) -> str:
    parsed = urllib.parse.urlparse(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query = [(k, v) for k, v in query if k != "t"]
    query.append(("t", str(int(time.time() * 1000))))
    return urllib.parse.urlunparse(parsed._replace(query=urllib.parse.urlencode(query)))


def _download(url: str, timeout: float) -> str:
    req = urllib.request.Request(url, headers={
        "User-Agent": DEFAULT_UA,
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    })
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        raw = resp.read()
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1", "ignore")


def fetch_playlist(url: str, timeout: float = 30, relay_url: Optional[str] = None) -> str:
    """Download the feed bypassing caches; fall back to the relay once if given."""
    target = _cache_bust(url)
    try:
        return _download(target, timeout)
    except (urllib.error.URLError, OSError, ValueError) as err:
        if not relay_url:
            raise FetchFailure(f"Failed to fetch playlist: {err}") from err
        LOG.warning("Direct playlist fetch failed (%s); retrying through relay.", err)
    try:
        return _download(wrap_relay(target, relay_url), timeout)
    except (urllib.error.URLError, OSError, ValueError) as err:
        raise FetchFailure(f"Failed to fetch playlist via relay: {err}") from err


def _read_cached_feed(cache_path: Optional[str]) -> Optional[str]:
    if not cache_path or not os.path.exists(cache_path):
        return None
    try:
        with open(cache_path, "r", encoding="utf-8") as f:
            return f.read()
    except OSError as err:
        LOG.warning("Could not read cached playlist %s: %s", cache_path, err)
        return None


def _write_cached_feed(cache_path: Optional[str], text: str) -> None:
    if not cache_path:
        return
    try:
        with open(cache_path, "w", encoding="utf-8") as f:
            f.write(text)
    except OSError as err:
        LOG.warning("Could not cache playlist to %s: %s", cache_path, err)


def load_catalog(
    url: str = DEFAULT_FEED_URL,
    *,
    timeout: float = 30,
    relay_url: Optional[str] = None,
    cache_path: Optional[str] = None,
    custom_channels: Optional[List[Dict[str, str]]] = None,
    heuristics=None,
) -> CatalogLoad:
    """Fetch, parse and score the feed. Failures degrade to a stale or empty catalog.

    ``heuristics`` is applied to the parsed feed entries (normally
    ``catalog.apply_heuristics``); custom channels are prepended untouched.
    """
    error: Optional[str] = None
    stale = False
    LOG.info("Fetching playlist from %s", url)
    try:
        text = fetch_playlist(url, timeout=timeout, relay_url=relay_url)
        _write_cached_feed(cache_path, text)
    except FetchFailure as err:
        LOG.error("Playlist fetch failed: %s", err)
        error = str(err)
        text = _read_cached_feed(cache_path)
        stale = text is not None
        if stale:
            LOG.info("Using cached playlist from %s", cache_path)

    entries = dedupe_entries(parse_m3u(text or ""))
    if heuristics is not None:
        entries = heuristics(entries)
    LOG.info("Parsed %d channels (stale=%s)", len(entries), stale)
    return CatalogLoad(entries=custom_entries(custom_channels) + entries, error=error, stale=stale)
