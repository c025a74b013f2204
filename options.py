import os
import sys
import json
import hashlib
import logging
import logging.handlers
import tempfile
from typing import Dict, List, Optional

from catalog import CATEGORY_KEYWORDS, FAST_DOMAINS, KNOWN_GOOD_CAPACITY, PINNED_KEYWORDS
from playlist import DEFAULT_FEED_URL
from routing import CORS_HOSTILE_DOMAINS, DEFAULT_RELAY_URL

LOG = logging.getLogger(__name__)

APP_NAME = "ComsicTV"
CONFIG_FILE = "comsictv.conf"
KNOWN_GOOD_FILE = "working_channels.json"
LOG_PATH = os.path.join(tempfile.gettempdir(), "comsictv_debug.log")
_CONFIG_PATH = None  # Path of config last loaded/saved

DEFAULT_CUSTOM_CHANNELS = [
    {
        "name": "Red Bull TV",
        "url": "https://rbmn-live.akamaized.net/hls/live/590964/BoRB-AT/master.m3u8",
        "logo": "https://upload.wikimedia.org/wikipedia/en/thumb/f/f5/RedBullTVLogo.svg/1200px-RedBullTVLogo.svg.png",
        "group": "Extreme Sports",
    },
]


def default_config() -> Dict:
    return {
        "feed_url": DEFAULT_FEED_URL,
        "relay_url": DEFAULT_RELAY_URL,
        "fetch_feed_via_relay": True,
        "use_local_relay": False,
        "secure_context": False,
        "fetch_timeout_seconds": 30,
        "connect_timeout_seconds": 15.0,
        "media_recovery_limit": 3,
        "known_good_capacity": KNOWN_GOOD_CAPACITY,
        "page_size": 50,
        "view_mode": "curated",
        "fast_domains": list(FAST_DOMAINS),
        "pinned_keywords": list(PINNED_KEYWORDS),
        "category_keywords": list(CATEGORY_KEYWORDS),
        "cors_hostile_domains": list(CORS_HOSTILE_DOMAINS),
        "custom_channels": [dict(c) for c in DEFAULT_CUSTOM_CHANNELS],
    }


def setup_logging(debug: Optional[bool] = None) -> logging.Logger:
    """Rotating file log in the temp dir, mirrored to stderr when debugging."""
    if debug is None:
        debug = os.getenv("COMSIC_DEBUG", "0").strip() not in {"", "0", "false", "False"}
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    if getattr(root, "_comsic_configured", False):
        return root
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    try:
        fh = logging.handlers.RotatingFileHandler(LOG_PATH, maxBytes=5 * 1024 * 1024, backupCount=2, encoding="utf-8")
        fh.setFormatter(fmt)
        root.addHandler(fh)
    except OSError as e:
        # Don't crash the app over a log file.
        sys.stderr.write(f"Could not initialize log file at {LOG_PATH}: {e}\n")
    if debug:
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        root.addHandler(sh)
    root._comsic_configured = True  # type: ignore[attr-defined]
    LOG.debug("Logging initialized. File: %s", LOG_PATH)
    return root


def get_app_dir():
    if getattr(sys, 'frozen', False):
        return os.path.dirname(sys.executable)
    return os.path.dirname(os.path.abspath(__file__))


def get_cwd_dir():
    try:
        return os.getcwd()
    except OSError:
        return ""


def get_user_config_dir():
    if sys.platform == "win32":
        path = os.path.join(os.getenv('APPDATA', os.path.expanduser('~')), APP_NAME)
    elif sys.platform == "darwin":
        path = os.path.join(os.path.expanduser('~/Library/Application Support'), APP_NAME)
    else:  # linux and other unix
        path = os.path.join(os.getenv('XDG_CONFIG_HOME', os.path.expanduser('~/.config')), APP_NAME)
    try:
        os.makedirs(path, exist_ok=True)
        return path
    except OSError:
        return tempfile.gettempdir()


def get_config_read_candidates() -> List[str]:
    # App dir (portable installs), then CWD, then the per-user location
    candidates = []
    for base in (get_app_dir(), get_cwd_dir(), get_user_config_dir()):
        if base:
            path = os.path.join(base, CONFIG_FILE)
            if path not in candidates:
                candidates.append(path)
    return candidates


def _config_write_path() -> str:
    """The file config was loaded from if its folder is writable, else the per-user file."""
    if _CONFIG_PATH and os.access(os.path.dirname(_CONFIG_PATH) or os.curdir, os.W_OK):
        return _CONFIG_PATH
    return os.path.join(get_user_config_dir(), CONFIG_FILE)


def load_config() -> Dict:
    global _CONFIG_PATH
    default = default_config()
    for p in get_config_read_candidates():
        if not os.path.exists(p):
            continue
        try:
            with open(p, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            LOG.error("Failed to load config from %s: %s", p, e)
            continue
        if isinstance(data, dict):
            # Ensure all default keys are present
            for k, v in default.items():
                data.setdefault(k, v)
            _CONFIG_PATH = p
            return data
    return default


def save_config(cfg: Dict) -> bool:
    global _CONFIG_PATH
    path = _config_write_path()
    tmp_path = f"{path}.{os.getpid()}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(cfg, f, indent=2, sort_keys=True)
        os.replace(tmp_path, path)
    except OSError as e:
        LOG.error("Failed to save config to %s: %s", path, e)
        return False
    _CONFIG_PATH = path
    LOG.debug("Config saved to %s", path)
    return True


def remember_view_mode(cfg: Dict, mode) -> bool:
    """Store the curated/all choice so the next start opens in the same view."""
    value = getattr(mode, "value", mode)
    if cfg.get("view_mode") == value:
        return False
    cfg["view_mode"] = value
    return save_config(cfg)


def get_cache_dir() -> Optional[str]:
    cache_dir = os.path.join(tempfile.gettempdir(), "comsictv_cache")
    try:
        os.makedirs(cache_dir, exist_ok=True)
    except OSError as e:
        LOG.warning("Playlist cache disabled, cannot create %s: %s", cache_dir, e)
        return None
    return cache_dir


def get_cache_path_for_url(url) -> Optional[str]:
    cache_dir = get_cache_dir()
    if not cache_dir:
        return None
    h = hashlib.sha1(url.encode("utf-8")).hexdigest()
    return os.path.join(cache_dir, f"{h}.m3u")


def get_known_good_path():
    return os.path.join(get_user_config_dir(), KNOWN_GOOD_FILE)


class JsonKnownGoodStore:
    """Known-good channel ids as a JSON list on disk."""

    def __init__(self, path: Optional[str] = None):
        self.path = path or get_known_good_path()

    def read(self) -> List[str]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            LOG.warning("Ignoring unreadable known-good file %s: %s", self.path, e)
            return []
        if not isinstance(data, list):
            return []
        return [str(x) for x in data if isinstance(x, str)]

    def write(self, ids: List[str]) -> None:
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(list(ids), f)
        os.replace(tmp_path, self.path)
