import http.client
import logging
import os
import platform
import threading
import urllib.error
import urllib.request
from typing import Callable, Optional

from playlist import DEFAULT_UA
from session import EngineError, ErrorKind


def _prime_vlc_search_path() -> None:
    """Make sure libvlc.dll is discoverable before importing python-vlc."""
    candidates = [
        os.path.join(os.environ.get("ProgramFiles(x86)", ""), "VideoLAN", "VLC"),
        os.path.join(os.environ.get("ProgramFiles", ""), "VideoLAN", "VLC"),
    ]
    for path in dict.fromkeys(candidates):
        if not path or not os.path.isfile(os.path.join(path, "libvlc.dll")):
            continue
        try:
            os.add_dll_directory(path)  # type: ignore[attr-defined]
        except (AttributeError, OSError):
            os.environ["PATH"] = f"{path};" + os.environ.get("PATH", "")


_prime_vlc_search_path()

try:
    import vlc  # type: ignore
except Exception as _err:  # pragma: no cover - import guard
    vlc = None  # type: ignore
    _VLC_IMPORT_ERROR = _err
else:
    _VLC_IMPORT_ERROR = None

LOG = logging.getLogger(__name__)

_INSTANCE_OPTS = [
    "--quiet",
    "--no-video-title-show",
    "--intf=dummy",
]


class InternalPlayerUnavailableError(RuntimeError):
    """Raised when the built-in player cannot be created."""


def ensure_vlc_available() -> None:
    if vlc is None:
        detail = _VLC_IMPORT_ERROR or "python-vlc (libVLC) is not installed."
        raise InternalPlayerUnavailableError(str(detail))


def _describe_http_status(code: int, reason: str = "") -> str:
    if code == 404:
        return "Stream not found (HTTP 404). The channel may be offline or the URL may have expired."
    if code == 403:
        return "Access denied (HTTP 403). The stream may be geo-blocked."
    if code == 401:
        return "Authentication required (HTTP 401)."
    if code == 502:
        return "Bad gateway (HTTP 502). The provider's server may be having issues."
    if code == 503:
        return "Service unavailable (HTTP 503). The provider may be overloaded."
    if code >= 500:
        return f"Server error (HTTP {code}). Try again later."
    return f"HTTP error {code}: {reason}".rstrip(": ")


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    # libVLC follows redirects itself; only the first hop matters here
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        return None


def preflight_check(url: str, timeout: float = 5, user_agent: str = DEFAULT_UA) -> Optional[EngineError]:
    """Quick HTTP probe of the stream before handing it to libVLC.

    Returns None when the stream looks reachable (or can't be judged), or a
    fatal network EngineError describing why it is not.
    """
    if not url or not url.lower().startswith(("http://", "https://")):
        return None
    req = urllib.request.Request(url, headers={"User-Agent": user_agent, "Accept": "*/*"}, method="GET")
    opener = urllib.request.build_opener(_NoRedirectHandler)
    try:
        resp = opener.open(req, timeout=timeout)
        status = resp.status
        resp.close()
    except urllib.error.HTTPError as e:
        if 300 <= e.code < 400:
            return None
        LOG.warning("Stream preflight failed: HTTP %d %s for %s", e.code, e.reason, url)
        return EngineError(ErrorKind.NETWORK, True, _describe_http_status(e.code, str(e.reason or "")), e.code)
    except urllib.error.URLError as e:
        reason = str(e.reason) if e.reason else "Unknown error"
        if "timed out" in reason.lower() or "timeout" in reason.lower():
            return None  # let libVLC try with its own buffering
        LOG.warning("Stream preflight failed: %s for %s", reason, url)
        if "refused" in reason.lower():
            return EngineError(ErrorKind.NETWORK, True, "Connection refused. The server may be down.", 0)
        return EngineError(ErrorKind.NETWORK, True, f"Connection error: {reason}", 0)
    except (OSError, ValueError, http.client.HTTPException) as e:
        LOG.debug("Preflight check exception (non-fatal): %s", e)
        return None
    if status >= 400:
        return EngineError(ErrorKind.NETWORK, True, _describe_http_status(status), status)
    return None


def _bind_window(player, handle) -> None:
    if not handle:
        return
    system = platform.system()
    try:
        if system == "Windows":
            player.set_hwnd(handle)
        elif system == "Darwin":
            player.set_nsobject(handle)
        else:
            player.set_xwindow(handle)
    except Exception as err:
        LOG.warning("Failed to bind video surface: %s", err)


class VlcEngine:
    """One libVLC player handle, usable for a single session attempt.

    libVLC callbacks arrive on libVLC threads; they are handed to ``dispatch``
    (``wx.CallAfter`` in the app) so the session only sees them on the event
    thread. A generation token drops anything that arrives after ``detach``.
    """

    def __init__(
        self,
        window_handle=None,
        dispatch: Optional[Callable[..., None]] = None,
        *,
        preflight: bool = True,
        preflight_timeout: float = 5,
        user_agent: str = DEFAULT_UA,
    ) -> None:
        ensure_vlc_available()
        self._window_handle = window_handle
        self._dispatch = dispatch or (lambda fn, *args: fn(*args))
        self._preflight = preflight
        self._preflight_timeout = preflight_timeout
        self._user_agent = user_agent
        self._token = 0
        self._url: Optional[str] = None
        self._on_progress: Optional[Callable[[], None]] = None
        self._on_error: Optional[Callable[[EngineError], None]] = None
        self._played = False
        try:
            self.instance = vlc.Instance(_INSTANCE_OPTS)
        except Exception as err:
            LOG.warning("libVLC rejected tuning flags (%s); retrying with defaults.", err)
            self.instance = vlc.Instance()
        if not self.instance:
            raise InternalPlayerUnavailableError("Failed to initialise libVLC instance.")
        self.player = self.instance.media_player_new()
        if not self.player:
            self.instance.release()
            raise InternalPlayerUnavailableError("Could not create libVLC media player object.")

    # --- engine contract ---

    def attach(self, address: str, *, on_progress, on_error, request_hook=None) -> None:
        self._token += 1
        token = self._token
        self._url = request_hook(address) if request_hook else address
        self._on_progress = on_progress
        self._on_error = on_error
        self._played = False
        LOG.info("Attaching libVLC to %s", self._url)

        events = self.player.event_manager()
        events.event_attach(vlc.EventType.MediaPlayerPlaying, self._vlc_playing, token)
        events.event_attach(vlc.EventType.MediaPlayerEncounteredError, self._vlc_error, token)
        events.event_attach(vlc.EventType.MediaPlayerEndReached, self._vlc_ended, token)

        if self._preflight and self._url.lower().startswith(("http://", "https://")):
            url = self._url
            threading.Thread(target=self._run_preflight, args=(token, url), daemon=True).start()
        else:
            self._start_media(token)

    def detach(self) -> None:
        self._token += 1
        self._on_progress = None
        self._on_error = None
        try:
            events = self.player.event_manager()
            for ev in (vlc.EventType.MediaPlayerPlaying,
                       vlc.EventType.MediaPlayerEncounteredError,
                       vlc.EventType.MediaPlayerEndReached):
                events.event_detach(ev)
        except Exception as err:
            LOG.debug("libVLC event detach failed: %s", err)
        try:
            self.player.stop()
        finally:
            self.player.release()
            self.instance.release()
        LOG.debug("libVLC handle released")

    def recover_media_error(self) -> bool:
        """Restart the current media on the same handle and route."""
        if not self._url:
            return False
        LOG.info("Restarting media after decode error: %s", self._url)
        self.player.stop()
        return self.player.play() != -1

    # --- internals ---

    def _run_preflight(self, token: int, url: str) -> None:
        error = preflight_check(url, timeout=self._preflight_timeout, user_agent=self._user_agent)
        self._dispatch(self._after_preflight, token, error)

    def _after_preflight(self, token: int, error: Optional[EngineError]) -> None:
        if token != self._token:
            return
        if error is not None:
            self._emit_error(token, error)
            return
        self._start_media(token)

    def _start_media(self, token: int) -> None:
        if token != self._token:
            return
        media = self.instance.media_new(self._url)
        media.add_option(":http-reconnect=true")
        media.add_option(f":http-user-agent={self._user_agent}")
        self.player.set_media(media)
        _bind_window(self.player, self._window_handle)
        if self.player.play() == -1:
            self._emit_error(token, EngineError(ErrorKind.OTHER, True, "libVLC refused to start playback"))

    def _vlc_playing(self, _event, token: int) -> None:
        self._dispatch(self._emit_progress, token)

    def _vlc_error(self, _event, token: int) -> None:
        self._dispatch(self._emit_vlc_error, token)

    def _vlc_ended(self, _event, token: int) -> None:
        self._dispatch(self._emit_error, token, EngineError(ErrorKind.OTHER, True, "Stream ended"))

    def _emit_progress(self, token: int) -> None:
        if token == self._token and self._on_progress:
            self._played = True
            self._on_progress()

    def _emit_vlc_error(self, token: int) -> None:
        # an error before the first Playing event means the stream never opened
        if self._played:
            error = EngineError(ErrorKind.MEDIA, True, "libVLC playback error")
        else:
            error = EngineError(ErrorKind.NETWORK, True, "libVLC could not open the stream")
        self._emit_error(token, error)

    def _emit_error(self, token: int, error: EngineError) -> None:
        if token == self._token and self._on_error:
            self._on_error(error)


__all__ = [
    "VlcEngine",
    "InternalPlayerUnavailableError",
    "preflight_check",
    "ensure_vlc_available",
    "_VLC_IMPORT_ERROR",
]
