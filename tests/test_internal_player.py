"""
Tests for the libVLC engine adapter and the stream preflight probe.

libVLC itself is replaced by a MagicMock so these run without VLC installed.
"""
import pytest
import os
import sys
import threading
import urllib.error
from unittest.mock import MagicMock, patch

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import internal_player
from internal_player import (
    InternalPlayerUnavailableError,
    VlcEngine,
    _describe_http_status,
    ensure_vlc_available,
    preflight_check,
)
from session import EngineError, ErrorKind


def _opener(side_effect=None, status=200):
    opener = MagicMock()
    if side_effect is not None:
        opener.open.side_effect = side_effect
    else:
        resp = MagicMock()
        resp.status = status
        opener.open.return_value = resp
    return opener


def _http_error(code, reason="Err"):
    return urllib.error.HTTPError("http://x.test/a", code, reason, {}, None)


class TestPreflight:
    """Test the HTTP probe run before libVLC opens a stream."""

    def test_reachable_stream(self):
        """A 200 answer means go ahead."""
        with patch("internal_player.urllib.request.build_opener", return_value=_opener()):
            assert preflight_check("http://x.test/a.m3u8") is None

    def test_not_found_is_network_error(self):
        """404 is a fatal network error carrying the status."""
        with patch("internal_player.urllib.request.build_opener",
                   return_value=_opener(_http_error(404, "Not Found"))):
            error = preflight_check("http://x.test/a.m3u8")

        assert error.kind is ErrorKind.NETWORK
        assert error.fatal is True
        assert error.status == 404
        assert "404" in error.detail

    def test_forbidden_mentions_geo_block(self):
        """403 reads as a geo-block."""
        with patch("internal_player.urllib.request.build_opener",
                   return_value=_opener(_http_error(403, "Forbidden"))):
            error = preflight_check("https://x.test/a.m3u8")

        assert "geo-blocked" in error.detail

    def test_redirect_is_left_to_libvlc(self):
        """Redirects are not judged here."""
        with patch("internal_player.urllib.request.build_opener",
                   return_value=_opener(_http_error(302, "Found"))):
            assert preflight_check("http://x.test/a.m3u8") is None

    def test_timeout_is_not_fatal(self):
        """A slow server is given to libVLC rather than failed early."""
        with patch("internal_player.urllib.request.build_opener",
                   return_value=_opener(urllib.error.URLError("timed out"))):
            assert preflight_check("http://x.test/a.m3u8") is None

    def test_read_timeout_is_not_fatal(self):
        """A raw socket timeout is not fatal either."""
        with patch("internal_player.urllib.request.build_opener",
                   return_value=_opener(TimeoutError("read timed out"))):
            assert preflight_check("http://x.test/a.m3u8") is None

    def test_connection_refused(self):
        """A refused connection is a network error."""
        refused = urllib.error.URLError(ConnectionRefusedError(111, "Connection refused"))
        with patch("internal_player.urllib.request.build_opener", return_value=_opener(refused)):
            error = preflight_check("http://x.test/a.m3u8")

        assert error.kind is ErrorKind.NETWORK
        assert "refused" in error.detail

    @pytest.mark.parametrize("url", ["", "rtmp://x.test/live", "udp://@239.0.0.1:1234"])
    def test_non_http_skipped(self, url):
        """Only http(s) addresses are probed."""
        with patch("internal_player.urllib.request.build_opener") as build:
            assert preflight_check(url) is None
        build.assert_not_called()

    @pytest.mark.parametrize("code,fragment", [
        (401, "Authentication"),
        (502, "Bad gateway"),
        (503, "unavailable"),
        (500, "Server error"),
        (418, "418"),
    ])
    def test_describe_http_status(self, code, fragment):
        """Status codes map to readable messages."""
        assert fragment in _describe_http_status(code, "Teapot")


@pytest.fixture
def fake_vlc(monkeypatch):
    mock_vlc = MagicMock()
    mock_vlc.Instance.return_value.media_player_new.return_value.play.return_value = 0
    monkeypatch.setattr(internal_player, "vlc", mock_vlc)
    return mock_vlc


def _handlers(player):
    """Map event type -> (callback, token) from event_attach calls."""
    events = player.event_manager.return_value
    return {c.args[0]: (c.args[1], c.args[2]) for c in events.event_attach.call_args_list}


class TestVlcEngine:
    """Test the engine adapter against a mocked libVLC."""

    def test_unavailable_without_vlc(self, monkeypatch):
        """Missing python-vlc raises a clear error."""
        monkeypatch.setattr(internal_player, "vlc", None)
        with pytest.raises(InternalPlayerUnavailableError):
            ensure_vlc_available()
        with pytest.raises(InternalPlayerUnavailableError):
            VlcEngine()

    def test_attach_starts_media(self, fake_vlc):
        """Without preflight the media starts right away."""
        engine = VlcEngine(preflight=False)
        engine.attach("http://x.test/a.m3u8", on_progress=MagicMock(), on_error=MagicMock())

        fake_vlc.Instance.return_value.media_new.assert_called_once_with("http://x.test/a.m3u8")
        engine.player.play.assert_called_once()

    def test_request_hook_rewrites_address(self, fake_vlc):
        """The request hook decides the address libVLC opens."""
        engine = VlcEngine(preflight=False)
        engine.attach("http://x.test/a", on_progress=MagicMock(), on_error=MagicMock(),
                      request_hook=lambda a: "https://relay.test/?" + a)

        fake_vlc.Instance.return_value.media_new.assert_called_once_with("https://relay.test/?http://x.test/a")

    def test_events_are_dispatched(self, fake_vlc):
        """libVLC events reach the callbacks through the dispatcher."""
        dispatched = []

        def dispatch(fn, *args):
            dispatched.append(fn)
            fn(*args)

        on_progress, on_error = MagicMock(), MagicMock()
        engine = VlcEngine(dispatch=dispatch, preflight=False)
        engine.attach("http://x.test/a", on_progress=on_progress, on_error=on_error)
        handlers = _handlers(engine.player)

        cb, token = handlers[fake_vlc.EventType.MediaPlayerPlaying]
        cb(None, token)
        on_progress.assert_called_once_with()

        cb, token = handlers[fake_vlc.EventType.MediaPlayerEncounteredError]
        cb(None, token)
        assert on_error.call_args.args[0].kind is ErrorKind.MEDIA

        cb, token = handlers[fake_vlc.EventType.MediaPlayerEndReached]
        cb(None, token)
        assert on_error.call_args.args[0].kind is ErrorKind.OTHER
        assert len(dispatched) == 3

    def test_error_before_playing_is_network(self, fake_vlc):
        """An error before any frame played is reported as a network failure."""
        on_error = MagicMock()
        engine = VlcEngine(preflight=False)
        engine.attach("http://x.test/a", on_progress=MagicMock(), on_error=on_error)
        cb, token = _handlers(engine.player)[fake_vlc.EventType.MediaPlayerEncounteredError]
        cb(None, token)

        error = on_error.call_args.args[0]
        assert error.kind is ErrorKind.NETWORK
        assert error.fatal is True

    def test_error_after_playing_is_media(self, fake_vlc):
        """Once playback started, libVLC errors are media errors."""
        on_error = MagicMock()
        engine = VlcEngine(preflight=False)
        engine.attach("http://x.test/a", on_progress=MagicMock(), on_error=on_error)
        handlers = _handlers(engine.player)
        cb, token = handlers[fake_vlc.EventType.MediaPlayerPlaying]
        cb(None, token)
        cb, token = handlers[fake_vlc.EventType.MediaPlayerEncounteredError]
        cb(None, token)

        assert on_error.call_args.args[0].kind is ErrorKind.MEDIA

    def test_events_after_detach_dropped(self, fake_vlc):
        """Late libVLC events for a detached handle are ignored."""
        on_progress = MagicMock()
        engine = VlcEngine(preflight=False)
        engine.attach("http://x.test/a", on_progress=on_progress, on_error=MagicMock())
        cb, token = _handlers(engine.player)[fake_vlc.EventType.MediaPlayerPlaying]
        engine.detach()
        cb(None, token)

        on_progress.assert_not_called()

    def test_detach_releases_handles(self, fake_vlc):
        """Detach stops and releases the player and the instance."""
        engine = VlcEngine(preflight=False)
        engine.attach("http://x.test/a", on_progress=MagicMock(), on_error=MagicMock())
        engine.detach()

        engine.player.stop.assert_called()
        engine.player.release.assert_called_once()
        engine.instance.release.assert_called_once()

    def test_play_refused(self, fake_vlc):
        """A refused play() is reported as a fatal error."""
        fake_vlc.Instance.return_value.media_player_new.return_value.play.return_value = -1
        on_error = MagicMock()
        engine = VlcEngine(preflight=False)
        engine.attach("http://x.test/a", on_progress=MagicMock(), on_error=on_error)

        error = on_error.call_args.args[0]
        assert error.kind is ErrorKind.OTHER
        assert error.fatal is True

    def test_recover_media_error(self, fake_vlc):
        """Media recovery restarts the same media in place."""
        engine = VlcEngine(preflight=False)
        assert engine.recover_media_error() is False

        engine.attach("http://x.test/a", on_progress=MagicMock(), on_error=MagicMock())
        assert engine.recover_media_error() is True
        assert engine.player.play.call_count == 2

    def test_preflight_failure_reported(self, fake_vlc):
        """A failed preflight is dispatched as the attach error and libVLC is never started."""
        ready = threading.Event()
        queued = []

        def dispatch(fn, *args):
            queued.append((fn, args))
            ready.set()

        failure = EngineError(ErrorKind.NETWORK, True, "Stream not found", 404)
        on_error = MagicMock()
        with patch("internal_player.preflight_check", return_value=failure):
            engine = VlcEngine(dispatch=dispatch)
            engine.attach("http://x.test/a", on_progress=MagicMock(), on_error=on_error)
            assert ready.wait(5)

        fn, args = queued[0]
        fn(*args)

        on_error.assert_called_once_with(failure)
        engine.player.play.assert_not_called()

    def test_preflight_success_starts_media(self, fake_vlc):
        """A clean preflight starts playback on the dispatch thread."""
        ready = threading.Event()
        queued = []

        def dispatch(fn, *args):
            queued.append((fn, args))
            ready.set()

        with patch("internal_player.preflight_check", return_value=None):
            engine = VlcEngine(dispatch=dispatch)
            engine.attach("http://x.test/a", on_progress=MagicMock(), on_error=MagicMock())
            assert ready.wait(5)

        fn, args = queued[0]
        fn(*args)

        engine.player.play.assert_called_once()
