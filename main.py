import argparse
import logging
import threading
from typing import List, Optional

import wx

from catalog import KnownGoodSet, ViewMode, apply_heuristics, looks_like_url, signal_badge, visible_catalog
from options import (
    load_config, get_cache_path_for_url, remember_view_mode, setup_logging, JsonKnownGoodStore
)
from playlist import CatalogEntry, CatalogLoad, load_catalog, make_manual_entry
from routing import RoutePolicy
from session import PlaybackSession, SessionController, SessionState
from stream_proxy import RelayServer
from internal_player import VlcEngine, InternalPlayerUnavailableError, ensure_vlc_available

LOG = logging.getLogger(__name__)

_BADGES = {"manual": "⚡", "verified": "●", "unverified": "○"}


class WxTimerHandle:
    def __init__(self, call_later: wx.CallLater):
        self._call_later = call_later

    def cancel(self) -> None:
        if self._call_later.IsRunning():
            self._call_later.Stop()


def wx_scheduler(seconds: float, callback) -> WxTimerHandle:
    return WxTimerHandle(wx.CallLater(max(1, int(seconds * 1000)), callback))


class ComsicFrame(wx.Frame):
    def __init__(self, config: dict, mode: ViewMode = ViewMode.CURATED):
        super().__init__(None, title="Comsic TV", size=(1200, 720))
        self.config = config
        self.mode = ViewMode(mode)
        self.all_channels: List[CatalogEntry] = []
        self.displayed: List[CatalogEntry] = []
        self.limit = int(config.get("page_size") or 50)
        self._load_token = 0

        self.relay: Optional[RelayServer] = None
        relay_url = config.get("relay_url") or ""
        known_relays = ()
        if config.get("use_local_relay"):
            self.relay = RelayServer()
            relay_url = self.relay.start()
            known_relays = (config.get("relay_url") or "",)
        self.route_policy = RoutePolicy(
            relay_url=relay_url,
            page_is_secure=bool(config.get("secure_context")),
            hostile_domains=tuple(config.get("cors_hostile_domains") or ()),
            known_relays=known_relays,
        )

        self.known_good = KnownGoodSet(JsonKnownGoodStore(), capacity=int(config.get("known_good_capacity") or 50))
        self._build_ui()
        self.controller = SessionController(
            engine_factory=self._new_engine,
            scheduler=wx_scheduler,
            known_good=self.known_good,
            route_policy=self.route_policy,
            connect_timeout=float(config.get("connect_timeout_seconds") or 15.0),
            media_recovery_limit=int(config.get("media_recovery_limit", 3)),
            on_change=self._on_session_change,
        )
        self.Bind(wx.EVT_CLOSE, self.on_close)
        self.start_playlist_load()
        self.Show()

    def _build_ui(self):
        p = wx.Panel(self)
        hs = wx.BoxSizer(wx.HORIZONTAL)
        vs_l = wx.BoxSizer(wx.VERTICAL)
        vs_r = wx.BoxSizer(wx.VERTICAL)

        self.video_panel = wx.Panel(p, size=(640, 360))
        self.video_panel.SetBackgroundColour(wx.BLACK)
        self.status_label = wx.StaticText(p, label="Select a channel to start")
        self.retry_btn = wx.Button(p, label="Retry")
        self.retry_btn.Bind(wx.EVT_BUTTON, lambda _: self.controller.retry())
        self.retry_btn.Disable()
        status_row = wx.BoxSizer(wx.HORIZONTAL)
        status_row.Add(self.status_label, 1, wx.ALIGN_CENTER_VERTICAL | wx.ALL, 5)
        status_row.Add(self.retry_btn, 0, wx.ALL, 5)
        vs_l.Add(self.video_panel, 1, wx.EXPAND | wx.ALL, 5)
        vs_l.Add(status_row, 0, wx.EXPAND)

        mode_row = wx.BoxSizer(wx.HORIZONTAL)
        self.curated_btn = wx.ToggleButton(p, label="Sports")
        self.all_btn = wx.ToggleButton(p, label="All")
        self.curated_btn.Bind(wx.EVT_TOGGLEBUTTON, lambda _: self.set_mode(ViewMode.CURATED))
        self.all_btn.Bind(wx.EVT_TOGGLEBUTTON, lambda _: self.set_mode(ViewMode.ALL))
        mode_row.Add(self.curated_btn, 0, wx.ALL, 2)
        mode_row.Add(self.all_btn, 0, wx.ALL, 2)

        self.filter_box = wx.TextCtrl(p, style=wx.TE_PROCESS_ENTER)
        self.filter_box.SetHint("Search channels or paste a stream URL")
        self.filter_box.Bind(wx.EVT_TEXT, lambda _: self.apply_filter())
        self.filter_box.Bind(wx.EVT_TEXT_ENTER, self.on_filter_enter)
        self.play_url_btn = wx.Button(p, label="Play URL")
        self.play_url_btn.Bind(wx.EVT_BUTTON, self.on_filter_enter)
        self.play_url_btn.Hide()
        search_row = wx.BoxSizer(wx.HORIZONTAL)
        search_row.Add(self.filter_box, 1, wx.EXPAND | wx.ALL, 2)
        search_row.Add(self.play_url_btn, 0, wx.ALL, 2)

        self.channel_list = wx.ListBox(p, style=wx.LB_SINGLE)
        self.channel_list.Bind(wx.EVT_LISTBOX_DCLICK, lambda _: self.play_selected())
        self.more_btn = wx.Button(p, label="Load more")
        self.more_btn.Bind(wx.EVT_BUTTON, self.on_load_more)

        vs_r.Add(mode_row, 0, wx.ALL, 3)
        vs_r.Add(search_row, 0, wx.EXPAND | wx.ALL, 3)
        vs_r.Add(self.channel_list, 1, wx.EXPAND | wx.ALL, 5)
        vs_r.Add(self.more_btn, 0, wx.EXPAND | wx.ALL, 5)
        hs.Add(vs_l, 2, wx.EXPAND)
        hs.Add(vs_r, 1, wx.EXPAND)
        p.SetSizer(hs)
        self._sync_mode_buttons()

    # --- catalog ---

    def start_playlist_load(self):
        self._load_token += 1
        token = self._load_token
        cfg = self.config
        url = cfg.get("feed_url")
        self.status_label.SetLabel("Loading playlist...")

        def heuristics(entries):
            return apply_heuristics(entries, cfg.get("fast_domains") or (), cfg.get("pinned_keywords") or ())

        def worker():
            try:
                result = load_catalog(
                    url,
                    timeout=float(cfg.get("fetch_timeout_seconds") or 30),
                    relay_url=self.route_policy.relay_url if cfg.get("fetch_feed_via_relay") else None,
                    cache_path=get_cache_path_for_url(url),
                    custom_channels=cfg.get("custom_channels"),
                    heuristics=heuristics,
                )
            except Exception as e:
                LOG.exception("Playlist load crashed")
                result = CatalogLoad(error=str(e) or e.__class__.__name__)
            wx.CallAfter(self._on_catalog_loaded, token, result)

        threading.Thread(target=worker, daemon=True).start()

    def _on_catalog_loaded(self, token: int, result: CatalogLoad):
        if token != self._load_token:
            return
        self.all_channels = result.entries
        if result.error and not result.entries:
            self.status_label.SetLabel(f"Playlist unavailable: {result.error}")
        elif result.stale:
            self.status_label.SetLabel("Offline: showing the last downloaded playlist")
        elif self.controller.state is SessionState.IDLE:
            self.status_label.SetLabel("Select a channel to start")
        self.apply_filter()

    def set_mode(self, mode: ViewMode):
        self.mode = mode
        remember_view_mode(self.config, mode)
        self.limit = int(self.config.get("page_size") or 50)
        self._sync_mode_buttons()
        self.apply_filter()

    def _sync_mode_buttons(self):
        self.curated_btn.SetValue(self.mode is ViewMode.CURATED)
        self.all_btn.SetValue(self.mode is ViewMode.ALL)

    def apply_filter(self):
        txt = self.filter_box.GetValue().strip()
        self.play_url_btn.Show(looks_like_url(txt))
        self.displayed = visible_catalog(
            self.all_channels,
            self.known_good,
            self.mode,
            txt,
            self.config.get("category_keywords") or (),
            self.limit,
        )
        self.channel_list.Freeze()
        try:
            self.channel_list.Clear()
            items = [f"{_BADGES[signal_badge(ch, self.known_good)]} {ch.name}  [{ch.group}]" for ch in self.displayed]
            if items:
                self.channel_list.AppendItems(items)
        finally:
            self.channel_list.Thaw()
        self.Layout()

    def on_load_more(self, _evt):
        self.limit += int(self.config.get("page_size") or 50)
        self.apply_filter()

    def on_filter_enter(self, _evt):
        txt = self.filter_box.GetValue().strip()
        if not looks_like_url(txt):
            self.play_selected()
            return
        entry = make_manual_entry(txt)
        self.all_channels = [entry] + self.all_channels
        self.filter_box.ChangeValue("")
        self.apply_filter()
        self.controller.select(entry)

    def play_selected(self):
        idx = self.channel_list.GetSelection()
        if idx == wx.NOT_FOUND or idx >= len(self.displayed):
            return
        self.controller.select(self.displayed[idx])

    # --- playback ---

    def _new_engine(self):
        return VlcEngine(self.video_panel.GetHandle(), dispatch=wx.CallAfter)

    def _on_session_change(self, session: Optional[PlaybackSession]):
        if session is None:
            self.status_label.SetLabel("Select a channel to start")
            self.retry_btn.Disable()
            return
        name = session.entry.name
        if session.state is SessionState.CONNECTING:
            label = f"Connecting to {name}..."
        elif session.state is SessionState.RECOVERING:
            label = f"{name}: bypassing geo-block..."
        elif session.state is SessionState.VERIFIED:
            label = f"{name}: Live"
            self.apply_filter()
        else:
            label = f"{name}: {session.detail}"
        self.status_label.SetLabel(label)
        self.retry_btn.Enable(session.state is SessionState.DEAD)

    def on_close(self, event):
        self.controller.discard()
        if self.relay:
            self.relay.stop()
        event.Skip()


def _saved_view_mode(config: dict) -> ViewMode:
    try:
        return ViewMode(config.get("view_mode") or ViewMode.CURATED)
    except ValueError:
        LOG.warning("Unknown view_mode %r in config; using curated", config.get("view_mode"))
        return ViewMode.CURATED


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="comsictv")
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--all", action="store_true", help="start with the full catalog")
    parser.add_argument("--feed", help="playlist URL to load instead of the configured one")
    args = parser.parse_args(argv)

    setup_logging(debug=args.debug or None)
    config = load_config()
    if args.feed:
        config["feed_url"] = args.feed

    app = wx.App()
    app.SetAppName("ComsicTV")
    try:
        ensure_vlc_available()
        ComsicFrame(config, ViewMode.ALL if args.all else _saved_view_mode(config))
    except InternalPlayerUnavailableError as err:
        LOG.error("Built-in player unavailable: %s", err)
        wx.MessageBox(str(err), "Player Unavailable", wx.OK | wx.ICON_ERROR)
        return 1
    app.MainLoop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
