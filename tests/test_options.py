"""
Tests for configuration loading and saving and the known-good store.
"""
import json
import os
import sys

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import options
from catalog import KnownGoodSet, ViewMode


@pytest.fixture
def config_dirs(tmp_path, monkeypatch):
    app_dir = tmp_path / "app"
    user_dir = tmp_path / "user"
    app_dir.mkdir()
    user_dir.mkdir()
    monkeypatch.setattr(options, "get_app_dir", lambda: str(app_dir))
    monkeypatch.setattr(options, "get_user_config_dir", lambda: str(user_dir))
    monkeypatch.setattr(options, "get_cwd_dir", lambda: str(tmp_path))
    monkeypatch.setattr(options, "_CONFIG_PATH", None)
    return app_dir, user_dir


class TestConfig:
    """Test config defaults and persistence."""

    def test_defaults_without_file(self, config_dirs):
        """With no config file the defaults are returned."""
        cfg = options.load_config()

        assert cfg == options.default_config()
        assert cfg["connect_timeout_seconds"] == 15.0
        assert cfg["known_good_capacity"] == 50
        assert cfg["secure_context"] is False
        assert cfg["view_mode"] == "curated"

    def test_defaults_are_independent(self):
        """Each call returns fresh lists."""
        a = options.default_config()
        a["pinned_keywords"].append("mine")

        assert "mine" not in options.default_config()["pinned_keywords"]

    def test_missing_keys_filled(self, config_dirs):
        """A partial config keeps its values and gains the missing defaults."""
        _, user_dir = config_dirs
        (user_dir / options.CONFIG_FILE).write_text(json.dumps({"page_size": 10}), encoding="utf-8")
        cfg = options.load_config()

        assert cfg["page_size"] == 10
        assert cfg["feed_url"] == options.default_config()["feed_url"]
        assert options._CONFIG_PATH == str(user_dir / options.CONFIG_FILE)

    def test_app_dir_config_wins(self, config_dirs):
        """A portable config next to the app takes precedence."""
        app_dir, user_dir = config_dirs
        (app_dir / options.CONFIG_FILE).write_text(json.dumps({"page_size": 1}), encoding="utf-8")
        (user_dir / options.CONFIG_FILE).write_text(json.dumps({"page_size": 2}), encoding="utf-8")

        assert options.load_config()["page_size"] == 1

    def test_broken_config_skipped(self, config_dirs):
        """An unreadable config file falls through to the next candidate."""
        app_dir, user_dir = config_dirs
        (app_dir / options.CONFIG_FILE).write_text("{not json", encoding="utf-8")
        (user_dir / options.CONFIG_FILE).write_text(json.dumps({"page_size": 2}), encoding="utf-8")

        assert options.load_config()["page_size"] == 2

    def test_save_then_load(self, config_dirs):
        """Saved values come back on the next load."""
        _, user_dir = config_dirs
        cfg = options.default_config()
        cfg["feed_url"] = "https://feed.test/mine.m3u"
        assert options.save_config(cfg) is True

        assert (user_dir / options.CONFIG_FILE).exists()
        assert not list(user_dir.glob("*.tmp"))
        assert options.load_config()["feed_url"] == "https://feed.test/mine.m3u"

    def test_save_writes_back_to_loaded_file(self, config_dirs):
        """Saving goes to the file that was loaded."""
        app_dir, _ = config_dirs
        path = app_dir / options.CONFIG_FILE
        path.write_text(json.dumps({}), encoding="utf-8")
        cfg = options.load_config()
        cfg["page_size"] = 7
        options.save_config(cfg)

        assert json.loads(path.read_text(encoding="utf-8"))["page_size"] == 7

    def test_save_failure_reported(self, config_dirs, monkeypatch):
        """A config that cannot be written returns False instead of raising."""
        _, user_dir = config_dirs
        monkeypatch.setattr(options, "get_user_config_dir", lambda: str(user_dir / "gone"))

        assert options.save_config(options.default_config()) is False

    def test_view_mode_remembered(self, config_dirs):
        """Switching the view is written to the config and restored on the next load."""
        _, user_dir = config_dirs
        cfg = options.load_config()

        assert options.remember_view_mode(cfg, ViewMode.ALL) is True
        assert cfg["view_mode"] == "all"
        assert options.load_config()["view_mode"] == "all"

    def test_view_mode_unchanged_not_saved(self, config_dirs):
        """Re-selecting the current view does not touch the config file."""
        _, user_dir = config_dirs
        cfg = options.load_config()

        assert options.remember_view_mode(cfg, "curated") is False
        assert not (user_dir / options.CONFIG_FILE).exists()

    def test_cache_disabled_when_dir_unavailable(self, monkeypatch):
        """An uncreatable cache folder disables caching instead of raising."""
        def refuse(*_args, **_kwargs):
            raise PermissionError("read-only temp")

        monkeypatch.setattr(options.os, "makedirs", refuse)

        assert options.get_cache_dir() is None
        assert options.get_cache_path_for_url("https://feed.test/a.m3u") is None

    def test_cache_path_is_stable(self):
        """The same feed URL always maps to the same cache file."""
        a = options.get_cache_path_for_url("https://feed.test/a.m3u")
        b = options.get_cache_path_for_url("https://feed.test/a.m3u")
        c = options.get_cache_path_for_url("https://feed.test/b.m3u")

        assert a == b
        assert a != c
        assert a.endswith(".m3u")


class TestJsonKnownGoodStore:
    """Test on-disk known-good persistence."""

    def test_missing_file_is_empty(self, tmp_path):
        """A missing file reads as an empty list."""
        assert options.JsonKnownGoodStore(str(tmp_path / "none.json")).read() == []

    def test_roundtrip_through_set(self, tmp_path):
        """Ids written by one set are restored by the next."""
        path = str(tmp_path / "known.json")
        first = KnownGoodSet(options.JsonKnownGoodStore(path))
        first.add("a")
        first.add("b")

        second = KnownGoodSet(options.JsonKnownGoodStore(path))
        assert second.ids() == ["b", "a"]

    @pytest.mark.parametrize("content", ["{broken", json.dumps({"a": 1}), json.dumps([1, "x", None])])
    def test_bad_content(self, tmp_path, content):
        """Corrupt or unexpected content never raises."""
        path = tmp_path / "known.json"
        path.write_text(content, encoding="utf-8")
        ids = options.JsonKnownGoodStore(str(path)).read()

        assert all(isinstance(i, str) for i in ids)

    def test_unwritable_location_does_not_break_set(self, tmp_path):
        """A store pointing at a missing directory only logs."""
        store = options.JsonKnownGoodStore(str(tmp_path / "missing" / "known.json"))
        known = KnownGoodSet(store)

        assert known.add("a") is True
        assert "a" in known
