"""Tests for platform-specific paths."""

from __future__ import annotations

from pathlib import Path

import tz_video_host.paths as paths


class FakeAppDirs:
    """Minimal AppDirs stand-in used to control path roots during tests."""

    def __init__(self, data_dir: Path, config_dir: Path) -> None:
        self.user_data_dir = str(data_dir)
        self.user_config_dir = str(config_dir)


def test_paths_use_platformdirs_and_create_dirs(tmp_path, monkeypatch) -> None:
    data_dir = tmp_path / "data"
    config_dir = tmp_path / "config"

    def fake_app_dirs(app_name: str, appauthor: bool | None = None) -> FakeAppDirs:
        assert app_name == "tz-video-host"
        assert appauthor is False
        return FakeAppDirs(data_dir, config_dir)

    monkeypatch.setattr(paths, "AppDirs", fake_app_dirs)
    paths.get_app_dirs.cache_clear()
    try:
        assert paths.data_dir() == data_dir
        assert paths.config_dir() == config_dir
        assert paths.log_dir() == data_dir / "logs"
        assert paths.downloads_dir() == data_dir / "downloads"
        assert paths.download_index_path() == data_dir / "downloads.json"
        assert paths.settings_path() == config_dir / "settings.json"

        assert (data_dir / "logs").exists()
        assert (data_dir / "downloads").exists()
        assert config_dir.exists()
    finally:
        paths.get_app_dirs.cache_clear()


def test_configured_download_dir_holds_content_and_index(tmp_path) -> None:
    offline = tmp_path / "offline"

    assert paths.downloads_dir(override=offline) == offline
    assert offline.exists()
    assert paths.download_index_path(override=offline) == offline / "downloads.json"
