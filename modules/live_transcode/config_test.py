"""Tests for config.py and the package factory helpers."""

from __future__ import annotations

import os

from modules.live_transcode import get_ffmpeg_runner, get_live_transcode_config, get_transcode_supervisor
from modules.live_transcode.config import LiveTranscodeConfig


def test_defaults_without_section():
    config = get_live_transcode_config({})
    assert config.segment_duration == 4
    assert config.playlist_size == 10
    assert config.max_restarts == 1
    assert config.get_effective_gop_size() == 120
    assert [p.name for p in config.build_catalog()] == ["1080p", "720p", "480p", "360p"]


def test_section_values_coerced():
    config = get_live_transcode_config({
        "live_transcode": {
            "segment_duration": "6",
            "grace_period": "2.5",
            "gop_size": "48",
            "rtmp_base_url": "rtmp://ingest.local/app/",
            "profiles": [{"name": "540p", "width": 960, "height": 540, "bitrate": "1200k"}],
            "not_a_field": 1,
        }
    })
    assert config.segment_duration == 6
    assert config.grace_period == 2.5
    assert config.get_effective_gop_size() == 48
    assert config.get_input_url("abc123") == "rtmp://ingest.local/app/abc123"
    assert config.build_catalog()[0].bitrate_kbps == 1200
    assert not hasattr(config, "not_a_field")


def test_paths_and_playback_url():
    config = LiveTranscodeConfig(media_root="/srv/media", log_dir="/var/log/live")
    assert config.get_output_dir("abc123") == os.path.join("/srv/media", "live", "abc123")
    assert config.get_log_path("abc123") == os.path.join("/var/log/live", "abc123.log")
    assert config.get_playback_url("abc123") == "/live/abc123/master.m3u8"
    config.hls_base_url = "https://cdn.example.com/hls/"
    assert config.get_playback_url("abc123") == "https://cdn.example.com/hls/abc123/master.m3u8"


def test_factories_share_config(config):
    runner = get_ffmpeg_runner(config, ffmpeg_path="/opt/ffmpeg/bin/ffmpeg")
    assert runner.ffmpeg_path == "/opt/ffmpeg/bin/ffmpeg"

    supervisor = get_transcode_supervisor(config, runner=runner, start_health_thread=False)
    assert supervisor.runner is runner
    assert supervisor.config is config
    supervisor.shutdown()
