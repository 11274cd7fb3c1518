"""Tests for ffmpeg.py."""

from __future__ import annotations

import pytest

from modules.live_transcode.errors import SpawnError
from modules.live_transcode.ffmpeg import FFmpegRunner, build_var_stream_map
from modules.live_transcode.profiles import DEFAULT_PROFILES


def _value_after(cmd, flag):
    return cmd[cmd.index(flag) + 1]


@pytest.fixture
def command(config):
    return FFmpegRunner(config).build_command("abc123", DEFAULT_PROFILES)


class TestBuildCommand:
    def test_single_rtmp_input(self, command):
        assert command.count("-i") == 1
        assert _value_after(command, "-i") == "rtmp://localhost/live/abc123"

    def test_per_variant_rate_control(self, command):
        for i, profile in enumerate(DEFAULT_PROFILES):
            assert _value_after(command, f"-b:v:{i}") == f"{profile.bitrate_kbps}k"
            assert _value_after(command, f"-s:v:{i}") == f"{profile.width}x{profile.height}"
            assert _value_after(command, f"-maxrate:v:{i}") == f"{profile.bitrate_kbps}k"
            assert _value_after(command, f"-bufsize:v:{i}") == f"{profile.bitrate_kbps * 2}k"
        assert "-b:v:4" not in command

    def test_one_video_map_per_variant_and_shared_audio(self, command):
        maps = [command[i + 1] for i, arg in enumerate(command) if arg == "-map"]
        assert maps.count("0:v:0") == len(DEFAULT_PROFILES)
        assert maps.count("0:a:0") == 1

    def test_hls_parameters(self, command):
        assert _value_after(command, "-f") == "hls"
        assert _value_after(command, "-hls_time") == "4"
        assert _value_after(command, "-hls_list_size") == "10"
        assert _value_after(command, "-hls_flags") == "delete_segments"
        assert _value_after(command, "-hls_segment_filename") == "seg_%v_%03d.ts"
        assert _value_after(command, "-var_stream_map") == "v:0,a:0 v:1,a:0 v:2,a:0 v:3,a:0"
        assert command[-1] == "stream_%v.m3u8"

    def test_encoder_does_not_write_master_playlist(self, command):
        assert "-master_pl_name" not in command

    def test_keyframes_aligned_with_segments(self, command):
        assert _value_after(command, "-g") == "120"
        assert _value_after(command, "-keyint_min") == "120"
        assert _value_after(command, "-sc_threshold") == "0"

    def test_segment_settings_follow_config(self, config):
        config.segment_duration = 6
        config.playlist_size = 5
        command = FFmpegRunner(config).build_command("k", DEFAULT_PROFILES[:2])
        assert _value_after(command, "-hls_time") == "6"
        assert _value_after(command, "-hls_list_size") == "5"
        assert _value_after(command, "-var_stream_map") == "v:0,a:0 v:1,a:0"


def test_var_stream_map():
    assert build_var_stream_map(1) == "v:0,a:0"
    assert build_var_stream_map(3) == "v:0,a:0 v:1,a:0 v:2,a:0"


def test_command_line_string_hides_stream_key(config):
    runner = FFmpegRunner(config)
    text = runner.get_command_line_string(runner.build_command("secretkey", DEFAULT_PROFILES))
    assert "secretkey" not in text
    assert "rtmp://localhost/live/<stream_key>" in text
    assert '"v:0,a:0 v:1,a:0 v:2,a:0 v:3,a:0"' in text


class TestStartProcess:
    def test_missing_binary_raises_spawn_error(self, config, tmp_path):
        runner = FFmpegRunner(config, ffmpeg_path=str(tmp_path / "no-such-ffmpeg"))
        assert runner.check_available() is False
        with pytest.raises(SpawnError):
            runner.start_process(
                runner.build_command("abc123", DEFAULT_PROFILES),
                str(tmp_path / "out"),
                str(tmp_path / "logs" / "abc123.log"),
            )
        # output dir and log were prepared before the spawn attempt
        assert (tmp_path / "out").is_dir()
        assert (tmp_path / "logs" / "abc123.log").exists()

    def test_unwritable_output_raises_spawn_error(self, config, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        runner = FFmpegRunner(config)
        with pytest.raises(SpawnError):
            runner.start_process(["ffmpeg"], str(blocker / "out"), str(tmp_path / "x.log"))
