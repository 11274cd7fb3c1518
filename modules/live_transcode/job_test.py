"""Tests for job.py."""

from __future__ import annotations

import signal
from pathlib import Path

import pytest

from modules.live_transcode.errors import JobConfigError, SpawnError
from modules.live_transcode.ffmpeg import FFmpegRunner
from modules.live_transcode.job import JobState, TranscodeJob
from modules.live_transcode.playlist import generate_master
from modules.live_transcode.profiles import DEFAULT_PROFILES


def make_job(config, runner, stream_key="abc123", profiles=DEFAULT_PROFILES):
    return TranscodeJob(
        stream_key=stream_key,
        output_dir=config.get_output_dir(stream_key),
        profiles=profiles,
        runner=runner,
        log_path=config.get_log_path(stream_key),
    )


class TestStart:
    def test_start_transitions_to_running(self, config, runner):
        job = make_job(config, runner)
        assert job.state == JobState.STARTING
        assert job.started_at is None

        job.start()

        assert job.state == JobState.RUNNING
        assert job.started_at is not None
        assert job.process is runner.processes[0]
        command, cwd, log_path = runner.calls[0]
        assert cwd == job.output_dir
        assert log_path == config.get_log_path("abc123")
        assert command == runner.build_command("abc123", DEFAULT_PROFILES)

    def test_start_writes_master_playlist(self, config, runner):
        job = make_job(config, runner)
        job.start()
        master = Path(job.output_dir) / "master.m3u8"
        assert master.read_text(encoding="utf-8") == generate_master(DEFAULT_PROFILES)
        assert not (Path(job.output_dir) / "master.m3u8.tmp").exists()

    def test_start_clears_stale_outputs(self, config, runner):
        output_dir = Path(config.get_output_dir("abc123"))
        output_dir.mkdir(parents=True)
        (output_dir / "seg_0_041.ts").write_bytes(b"old")
        (output_dir / "stream_0.m3u8").write_text("old")
        (output_dir / "notes.txt").write_text("keep")

        make_job(config, runner).start()

        assert not (output_dir / "seg_0_041.ts").exists()
        assert not (output_dir / "stream_0.m3u8").exists()
        assert (output_dir / "notes.txt").exists()
        assert (output_dir / "master.m3u8").exists()

    def test_spawn_failure_marks_failed_and_raises(self, config, make_runner):
        job = make_job(config, make_runner(fail=True))
        with pytest.raises(SpawnError):
            job.start()
        assert job.state == JobState.FAILED
        assert "No such file" in job.error
        assert job.process is None
        assert job.started_at is None

    def test_missing_binary_with_real_runner(self, config, tmp_path):
        runner = FFmpegRunner(config, ffmpeg_path=str(tmp_path / "missing-ffmpeg"))
        job = make_job(config, runner)
        with pytest.raises(SpawnError):
            job.start()
        assert job.state == JobState.FAILED

    def test_unwritable_output_dir(self, config, runner, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file")
        job = TranscodeJob(
            stream_key="abc123",
            output_dir=str(blocker / "abc123"),
            profiles=DEFAULT_PROFILES,
            runner=runner,
        )
        with pytest.raises(SpawnError):
            job.start()
        assert job.state == JobState.FAILED
        assert runner.calls == []

    def test_empty_profiles_is_config_error(self, config, runner):
        job = make_job(config, runner, profiles=())
        with pytest.raises(JobConfigError):
            job.start()
        assert job.state == JobState.FAILED
        assert runner.calls == []

    def test_cannot_start_twice(self, config, runner):
        job = make_job(config, runner)
        job.start()
        with pytest.raises(JobConfigError):
            job.start()
        assert len(runner.processes) == 1


class TestStop:
    def test_graceful_stop(self, config, runner):
        job = make_job(config, runner)
        job.start()
        process = job.process

        assert job.stop(grace_period=0.05) is True

        assert process.signals == [signal.SIGINT]
        assert process.killed is False
        assert job.state == JobState.STOPPED
        assert job.process is None
        assert job.stopped_at is not None

    def test_stop_escalates_to_kill_after_grace_period(self, config, make_runner):
        job = make_job(config, make_runner(exit_on_signal=False))
        job.start()
        process = job.process

        assert job.stop(grace_period=0.01) is False

        assert process.signals == [signal.SIGINT]
        assert process.killed is True
        assert job.state == JobState.STOPPED
        assert job.exit_code == -9

    def test_stop_after_process_already_exited(self, config, runner):
        job = make_job(config, runner)
        job.start()
        job.process.crash(1)
        assert job.stop() is True
        assert job.state == JobState.STOPPED
        assert job.exit_code == 1

    def test_stop_is_idempotent(self, config, runner):
        job = make_job(config, runner)
        job.start()
        job.stop(grace_period=0.01)
        assert job.stop(grace_period=0.01) is True
        assert job.state == JobState.STOPPED


class TestPollAndFailure:
    def test_poll(self, config, runner):
        job = make_job(config, runner)
        assert job.poll() is None
        job.start()
        assert job.poll() is None
        job.process.crash(137)
        assert job.poll() == 137
        assert job.exit_code == 137

    def test_mark_failed_releases_live_process(self, config, runner):
        job = make_job(config, runner)
        job.start()
        process = job.process
        job.mark_failed("health check")
        assert process.killed is True
        assert job.process is None
        assert job.state == JobState.FAILED
        assert not job.is_active()

    def test_read_log_tail(self, config, runner):
        job = make_job(config, runner)
        assert job.read_log_tail() == ""
        Path(job.log_path).parent.mkdir(parents=True, exist_ok=True)
        Path(job.log_path).write_text("line1\n\nline2\nConnection refused\n")
        assert job.read_log_tail(max_lines=2) == "line2 | Connection refused"


def test_to_dict(config, runner):
    job = make_job(config, runner)
    job.start()
    data = job.to_dict()
    assert data["streamKey"] == "abc123"
    assert data["state"] == "Running"
    assert data["startedAt"] == job.started_at
    assert data["profiles"] == ["1080p", "720p", "480p", "360p"]
    assert "outputDir" not in data
    assert job.to_dict(include_internal=True)["pid"] == job.process.pid
