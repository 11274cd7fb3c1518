"""Shared fixtures for live transcode tests."""

from __future__ import annotations

import signal
import subprocess
import threading
from pathlib import Path

import pytest

from modules.live_transcode.config import LiveTranscodeConfig
from modules.live_transcode.errors import SpawnError
from modules.live_transcode.ffmpeg import FFmpegRunner


class FakeProcess:
    """Stands in for subprocess.Popen; never spawns anything."""

    _next_pid = 4000

    def __init__(self, exit_on_signal: bool = True):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode = None
        self.exit_on_signal = exit_on_signal
        self.signals = []
        self.killed = False

    def poll(self):
        return self.returncode

    def send_signal(self, sig):
        self.signals.append(sig)
        if self.exit_on_signal and self.returncode is None:
            self.returncode = 255

    def terminate(self):
        self.send_signal(signal.SIGTERM)

    def kill(self):
        self.killed = True
        if self.returncode is None:
            self.returncode = -9

    def wait(self, timeout=None):
        if self.returncode is None:
            raise subprocess.TimeoutExpired("ffmpeg", timeout)
        return self.returncode

    def crash(self, code: int = 1):
        self.returncode = code


class FakeRunner(FFmpegRunner):
    """Real command building, fake process spawning."""

    def __init__(self, config, fail: bool = False, exit_on_signal: bool = True):
        super().__init__(config)
        self.fail = fail
        self.exit_on_signal = exit_on_signal
        self.processes = []
        self.calls = []
        self.block = {}  # stream_key -> threading.Event
        self.lock = threading.Lock()

    def start_process(self, command, cwd, log_path):
        stream_key = Path(cwd).name
        gate = self.block.get(stream_key)
        if gate is not None:
            gate.wait(timeout=5)
        if self.fail:
            raise SpawnError("Failed to start FFmpeg: [Errno 2] No such file or directory: 'ffmpeg'")
        process = FakeProcess(exit_on_signal=self.exit_on_signal)
        with self.lock:
            self.calls.append((command, cwd, log_path))
            self.processes.append(process)
        return process


@pytest.fixture
def config(tmp_path: Path) -> LiveTranscodeConfig:
    return LiveTranscodeConfig(
        media_root=str(tmp_path / "media"),
        log_dir=str(tmp_path / "logs"),
        grace_period=0.05,
        health_check_interval=0.05,
        max_restarts=1,
    )


@pytest.fixture
def runner(config) -> FakeRunner:
    return FakeRunner(config)


@pytest.fixture
def make_runner(config):
    def _make(**kwargs) -> FakeRunner:
        return FakeRunner(config, **kwargs)
    return _make
