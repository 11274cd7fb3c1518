"""
直播转码任务

一个任务对应一个推流密钥：持有 FFmpeg 进程、输出目录和启动时的档位快照。
进程在任务离开 Running 状态的每条路径上都会被回收。
"""

import os
import sys
import glob
import time
import signal
import logging
import subprocess
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple

from .errors import JobConfigError, LiveTranscodeError, SpawnError
from .ffmpeg import FFmpegRunner
from .playlist import MASTER_PLAYLIST_NAME, PlaylistGenerator
from .profiles import RenditionProfile

logger = logging.getLogger(__name__)

# 输出目录中属于编码器产物的文件
OUTPUT_FILE_PATTERNS = ("*.m3u8", "*.ts", "*.tmp")


class JobState(Enum):
    """任务状态枚举"""
    STARTING = "Starting"  # 启动中
    RUNNING = "Running"    # 运行中
    STOPPING = "Stopping"  # 停止中
    STOPPED = "Stopped"    # 已停止
    FAILED = "Failed"      # 失败


@dataclass
class TranscodeJob:
    """直播转码任务"""

    # 基本信息
    stream_key: str
    output_dir: str
    profiles: Tuple[RenditionProfile, ...]
    runner: FFmpegRunner = field(repr=False)
    log_path: str = ""

    # 状态信息
    state: JobState = JobState.STARTING
    error: Optional[str] = None
    restart_count: int = 0

    # 进程信息
    process: Optional[subprocess.Popen] = field(default=None, repr=False)
    command: List[str] = field(default_factory=list, repr=False)
    exit_code: Optional[int] = None

    # 时间戳
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    stopped_at: Optional[float] = None

    playlist_generator: PlaylistGenerator = field(default_factory=PlaylistGenerator, repr=False)

    def __post_init__(self):
        self.profiles = tuple(self.profiles)
        if not self.log_path:
            self.log_path = os.path.join(self.output_dir, os.pardir, f"{self.stream_key}.log")

    # ------------------------------------------------------------------
    # 状态
    # ------------------------------------------------------------------

    def mark_running(self):
        self.state = JobState.RUNNING
        self.started_at = time.time()

    def mark_stopping(self):
        self.state = JobState.STOPPING

    def mark_stopped(self):
        self.state = JobState.STOPPED
        self.stopped_at = time.time()

    def mark_failed(self, reason: str):
        """标记为失败并回收进程

        Args:
            reason: 失败原因
        """
        self.state = JobState.FAILED
        self.error = reason
        self.stopped_at = time.time()
        self._release_process()

    def is_active(self) -> bool:
        """是否处于 Starting/Running（同一密钥同时最多一个）"""
        return self.state in (JobState.STARTING, JobState.RUNNING)

    def is_finished(self) -> bool:
        return self.state in (JobState.STOPPED, JobState.FAILED)

    def get_uptime(self) -> float:
        """获取已运行时间（秒）"""
        if self.started_at is None:
            return 0
        end_time = self.stopped_at or time.time()
        return end_time - self.started_at

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def start(self) -> None:
        """启动编码进程

        准备输出目录，写入主播放列表，然后以输出目录为工作目录启动 FFmpeg。
        进程启动成功即进入 Running，不等待首个切片。

        Raises:
            JobConfigError: 推流密钥或档位为空
            SpawnError: 进程无法启动或输出目录不可写
        """
        if self.state != JobState.STARTING:
            raise JobConfigError(f"Job {self.stream_key} cannot start from state {self.state.value}")

        try:
            if not self.stream_key:
                raise JobConfigError("stream key must not be empty")
            if not self.profiles:
                raise JobConfigError("no rendition profiles configured")

            self.prepare_output_dir()
            self.write_master_playlist()

            self.command = self.runner.build_command(self.stream_key, self.profiles)
            logger.info(
                f"Starting FFmpeg for stream {self.stream_key}: "
                f"{self.runner.get_command_line_string(self.command)}"
            )
            self.process = self.runner.start_process(self.command, self.output_dir, self.log_path)
        except LiveTranscodeError as e:
            self.mark_failed(str(e))
            raise
        except OSError as e:
            self.mark_failed(f"Output directory not writable: {e}")
            raise SpawnError(self.error) from e

        self.mark_running()

    def prepare_output_dir(self):
        """创建输出目录并清理上一次直播遗留的播放列表和切片"""
        os.makedirs(self.output_dir, exist_ok=True)
        for pattern in OUTPUT_FILE_PATTERNS:
            for path in glob.glob(os.path.join(self.output_dir, pattern)):
                os.remove(path)

    def write_master_playlist(self) -> str:
        """生成并写入 master.m3u8（覆盖旧内容）

        先写临时文件再替换，播放器不会读到写了一半的文件。

        Returns:
            主播放列表路径
        """
        content = self.playlist_generator.generate_master(self.profiles)
        master_path = os.path.join(self.output_dir, MASTER_PLAYLIST_NAME)
        tmp_path = master_path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8", newline="\n") as f:
            f.write(content)
        os.replace(tmp_path, master_path)
        return master_path

    def poll(self) -> Optional[int]:
        """非阻塞检查进程是否已退出

        Returns:
            退出码，进程仍在运行或不存在时返回 None
        """
        if self.process is None:
            return None
        return_code = self.process.poll()
        if return_code is not None:
            self.exit_code = return_code
        return return_code

    def stop(self, grace_period: float = 5.0) -> bool:
        """停止编码进程

        先发送中断信号，等待 grace_period 秒，超时后强制 kill。
        返回后不会再有进程写入输出目录。

        Args:
            grace_period: 优雅退出等待时间（秒）

        Returns:
            进程是否在宽限期内自行退出
        """
        if self.is_finished():
            self._release_process()
            return True

        self.mark_stopping()
        graceful = True
        try:
            if self.process is not None and self.process.poll() is None:
                graceful = self._interrupt_and_wait(grace_period)
        finally:
            self._release_process()
            self.mark_stopped()

        logger.info(f"Stopped FFmpeg for stream {self.stream_key} (graceful={graceful})")
        return graceful

    def _interrupt_and_wait(self, grace_period: float) -> bool:
        """发送中断信号并等待退出

        Args:
            grace_period: 等待时间（秒）

        Returns:
            是否在等待时间内退出
        """
        process = self.process
        try:
            if sys.platform == "win32":
                process.terminate()
            else:
                process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            return True

        try:
            process.wait(timeout=grace_period)
            return True
        except subprocess.TimeoutExpired:
            logger.warning(
                f"FFmpeg for stream {self.stream_key} did not exit within "
                f"{grace_period}s, killing PID {process.pid}"
            )
            return False

    def _release_process(self):
        """回收进程句柄（仍在运行则强制结束）"""
        process = self.process
        if process is None:
            return
        try:
            if process.poll() is None:
                process.kill()
                process.wait(timeout=5)
        except ProcessLookupError:
            pass
        except subprocess.TimeoutExpired:
            logger.error(f"FFmpeg PID {process.pid} for stream {self.stream_key} did not die after kill")
        finally:
            self.exit_code = process.returncode
            self.process = None

    def read_log_tail(self, max_lines: int = 5) -> str:
        """读取 FFmpeg 日志末尾（用于记录崩溃原因）

        Args:
            max_lines: 最多读取的行数

        Returns:
            日志末尾内容，日志不存在时返回空字符串
        """
        try:
            with open(self.log_path, "r", encoding="utf-8", errors="replace") as f:
                lines = [line.strip() for line in f if line.strip()]
        except OSError:
            return ""
        return " | ".join(lines[-max_lines:])

    def to_dict(self, include_internal: bool = False) -> Dict[str, Any]:
        """转换为字典（用于 API 响应）

        Args:
            include_internal: 是否包含内部信息（如输出目录）

        Returns:
            字典表示
        """
        result = {
            "streamKey": self.stream_key,
            "state": self.state.value,
            "startedAt": self.started_at,
            "createdAt": self.created_at,
            "restartCount": self.restart_count,
            "profiles": [p.name for p in self.profiles],
        }

        if self.stopped_at:
            result["stoppedAt"] = self.stopped_at
        if self.error:
            result["error"] = self.error
        if self.exit_code is not None:
            result["exitCode"] = self.exit_code

        if include_internal:
            result["outputDir"] = self.output_dir
            result["logPath"] = self.log_path
            result["pid"] = self.process.pid if self.process else None

        return result
