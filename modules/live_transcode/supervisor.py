"""
直播转码任务管理器

负责直播转码任务的生命周期管理：
- 推流开始时启动任务（同一密钥已有任务则先停止再启动）
- 推流结束时停止任务并移出注册表
- 后台健康检查，进程意外退出时有限次数自动重启
- 状态查询
"""

import os
import re
import time
import shutil
import threading
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import LiveTranscodeConfig
from .errors import InvalidStreamKeyError, LiveTranscodeError
from .ffmpeg import FFmpegRunner
from .job import JobState, TranscodeJob
from .profiles import ProfileCatalog

logger = logging.getLogger(__name__)

# 推流密钥直接用作目录名，只允许安全字符
STREAM_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def validate_stream_key(stream_key: str) -> str:
    """校验推流密钥

    Args:
        stream_key: 推流密钥

    Returns:
        原样返回推流密钥

    Raises:
        InvalidStreamKeyError: 为空或包含非法字符
    """
    if not stream_key or not isinstance(stream_key, str):
        raise InvalidStreamKeyError("stream key must not be empty")
    if not STREAM_KEY_PATTERN.match(stream_key):
        raise InvalidStreamKeyError(f"invalid stream key: {stream_key!r}")
    return stream_key


class TranscodeSupervisor:
    """直播转码任务管理器

    注册表 stream_key -> TranscodeJob 是唯一的共享可变状态。
    self.lock 只保护字典本身，持有时间很短；启动/停止等耗时操作
    在各自密钥的锁内执行，不同密钥之间互不阻塞。
    """

    def __init__(
        self,
        config: LiveTranscodeConfig,
        catalog: Optional[ProfileCatalog] = None,
        runner: Optional[FFmpegRunner] = None,
        on_state_change: Optional[Callable[[Dict[str, Any]], None]] = None,
        start_health_thread: bool = True,
    ):
        """初始化任务管理器

        Args:
            config: 直播转码配置
            catalog: 码率档位目录，默认由配置构建
            runner: FFmpeg 运行器
            on_state_change: 任务状态变化回调，参数为任务的 to_dict()
            start_health_thread: 是否启动后台健康检查线程
        """
        self.config = config
        self.catalog = catalog or config.build_catalog()
        self.runner = runner or FFmpegRunner(config)
        self.on_state_change = on_state_change

        self.jobs: Dict[str, TranscodeJob] = {}
        self.lock = threading.Lock()
        # stream_key -> [Lock, 使用者计数]，计数归零时移除
        self._key_locks: Dict[str, list] = {}

        self._health_thread = None
        self._stop_health = threading.Event()
        if start_health_thread:
            self._start_health_thread()

    # ------------------------------------------------------------------
    # 后台健康检查
    # ------------------------------------------------------------------

    def _start_health_thread(self):
        """启动健康检查线程"""
        if self._health_thread is None or not self._health_thread.is_alive():
            self._stop_health.clear()
            self._health_thread = threading.Thread(
                target=self._health_loop,
                daemon=True,
                name="LiveTranscodeHealth"
            )
            self._health_thread.start()

    def _health_loop(self):
        """健康检查循环"""
        while not self._stop_health.wait(self.config.health_check_interval):
            try:
                self.check_health()
            except Exception as e:
                logger.error(f"Error in health check loop: {e}")

    def shutdown(self):
        """停止管理器和所有任务"""
        self._stop_health.set()
        if self._health_thread:
            self._health_thread.join(timeout=5)

        with self.lock:
            keys = list(self.jobs.keys())
        for stream_key in keys:
            self.on_ingest_stopped(stream_key)

    def check_health(self) -> int:
        """检查所有 Running 任务的进程是否仍然存活

        进程意外退出的任务标记为 Failed，并在重启次数未用完时自动重启。
        正在启动或停止的密钥本轮跳过。

        Returns:
            本轮检测到退出的任务数量
        """
        with self.lock:
            candidates = [job for job in self.jobs.values() if job.state == JobState.RUNNING]

        exited = 0
        for job in candidates:
            with self._key_lock(job.stream_key, blocking=False) as acquired:
                if not acquired:
                    continue
                with self.lock:
                    if self.jobs.get(job.stream_key) is not job:
                        continue
                if job.state != JobState.RUNNING:
                    continue

                return_code = job.poll()
                if return_code is None:
                    continue

                exited += 1
                self._handle_exit(job, return_code)

        self._prune_failed()
        return exited

    def _handle_exit(self, job: TranscodeJob, return_code: int):
        """处理进程退出（调用方持有该密钥的锁）

        Args:
            job: 转码任务
            return_code: 进程退出码
        """
        stream_key = job.stream_key

        if return_code == 0:
            # 输入流结束，FFmpeg 正常退出
            logger.info(f"FFmpeg for stream {stream_key} exited normally, input ended")
            job.stop(self.config.grace_period)
            self._remove_entry(job)
            self._notify(job)
            return

        reason = f"FFmpeg exited with code {return_code}"
        log_tail = job.read_log_tail()
        if log_tail:
            reason = f"{reason}: {log_tail}"
        logger.error(f"Stream {stream_key} failed: {reason}")
        job.mark_failed(reason)
        self._notify(job)

        if job.restart_count < self.config.max_restarts:
            attempt = job.restart_count + 1
            logger.info(f"Restarting stream {stream_key} (attempt {attempt}/{self.config.max_restarts})")
            new_job = self._create_job(stream_key, restart_count=attempt)
            self._register_and_spawn(new_job)
        else:
            logger.error(f"Stream {stream_key} reached max restarts ({self.config.max_restarts}), giving up")

    def _prune_failed(self) -> int:
        """移除超过保留时间的 Failed 任务

        Returns:
            移除的任务数量
        """
        now = time.time()
        removed = []
        with self.lock:
            for stream_key, job in list(self.jobs.items()):
                if job.state != JobState.FAILED or job.stopped_at is None:
                    continue
                if now - job.stopped_at > self.config.failed_retention:
                    del self.jobs[stream_key]
                    removed.append(stream_key)
        for stream_key in removed:
            logger.info(f"Removed failed job for stream {stream_key} after retention period")
        return len(removed)

    # ------------------------------------------------------------------
    # 推流事件
    # ------------------------------------------------------------------

    def on_ingest_started(self, stream_key: str) -> Tuple[bool, str, Optional[TranscodeJob]]:
        """推流开始

        同一密钥已有 Starting/Running 任务时视为重复推流：先停止旧任务，再启动新任务。

        Args:
            stream_key: 推流密钥

        Returns:
            (成功标志, 消息, TranscodeJob 对象)
        """
        try:
            validate_stream_key(stream_key)
        except InvalidStreamKeyError as e:
            logger.warning(f"Rejected ingest start: {e}")
            return False, str(e), None

        with self._key_lock(stream_key):
            with self.lock:
                previous = self.jobs.get(stream_key)

            if previous is not None and previous.is_active():
                logger.warning(f"Stream {stream_key} already has an active job, superseding it")
                self._stop_job(previous)

            job = self._create_job(stream_key)
            return self._register_and_spawn(job)

    def on_ingest_stopped(self, stream_key: str) -> bool:
        """推流结束

        未知密钥直接忽略（推流结束事件可能晚于清理）。

        Args:
            stream_key: 推流密钥

        Returns:
            是否存在并停止了任务
        """
        try:
            validate_stream_key(stream_key)
        except InvalidStreamKeyError as e:
            logger.debug(f"Ingest stop ignored: {e}")
            return False

        # 正在启动的任务会先完成启动，再由这里停止
        with self._key_lock(stream_key):
            with self.lock:
                job = self.jobs.get(stream_key)
            if job is None:
                logger.debug(f"Ingest stop for unknown stream {stream_key}, ignoring")
                return False

            self._stop_job(job)
            self._remove_entry(job)

            # 同一密钥的下一个任务要等目录删完才能启动
            if self.config.cleanup_on_stop:
                self._remove_output_files(job)

        self._notify(job)
        return True

    def get_status(self, stream_key: str) -> Optional[Dict[str, Any]]:
        """获取任务状态（不访问进程）

        Args:
            stream_key: 推流密钥

        Returns:
            {"state": ..., "startedAt": ...}，不存在返回 None
        """
        with self.lock:
            job = self.jobs.get(stream_key)
        if job is None:
            return None
        return job.to_dict()

    def get_job(self, stream_key: str) -> Optional[TranscodeJob]:
        with self.lock:
            return self.jobs.get(stream_key)

    # ------------------------------------------------------------------
    # 内部
    # ------------------------------------------------------------------

    @contextmanager
    def _key_lock(self, stream_key: str, blocking: bool = True):
        """持有某个密钥的锁，没有使用者时锁对象随即移除

        Args:
            stream_key: 推流密钥
            blocking: 为 False 时锁被占用立即返回

        Yields:
            是否拿到了锁
        """
        with self.lock:
            entry = self._key_locks.get(stream_key)
            if entry is None:
                entry = self._key_locks[stream_key] = [threading.Lock(), 0]
            entry[1] += 1

        acquired = entry[0].acquire(blocking)
        try:
            yield acquired
        finally:
            if acquired:
                entry[0].release()
            with self.lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._key_locks[stream_key]

    def _create_job(self, stream_key: str, restart_count: int = 0) -> TranscodeJob:
        return TranscodeJob(
            stream_key=stream_key,
            output_dir=self.config.get_output_dir(stream_key),
            profiles=self.catalog.snapshot(),
            runner=self.runner,
            log_path=self.config.get_log_path(stream_key),
            restart_count=restart_count,
        )

    def _register_and_spawn(self, job: TranscodeJob) -> Tuple[bool, str, Optional[TranscodeJob]]:
        """先登记再启动，并发的停止请求能找到这个任务（调用方持有该密钥的锁）

        Args:
            job: 新建的转码任务

        Returns:
            (成功标志, 消息, TranscodeJob 对象)
        """
        with self.lock:
            self.jobs[job.stream_key] = job
        self._notify(job)

        try:
            job.start()
        except LiveTranscodeError as e:
            logger.error(f"Failed to start transcoding for stream {job.stream_key}: {e}")
            self._notify(job)
            return False, str(e), job

        logger.info(f"Transcoding started for stream {job.stream_key} ({len(job.profiles)} variants)")
        self._notify(job)
        return True, "Stream started", job

    def _stop_job(self, job: TranscodeJob):
        graceful = job.stop(self.config.grace_period)
        if not graceful:
            logger.warning(f"Stream {job.stream_key} was force-killed after {self.config.grace_period}s grace period")

    def _remove_entry(self, job: TranscodeJob):
        with self.lock:
            if self.jobs.get(job.stream_key) is job:
                del self.jobs[job.stream_key]

    def _remove_output_files(self, job: TranscodeJob):
        """删除任务输出目录

        Args:
            job: 已停止的转码任务
        """
        if not os.path.exists(job.output_dir):
            return
        try:
            shutil.rmtree(job.output_dir)
            logger.info(f"Removed output directory for stream {job.stream_key}")
        except OSError as e:
            logger.warning(f"Failed to remove output directory {job.output_dir}: {e}")

    def _notify(self, job: TranscodeJob):
        if self.on_state_change is None:
            return
        try:
            self.on_state_change(job.to_dict())
        except Exception as e:
            logger.error(f"State change listener failed for stream {job.stream_key}: {e}")

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    def update_catalog(self, catalog: ProfileCatalog):
        """替换码率档位目录，只影响之后启动的任务

        Args:
            catalog: 新的档位目录
        """
        self.catalog = catalog
        logger.info(f"Profile catalog updated: {catalog!r}")

    def get_output_dir(self, stream_key: str) -> Optional[str]:
        """获取已登记任务的输出目录

        Args:
            stream_key: 推流密钥

        Returns:
            输出目录，任务不存在返回 None
        """
        job = self.get_job(stream_key)
        return job.output_dir if job else None

    def active_output_dirs(self) -> List[Tuple[str, str]]:
        """获取所有 Running 任务的 (stream_key, output_dir)"""
        with self.lock:
            return [
                (job.stream_key, job.output_dir)
                for job in self.jobs.values()
                if job.state == JobState.RUNNING
            ]

    def get_all_jobs(self) -> List[Dict[str, Any]]:
        """获取所有任务信息

        Returns:
            任务信息列表
        """
        with self.lock:
            jobs = list(self.jobs.values())
        return [job.to_dict() for job in jobs]

    def get_status_summary(self) -> Dict[str, Any]:
        """获取状态摘要

        Returns:
            状态摘要字典
        """
        with self.lock:
            states = [job.state for job in self.jobs.values()]

        return {
            "total_jobs": len(states),
            "running_jobs": sum(1 for s in states if s == JobState.RUNNING),
            "failed_jobs": sum(1 for s in states if s == JobState.FAILED),
            "variants": [p.name for p in self.catalog],
        }


def get_transcode_supervisor(config: LiveTranscodeConfig, **kwargs) -> TranscodeSupervisor:
    """获取直播转码任务管理器实例

    Args:
        config: 直播转码配置

    Returns:
        TranscodeSupervisor 实例
    """
    return TranscodeSupervisor(config, **kwargs)
