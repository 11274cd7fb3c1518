"""
FFmpeg 进程管理模块

负责构建直播 ABR 转码命令并启动 FFmpeg 进程。
"""

import os
import shutil
import subprocess
import logging
from typing import List, Optional, Sequence

from .config import LiveTranscodeConfig
from .errors import SpawnError
from .playlist import SEGMENT_FILENAME_PATTERN, VARIANT_PLAYLIST_PATTERN
from .profiles import RenditionProfile

logger = logging.getLogger(__name__)


class FFmpegRunner:
    """FFmpeg 进程管理器

    构建多码率 HLS 输出命令并管理转码进程。
    """

    def __init__(self, config: LiveTranscodeConfig, ffmpeg_path: Optional[str] = None):
        """初始化 FFmpeg 运行器

        Args:
            config: 直播转码配置
            ffmpeg_path: ffmpeg 可执行文件路径，默认使用配置中的路径
        """
        self.config = config
        self.ffmpeg_path = ffmpeg_path or config.ffmpeg_path

    def check_available(self) -> bool:
        """检查 ffmpeg 可执行文件是否存在

        Returns:
            是否可用
        """
        if os.path.sep in self.ffmpeg_path:
            return os.path.isfile(self.ffmpeg_path) and os.access(self.ffmpeg_path, os.X_OK)
        return shutil.which(self.ffmpeg_path) is not None

    def build_command(
        self,
        stream_key: str,
        profiles: Sequence[RenditionProfile]
    ) -> List[str]:
        """构建 FFmpeg ABR 命令

        单路 RTMP 输入，每个档位一路视频输出，共享同一路音频。
        输出路径都是相对路径，进程的工作目录即为输出目录。

        Args:
            stream_key: 推流密钥
            profiles: 有序档位序列

        Returns:
            FFmpeg 命令列表
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel", self.config.loglevel,
            "-nostdin",
        ]

        # 输入
        cmd.extend(["-i", self.config.get_input_url(stream_key)])

        # 流映射：每个档位一路视频，音频只映射一次
        for _ in profiles:
            cmd.extend(["-map", "0:v:0"])
        cmd.extend(["-map", "0:a:0"])

        # 视频编码器
        cmd.extend(["-c:v", self.config.video_encoder])
        if "x264" in self.config.video_encoder.lower():
            cmd.extend(["-preset", self.config.x264_preset])

        cmd.extend(self._get_gop_params())

        # 各档位编码参数
        for index, profile in enumerate(profiles):
            cmd.extend(self._get_variant_params(index, profile))

        # 音频编码参数
        cmd.extend(["-c:a", self.config.audio_encoder])
        if self.config.audio_bitrate:
            cmd.extend(["-b:a", self.config.audio_bitrate])

        # HLS 输出参数
        cmd.extend(self._get_hls_params(len(profiles)))

        return cmd

    def _get_gop_params(self) -> List[str]:
        """获取关键帧参数

        Returns:
            关键帧参数列表
        """
        gop_size = str(self.config.get_effective_gop_size())
        return [
            "-g", gop_size,
            "-keyint_min", gop_size,
            "-sc_threshold", "0",
            "-pix_fmt", "yuv420p",
        ]

    def _get_variant_params(self, index: int, profile: RenditionProfile) -> List[str]:
        """获取单个档位的视频编码参数

        Args:
            index: 变体编号
            profile: 码率档位

        Returns:
            视频编码参数列表
        """
        bitrate = f"{profile.bitrate_kbps}k"
        return [
            f"-b:v:{index}", bitrate,
            f"-s:v:{index}", profile.resolution,
            f"-maxrate:v:{index}", bitrate,
            f"-bufsize:v:{index}", f"{profile.bitrate_kbps * 2}k",
        ]

    def _get_hls_params(self, variant_count: int) -> List[str]:
        """获取 HLS 输出参数

        Args:
            variant_count: 变体数量

        Returns:
            HLS 参数列表
        """
        params = ["-f", "hls"]

        params.extend(["-hls_time", str(self.config.segment_duration)])
        params.extend(["-hls_list_size", str(self.config.playlist_size)])
        if self.config.hls_flags:
            params.extend(["-hls_flags", self.config.hls_flags])

        params.extend(["-hls_segment_type", "mpegts"])
        params.extend(["-hls_segment_filename", SEGMENT_FILENAME_PATTERN])

        # master.m3u8 由 PlaylistGenerator 生成，这里不传 -master_pl_name
        params.extend(["-var_stream_map", build_var_stream_map(variant_count)])

        params.extend(["-y", VARIANT_PLAYLIST_PATTERN])
        return params

    def start_process(
        self,
        command: List[str],
        cwd: str,
        log_path: str
    ) -> subprocess.Popen:
        """启动 FFmpeg 进程（不阻塞）

        Args:
            command: FFmpeg 命令
            cwd: 工作目录（即输出目录）
            log_path: 日志文件路径

        Returns:
            subprocess.Popen 对象

        Raises:
            SpawnError: 可执行文件不存在、目录不可写等
        """
        try:
            os.makedirs(cwd, exist_ok=True)
            os.makedirs(os.path.dirname(log_path) or ".", exist_ok=True)
            log_file = open(log_path, "w")
        except OSError as e:
            raise SpawnError(f"Cannot prepare output for FFmpeg: {e}") from e

        try:
            process = subprocess.Popen(
                command,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
            )
        except (OSError, ValueError) as e:
            raise SpawnError(f"Failed to start FFmpeg: {e}") from e
        finally:
            # 子进程持有自己的文件描述符
            log_file.close()

        logger.info(f"Started FFmpeg process with PID {process.pid}")
        return process

    def get_command_line_string(self, command: List[str]) -> str:
        """获取命令行字符串（用于日志记录）

        Args:
            command: FFmpeg 命令列表

        Returns:
            命令行字符串，推流密钥已脱敏
        """
        sanitized = []
        for i, arg in enumerate(command):
            if i > 0 and command[i - 1] == "-i":
                sanitized.append(arg.rsplit("/", 1)[0] + "/<stream_key>")
            elif " " in arg:
                sanitized.append(f'"{arg}"')
            else:
                sanitized.append(arg)
        return " ".join(sanitized)


def build_var_stream_map(variant_count: int) -> str:
    """构建 -var_stream_map 参数

    Args:
        variant_count: 变体数量

    Returns:
        如 "v:0,a:0 v:1,a:0 v:2,a:0"
    """
    return " ".join(f"v:{i},a:0" for i in range(variant_count))


def get_ffmpeg_runner(config: LiveTranscodeConfig, ffmpeg_path: Optional[str] = None) -> FFmpegRunner:
    """获取 FFmpeg 运行器实例

    Args:
        config: 直播转码配置
        ffmpeg_path: ffmpeg 可执行文件路径

    Returns:
        FFmpegRunner 实例
    """
    return FFmpegRunner(config, ffmpeg_path)
