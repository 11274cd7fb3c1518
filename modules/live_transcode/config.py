"""
直播转码配置模块

定义直播 ABR 转码相关的配置参数和默认值。
"""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .profiles import ProfileCatalog


@dataclass
class LiveTranscodeConfig:
    """直播转码配置

    从全局配置的 live_transcode 段读取参数，提供默认值。
    """

    # 基础配置
    media_root: str = "media"
    log_dir: str = "logs/ffmpeg"
    ffmpeg_path: str = "ffmpeg"
    rtmp_base_url: str = "rtmp://localhost/live"
    hls_base_url: str = ""  # 为空时使用本服务的 /live/<key>/ 路由

    # HLS 参数
    segment_duration: int = 4  # 切片时长（秒）
    playlist_size: int = 10  # 滑动窗口切片数
    hls_flags: str = "delete_segments"  # 删除窗口外的旧切片，磁盘占用有上限

    # 编码器配置
    video_encoder: str = "libx264"
    x264_preset: str = "veryfast"
    audio_encoder: str = "aac"
    audio_bitrate: str = "128k"
    gop_size: Optional[int] = None  # 为空时按 30fps * segment_duration 计算

    # FFmpeg 日志级别
    loglevel: str = "warning"

    # 生命周期
    grace_period: float = 5.0  # 停止时等待进程退出的时间（秒），超时后强制 kill
    health_check_interval: float = 5.0  # 健康检查间隔（秒）
    max_restarts: int = 1  # 进程意外退出后的自动重启次数上限
    failed_retention: int = 300  # Failed 任务在注册表中保留的时间（秒）
    cleanup_on_stop: bool = False  # 停止后是否删除输出目录

    # 码率档位（为空使用默认档位）
    profiles: List[Dict[str, Any]] = field(default_factory=list)

    # 对象存储同步
    storage_enabled: bool = False
    s3_bucket: str = ""
    s3_endpoint_url: Optional[str] = None
    s3_region: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_prefix: str = "live"
    s3_public_base_url: str = ""
    s3_public_read: bool = True
    sync_interval: float = 2.0

    # 状态回调
    status_webhook_url: str = ""
    webhook_timeout: float = 5.0

    _INT_FIELDS = ("segment_duration", "playlist_size", "max_restarts", "failed_retention")
    _FLOAT_FIELDS = ("grace_period", "health_check_interval", "sync_interval", "webhook_timeout")

    @classmethod
    def from_app_config(cls, app_config: dict) -> 'LiveTranscodeConfig':
        """从应用配置创建 LiveTranscodeConfig

        Args:
            app_config: 全局配置字典

        Returns:
            LiveTranscodeConfig 实例
        """
        section = app_config.get("live_transcode", {}) or {}

        # 合并默认值
        config = cls()

        for key, value in section.items():
            if key.startswith("_") or not hasattr(config, key):
                continue
            if key in cls._INT_FIELDS:
                value = int(value)
            elif key in cls._FLOAT_FIELDS:
                value = float(value)
            elif key == "gop_size":
                value = int(value) if value else None
            setattr(config, key, value)

        return config

    def build_catalog(self) -> ProfileCatalog:
        """根据配置构建码率档位目录"""
        return ProfileCatalog.from_config(self.profiles)

    def get_effective_gop_size(self) -> int:
        """获取 GOP 大小（帧数）

        所有变体的关键帧间隔必须与切片时长对齐，否则各档位切片边界不一致，
        播放器切换档位时会出现跳帧。
        """
        if self.gop_size:
            return self.gop_size
        return 30 * self.segment_duration

    def get_output_dir(self, stream_key: str) -> str:
        """获取直播输出目录（基于推流密钥，每个主播唯一）

        Args:
            stream_key: 推流密钥

        Returns:
            输出目录路径
        """
        return os.path.join(self.media_root, "live", stream_key)

    def get_log_path(self, stream_key: str) -> str:
        """获取 FFmpeg 日志文件路径

        Args:
            stream_key: 推流密钥

        Returns:
            日志文件路径（不放在输出目录内，避免被同步到对象存储）
        """
        return os.path.join(self.log_dir, f"{stream_key}.log")

    def get_input_url(self, stream_key: str) -> str:
        """获取 RTMP 输入地址

        Args:
            stream_key: 推流密钥

        Returns:
            如 "rtmp://localhost/live/<stream_key>"
        """
        return f"{self.rtmp_base_url.rstrip('/')}/{stream_key}"

    def get_playback_url(self, stream_key: str) -> str:
        """获取主播放列表的播放地址"""
        base = self.hls_base_url.rstrip("/") if self.hls_base_url else "/live"
        return f"{base}/{stream_key}/master.m3u8"


def get_live_transcode_config(app_config: dict) -> LiveTranscodeConfig:
    """获取直播转码配置的便捷函数

    Args:
        app_config: 全局配置字典

    Returns:
        LiveTranscodeConfig 实例
    """
    return LiveTranscodeConfig.from_app_config(app_config)
