"""
直播 ABR 转码服务模块

接收主播的 RTMP 推流，使用 FFmpeg 输出多码率 HLS（各档位子播放列表 + 主播放列表），
播放器可根据带宽在档位间切换。

核心特性：
- 每个推流密钥同时最多一个转码进程，重复推流会先停止旧进程
- master.m3u8 由服务端生成，与 FFmpeg 的 -var_stream_map 使用同一套命名规则
- 4 秒切片，10 个切片的滑动窗口，自动删除旧切片
- 后台健康检查，进程意外退出时有限次数自动重启
- 可选同步到 S3 兼容对象存储
"""

from .config import LiveTranscodeConfig, get_live_transcode_config
from .errors import LiveTranscodeError, SpawnError, JobConfigError, InvalidStreamKeyError
from .profiles import RenditionProfile, ProfileCatalog, DEFAULT_PROFILES
from .playlist import PlaylistGenerator, generate_master
from .ffmpeg import FFmpegRunner, get_ffmpeg_runner
from .job import TranscodeJob, JobState
from .supervisor import TranscodeSupervisor, get_transcode_supervisor
from .storage import S3Uploader, StorageSync
from .notifier import StatusNotifier

__all__ = [
    'LiveTranscodeConfig',
    'get_live_transcode_config',
    'LiveTranscodeError',
    'SpawnError',
    'JobConfigError',
    'InvalidStreamKeyError',
    'RenditionProfile',
    'ProfileCatalog',
    'DEFAULT_PROFILES',
    'PlaylistGenerator',
    'generate_master',
    'FFmpegRunner',
    'get_ffmpeg_runner',
    'TranscodeJob',
    'JobState',
    'TranscodeSupervisor',
    'get_transcode_supervisor',
    'S3Uploader',
    'StorageSync',
    'StatusNotifier',
]
