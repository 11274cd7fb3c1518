"""
HLS 主播放列表生成器

master.m3u8 只由这里生成，FFmpeg 不再传 -master_pl_name，
避免两个写入方互相覆盖。子播放列表和切片的命名规则也统一定义在这里，
FFmpeg 命令构建时引用同一组函数，保证两边的文件名一致。
"""

from typing import Sequence

from .profiles import RenditionProfile

MASTER_PLAYLIST_NAME = "master.m3u8"

# FFmpeg 的 %v 会被替换为变体编号
VARIANT_PLAYLIST_PATTERN = "stream_%v.m3u8"
SEGMENT_FILENAME_PATTERN = "seg_%v_%03d.ts"


def variant_playlist_name(index: int) -> str:
    """获取变体子播放列表文件名

    Args:
        index: 变体编号（档位在目录中的下标）

    Returns:
        如 "stream_0.m3u8"
    """
    return VARIANT_PLAYLIST_PATTERN.replace("%v", str(index))


def segment_file_name(index: int, sequence: int) -> str:
    """获取切片文件名

    Args:
        index: 变体编号
        sequence: 切片序号

    Returns:
        如 "seg_0_007.ts"
    """
    return SEGMENT_FILENAME_PATTERN.replace("%v", str(index)) % sequence


class PlaylistGenerator:
    """HLS 主播放列表生成器

    纯函数式：同样的档位序列总是生成完全相同的文本。
    """

    def __init__(self, version: int = 3):
        self.version = version

    def generate_master(self, profiles: Sequence[RenditionProfile]) -> str:
        """生成 ABR 主播放列表

        每个档位输出一行 #EXT-X-STREAM-INF 和对应的子播放列表文件名，
        顺序与目录顺序一致。档位为空时只输出头部（调用方应视为配置错误）。

        Args:
            profiles: 有序档位序列

        Returns:
            m3u8 文本
        """
        lines = [
            "#EXTM3U",
            f"#EXT-X-VERSION:{self.version}",
        ]

        for index, profile in enumerate(profiles):
            lines.append(
                f"#EXT-X-STREAM-INF:BANDWIDTH={profile.bandwidth},"
                f"RESOLUTION={profile.resolution}"
            )
            lines.append(variant_playlist_name(index))

        return "\n".join(lines) + "\n"


def generate_master(profiles: Sequence[RenditionProfile]) -> str:
    """使用默认生成器生成主播放列表"""
    return PlaylistGenerator().generate_master(profiles)
