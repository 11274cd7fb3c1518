"""
ABR 码率档位定义

档位按画质从高到低排列，档位在列表中的下标即为 HLS 变体编号（variant index），
用于命名输出文件和构建 -var_stream_map。
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple


@dataclass(frozen=True)
class RenditionProfile:
    """单个码率档位"""

    name: str
    width: int
    height: int
    bitrate_kbps: int

    def __post_init__(self):
        for field_name in ("width", "height", "bitrate_kbps"):
            value = getattr(self, field_name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{field_name} must be a positive integer, got {value!r}")
        if not self.name:
            raise ValueError("profile name must not be empty")

    @property
    def bandwidth(self) -> int:
        """HLS BANDWIDTH 属性（bit/s）"""
        return self.bitrate_kbps * 1000

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "width": self.width,
            "height": self.height,
            "bitrate_kbps": self.bitrate_kbps,
        }


DEFAULT_PROFILES: Tuple[RenditionProfile, ...] = (
    RenditionProfile("1080p", 1920, 1080, 5000),
    RenditionProfile("720p", 1280, 720, 2500),
    RenditionProfile("480p", 854, 480, 900),
    RenditionProfile("360p", 640, 360, 400),
)


class ProfileCatalog:
    """码率档位目录

    只读的有序档位序列。修改配置只影响之后启动的任务，
    已运行的任务持有启动时的 snapshot()。
    """

    def __init__(self, profiles: Optional[Iterable[RenditionProfile]] = None):
        self._profiles: Tuple[RenditionProfile, ...] = tuple(
            DEFAULT_PROFILES if profiles is None else profiles
        )
        names = [p.name for p in self._profiles]
        if len(names) != len(set(names)):
            raise ValueError(f"duplicate profile names in catalog: {names}")

    @classmethod
    def from_config(cls, entries: Optional[List[Dict[str, Any]]]) -> 'ProfileCatalog':
        """从配置文件的 profiles 列表创建目录

        Args:
            entries: 形如 [{"name": "720p", "width": 1280, "height": 720, "bitrate_kbps": 2500}]

        Returns:
            ProfileCatalog 实例，entries 为空时使用默认档位
        """
        if not entries:
            return cls()
        profiles = []
        for entry in entries:
            # 兼容 "2500k" 这种写法
            bitrate = entry.get("bitrate_kbps", entry.get("bitrate"))
            if isinstance(bitrate, str):
                bitrate = int(bitrate.lower().rstrip("k"))
            profiles.append(RenditionProfile(
                name=str(entry["name"]),
                width=int(entry["width"]),
                height=int(entry["height"]),
                bitrate_kbps=bitrate,
            ))
        return cls(profiles)

    def snapshot(self) -> Tuple[RenditionProfile, ...]:
        return self._profiles

    def __iter__(self) -> Iterator[RenditionProfile]:
        return iter(self._profiles)

    def __len__(self) -> int:
        return len(self._profiles)

    def __getitem__(self, index: int) -> RenditionProfile:
        return self._profiles[index]

    def __repr__(self) -> str:
        return f"ProfileCatalog({[p.name for p in self._profiles]})"
