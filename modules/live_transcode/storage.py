"""
对象存储同步模块

把直播输出目录中的切片和播放列表上传到 S3 兼容存储，并返回公开地址。
只读取输出目录，不修改其中任何文件。
"""

import os
import time
import threading
import logging
from typing import Callable, Dict, List, Optional, Tuple

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import LiveTranscodeConfig
from .playlist import MASTER_PLAYLIST_NAME

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
}


def get_s3_client(config: LiveTranscodeConfig):
    """创建 S3 客户端

    Args:
        config: 直播转码配置

    Returns:
        boto3 S3 client
    """
    session = boto3.session.Session(
        aws_access_key_id=config.s3_access_key,
        aws_secret_access_key=config.s3_secret_key,
        region_name=config.s3_region,
    )
    return session.client(
        "s3",
        endpoint_url=config.s3_endpoint_url,  # 如 http://127.0.0.1:9000（MinIO）
        config=BotoConfig(
            s3={"addressing_style": "path"},
            signature_version="s3v4",
        ),
    )


def read_playlist_references(path: str) -> Optional[List[str]]:
    """读取播放列表引用的切片和子播放列表文件名

    Args:
        path: 播放列表路径

    Returns:
        文件名列表，读取失败返回 None
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.debug(f"Failed to read playlist {path}: {e}")
        return None

    references = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        name = os.path.basename(line.split("?", 1)[0])
        if os.path.splitext(name)[1].lower() in CONTENT_TYPES:
            references.append(name)
    return references


class S3Uploader:
    """S3 上传器"""

    def __init__(self, config: LiveTranscodeConfig, client=None):
        self.config = config
        self.client = client or get_s3_client(config)

    def upload(self, local_path: str, key: str) -> str:
        """上传单个文件

        Args:
            local_path: 本地文件路径
            key: 对象键

        Returns:
            公开访问地址
        """
        extra = {}
        suffix = os.path.splitext(local_path)[1].lower()
        if suffix in CONTENT_TYPES:
            extra["ContentType"] = CONTENT_TYPES[suffix]
        if suffix == ".m3u8":
            # 直播播放列表不断刷新，不能被缓存
            extra["CacheControl"] = "no-cache"
        if self.config.s3_public_read:
            extra["ACL"] = "public-read"

        self.client.upload_file(local_path, self.config.s3_bucket, key, ExtraArgs=extra or None)
        return self.public_url(key)

    def public_url(self, key: str) -> str:
        if self.config.s3_public_base_url:
            return f"{self.config.s3_public_base_url.rstrip('/')}/{key}"
        if self.config.s3_endpoint_url:
            return f"{self.config.s3_endpoint_url.rstrip('/')}/{self.config.s3_bucket}/{key}"
        return f"https://{self.config.s3_bucket}.s3.amazonaws.com/{key}"


class StorageSync:
    """输出目录同步器

    切片文件在最后修改时间早于一个切片时长，或已出现在播放列表中后才上传；
    播放列表在内容变化（mtime 变化）且其引用的文件都已上传后才重新上传。
    """

    def __init__(
        self,
        config: LiveTranscodeConfig,
        uploader,
        source: Optional[Callable[[], List[Tuple[str, str]]]] = None,
    ):
        """初始化同步器

        Args:
            config: 直播转码配置
            uploader: 提供 upload(local_path, key) -> url 和 public_url(key) 的上传器
            source: 返回 [(stream_key, output_dir)] 的回调，供后台循环使用
        """
        self.config = config
        self.uploader = uploader
        self.source = source
        self.lock = threading.Lock()
        # stream_key -> {文件名: 已上传时的 mtime}
        self._uploaded: Dict[str, Dict[str, float]] = {}
        self._urls: Dict[str, Dict[str, str]] = {}

        self._thread = None
        self._stop_event = threading.Event()

    def object_key(self, stream_key: str, filename: str) -> str:
        prefix = self.config.s3_prefix.strip("/")
        if prefix:
            return f"{prefix}/{stream_key}/{filename}"
        return f"{stream_key}/{filename}"

    def sync_directory(self, stream_key: str, output_dir: str, now: Optional[float] = None) -> Dict[str, str]:
        """同步一个输出目录

        Args:
            stream_key: 推流密钥
            output_dir: 输出目录
            now: 当前时间（测试用）

        Returns:
            本轮上传的 {文件名: 公开地址}
        """
        now = time.time() if now is None else now
        try:
            names = sorted(os.listdir(output_dir))
        except FileNotFoundError:
            return {}

        with self.lock:
            uploaded = dict(self._uploaded.get(stream_key, {}))

        segments = {}
        playlists = []
        for name in names:
            path = os.path.join(output_dir, name)
            suffix = os.path.splitext(name)[1].lower()
            if suffix not in CONTENT_TYPES:
                continue
            try:
                mtime = os.path.getmtime(path)
            except OSError:
                continue

            if suffix == ".ts":
                if name in uploaded:
                    continue
                if now - mtime < self.config.segment_duration:
                    continue
                segments[name] = (path, mtime)
            elif uploaded.get(name) != mtime:
                references = read_playlist_references(path)
                if references is None:
                    continue
                playlists.append((name, path, mtime, references))

        # 已写入播放列表的切片已经写完，不受切片时长限制
        for _, _, _, references in playlists:
            for ref in references:
                if ref.endswith(".ts") and ref not in uploaded and ref not in segments:
                    ref_path = os.path.join(output_dir, ref)
                    try:
                        segments[ref] = (ref_path, os.path.getmtime(ref_path))
                    except OSError:
                        continue

        # 子播放列表在主播放列表之前
        playlists.sort(key=lambda item: (item[0] == MASTER_PLAYLIST_NAME, item[0]))

        results = {}
        for name in sorted(segments):
            path, mtime = segments[name]
            url = self._upload(stream_key, name, path)
            if url is not None:
                uploaded[name] = mtime
                results[name] = url

        for name, path, mtime, references in playlists:
            missing = [ref for ref in references if ref not in uploaded]
            if missing:
                # 列表中的文件还没上传，先不更新远端播放列表
                logger.debug(f"Deferring {name} for stream {stream_key}, waiting for {missing}")
                continue
            url = self._upload(stream_key, name, path)
            if url is not None:
                uploaded[name] = mtime
                results[name] = url

        # 忘记磁盘上已不存在的文件
        present = set(names)
        uploaded = {name: mtime for name, mtime in uploaded.items() if name in present}

        with self.lock:
            self._uploaded[stream_key] = uploaded
            urls = self._urls.setdefault(stream_key, {})
            urls.update(results)
            for name in list(urls):
                if name not in present:
                    del urls[name]

        if results:
            logger.debug(f"Synced {len(results)} files for stream {stream_key}")
        return results

    def _upload(self, stream_key: str, name: str, path: str) -> Optional[str]:
        try:
            return self.uploader.upload(path, self.object_key(stream_key, name))
        except (BotoCoreError, ClientError, S3UploadFailedError, OSError) as e:
            # 切片可能已被 delete_segments 删除，下一轮重试
            logger.warning(f"Failed to upload {name} for stream {stream_key}: {e}")
            return None

    def get_public_url(self, stream_key: str, filename: str) -> Optional[str]:
        """获取已上传文件的公开地址

        Args:
            stream_key: 推流密钥
            filename: 文件名，如 master.m3u8

        Returns:
            公开地址，未上传返回 None
        """
        with self.lock:
            return self._urls.get(stream_key, {}).get(filename)

    def forget(self, stream_key: str):
        """清除某个直播的上传记录"""
        with self.lock:
            self._uploaded.pop(stream_key, None)
            self._urls.pop(stream_key, None)

    def sync_all(self) -> int:
        """同步所有活跃直播

        Returns:
            本轮上传的文件数
        """
        if self.source is None:
            return 0
        total = 0
        active_keys = set()
        for stream_key, output_dir in self.source():
            active_keys.add(stream_key)
            total += len(self.sync_directory(stream_key, output_dir))

        with self.lock:
            stale = [key for key in self._uploaded if key not in active_keys]
        for stream_key in stale:
            self.forget(stream_key)
        return total

    def start(self):
        """启动后台同步线程"""
        if self._thread is None or not self._thread.is_alive():
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._sync_loop,
                daemon=True,
                name="LiveStorageSync"
            )
            self._thread.start()

    def _sync_loop(self):
        while not self._stop_event.wait(self.config.sync_interval):
            try:
                self.sync_all()
            except Exception as e:
                logger.error(f"Error in storage sync loop: {e}")

    def stop(self):
        """停止后台同步线程"""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
