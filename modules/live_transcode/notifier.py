"""
直播状态回调

任务状态变化时把直播的在线/离线状态推送给业务服务（写入主播的 isStreaming 等字段）。
"""

import queue
import threading
import logging
from typing import Any, Dict

import requests

logger = logging.getLogger(__name__)

LIVE_STATES = ("Starting", "Running")


class StatusNotifier:
    """状态回调客户端

    由单个后台线程按入队顺序依次发送，不阻塞转码控制流程；发送失败只记录日志。
    """

    def __init__(self, webhook_url: str, timeout: float = 5.0, session=None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = session or requests.Session()

        self._queue = queue.Queue()
        self._thread = None
        self._thread_lock = threading.Lock()

    def build_payload(self, status: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "streamKey": status.get("streamKey"),
            "state": status.get("state"),
            "isLive": status.get("state") in LIVE_STATES,
            "startedAt": status.get("startedAt"),
            "error": status.get("error"),
        }

    def notify(self, status: Dict[str, Any]):
        """异步发送状态

        Args:
            status: TranscodeJob.to_dict() 的结果
        """
        self._queue.put(self.build_payload(status))
        self._start_worker()

    def _start_worker(self):
        with self._thread_lock:
            if self._thread is None or not self._thread.is_alive():
                self._thread = threading.Thread(
                    target=self._send_loop,
                    daemon=True,
                    name="LiveStatusNotify"
                )
                self._thread.start()

    def _send_loop(self):
        while True:
            payload = self._queue.get()
            try:
                if payload is None:
                    return
                self.send(payload)
            except Exception as e:
                logger.error(f"Error in status webhook loop: {e}")
            finally:
                self._queue.task_done()

    def join(self):
        """等待已入队的状态全部发送完"""
        self._queue.join()

    def close(self, timeout: float = 5.0):
        """发送完剩余状态后停止后台线程"""
        with self._thread_lock:
            thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._queue.put(None)
        thread.join(timeout=timeout)

    def send(self, payload: Dict[str, Any]) -> bool:
        """同步发送状态

        Args:
            payload: 回调内容

        Returns:
            是否发送成功
        """
        try:
            resp = self.session.post(self.webhook_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning(f"Status webhook failed for stream {payload.get('streamKey')}: {e}")
            return False
