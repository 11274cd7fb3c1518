"""
直播转码控制 API 端点

媒体服务器在推流开始/结束时回调这里，前端通过状态接口查询直播是否在线。
"""

import os
import logging
from flask import jsonify, request, send_from_directory

from .playlist import MASTER_PLAYLIST_NAME

logger = logging.getLogger(__name__)

# 全局任务管理器实例（在 webserver.py 中初始化）
TRANSCODE_SUPERVISOR = None
STORAGE_SYNC = None

HLS_MIMETYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}


def init_supervisor(supervisor, storage_sync=None):
    """初始化任务管理器

    Args:
        supervisor: TranscodeSupervisor 实例
        storage_sync: StorageSync 实例（可选）
    """
    global TRANSCODE_SUPERVISOR, STORAGE_SYNC
    TRANSCODE_SUPERVISOR = supervisor
    STORAGE_SYNC = storage_sync
    logger.info("Live transcode supervisor initialized")


def _get_stream_key(stream_key=None):
    """从路径参数或 JSON 请求体中获取推流密钥"""
    if stream_key:
        return stream_key
    data = request.get_json(silent=True) or {}
    return data.get("streamKey") or data.get("stream_key") or ""


def _playback_url(stream_key):
    if STORAGE_SYNC is not None:
        url = STORAGE_SYNC.get_public_url(stream_key, MASTER_PLAYLIST_NAME)
        if url:
            return url
    return TRANSCODE_SUPERVISOR.config.get_playback_url(stream_key)


def register_routes(app):
    """注册直播转码 API 路由

    Args:
        app: Flask 应用实例
    """

    @app.route('/stream/start', methods=['POST'])
    @app.route('/stream/start/<stream_key>', methods=['POST'])
    def live_stream_start(stream_key=None):
        """推流开始

        请求体：
        {
            "streamKey": "abc123"
        }

        Returns:
            启动结果 JSON，启动失败时返回 500 和错误信息
        """
        if TRANSCODE_SUPERVISOR is None:
            return jsonify({"error": "Transcode supervisor not initialized"}), 500

        stream_key = _get_stream_key(stream_key)
        if not stream_key:
            return jsonify({"success": False, "error": "streamKey is required"}), 400

        success, message, job = TRANSCODE_SUPERVISOR.on_ingest_started(stream_key)

        if job is None:
            return jsonify({"success": False, "error": message}), 400

        response = {
            "success": success,
            "message": message,
            "status": job.to_dict(),
        }
        if success:
            response["playbackUrl"] = _playback_url(stream_key)
            return jsonify(response)

        response["error"] = message
        return jsonify(response), 500

    @app.route('/stream/stop', methods=['POST'])
    @app.route('/stream/stop/<stream_key>', methods=['POST'])
    def live_stream_stop(stream_key=None):
        """推流结束

        未知密钥同样返回成功（推流结束事件可能重复到达）。

        Returns:
            操作结果 JSON
        """
        if TRANSCODE_SUPERVISOR is None:
            return jsonify({"error": "Transcode supervisor not initialized"}), 500

        stream_key = _get_stream_key(stream_key)
        if not stream_key:
            return jsonify({"success": False, "error": "streamKey is required"}), 400

        stopped = TRANSCODE_SUPERVISOR.on_ingest_stopped(stream_key)
        if STORAGE_SYNC is not None:
            STORAGE_SYNC.forget(stream_key)

        return jsonify({
            "success": True,
            "stopped": stopped,
            "message": "Stream stopped" if stopped else "Stream not found",
        })

    @app.route('/stream/status/<stream_key>', methods=['GET'])
    def live_stream_status(stream_key):
        """获取直播转码状态

        Args:
            stream_key: 推流密钥

        Returns:
            {"state": ..., "startedAt": ...}，不存在返回 404
        """
        if TRANSCODE_SUPERVISOR is None:
            return jsonify({"error": "Transcode supervisor not initialized"}), 500

        status = TRANSCODE_SUPERVISOR.get_status(stream_key)
        if status is None:
            return jsonify({"error": "not found", "streamKey": stream_key}), 404

        if status["state"] == "Running":
            status["playbackUrl"] = _playback_url(stream_key)
        return jsonify(status)

    @app.route('/stream/jobs', methods=['GET'])
    def live_stream_jobs():
        """获取所有直播转码任务

        Returns:
            任务列表 JSON
        """
        if TRANSCODE_SUPERVISOR is None:
            return jsonify({"error": "Transcode supervisor not initialized"}), 500

        return jsonify({
            "success": True,
            "jobs": TRANSCODE_SUPERVISOR.get_all_jobs(),
            "summary": TRANSCODE_SUPERVISOR.get_status_summary(),
        })

    @app.route('/live/<stream_key>/<filename>', methods=['GET'])
    def live_stream_file(stream_key, filename):
        """获取播放列表或切片文件

        Args:
            stream_key: 推流密钥
            filename: master.m3u8、stream_<i>.m3u8 或 seg_<i>_<NNN>.ts

        Returns:
            文件内容
        """
        if TRANSCODE_SUPERVISOR is None:
            return "Transcode supervisor not initialized", 500

        suffix = os.path.splitext(filename)[1].lower()
        if suffix not in HLS_MIMETYPES:
            return "Not found", 404

        output_dir = TRANSCODE_SUPERVISOR.get_output_dir(stream_key)
        if not output_dir:
            return "Stream offline", 404

        response = send_from_directory(
            os.path.abspath(output_dir), filename, mimetype=HLS_MIMETYPES[suffix], max_age=0
        )
        if suffix == ".m3u8":
            response.headers["Cache-Control"] = "no-cache"
        return response

