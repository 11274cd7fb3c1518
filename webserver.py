#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
import sys
import json
import atexit
import logging

# Add current directory to Python path to ensure modules can be imported
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flask import Flask, jsonify
from flask_cors import CORS

from modules.live_transcode import (
    StatusNotifier,
    StorageSync,
    S3Uploader,
    get_ffmpeg_runner,
    get_live_transcode_config,
    get_transcode_supervisor,
)
from modules.live_transcode import api as live_api

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

# 配置较少日志输出的模块
for module in ['urllib3', 'requests', 'werkzeug', 'botocore', 'boto3', 's3transfer']:
    logging.getLogger(module).setLevel(logging.WARNING)

logger = logging.getLogger()

if not os.path.exists('logs'):
    os.makedirs('logs')

# 添加按日期滚动的文件处理器
from logging.handlers import TimedRotatingFileHandler
file_handler = TimedRotatingFileHandler(
    'logs/webserver.log',
    when='midnight',
    interval=1,
    backupCount=3  # 保留3天日志
)
file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
file_handler.setLevel(logging.INFO)
logger.addHandler(file_handler)

# Initialize Flask application
app = Flask(__name__)
CORS(app)  # Enable CORS

# Configuration file path
CONFIG_FILE = "config/config.json"

# 环境变量 -> live_transcode 配置项
ENV_OVERRIDES = {
    "FFMPEG_PATH": "ffmpeg_path",
    "MEDIA_ROOT": "media_root",
    "RTMP_BASE_URL": "rtmp_base_url",
    "HLS_BASE_URL": "hls_base_url",
    "S3_BUCKET": "s3_bucket",
    "S3_ENDPOINT_URL": "s3_endpoint_url",
    "S3_REGION": "s3_region",
    "S3_ACCESS_KEY": "s3_access_key",
    "S3_SECRET_KEY": "s3_secret_key",
    "S3_PUBLIC_BASE_URL": "s3_public_base_url",
    "STATUS_WEBHOOK_URL": "status_webhook_url",
}


# Load configuration
def load_config():
    """Load configuration file"""
    config = {
        "live_transcode": {
            "media_root": "media",
            "ffmpeg_path": "ffmpeg",
            "rtmp_base_url": "rtmp://localhost/live",
            "segment_duration": 4,
            "playlist_size": 10,
            "grace_period": 5,
            "health_check_interval": 5,
            "max_restarts": 1,
            "profiles": [
                {"name": "1080p", "width": 1920, "height": 1080, "bitrate_kbps": 5000},
                {"name": "720p", "width": 1280, "height": 720, "bitrate_kbps": 2500},
                {"name": "480p", "width": 854, "height": 480, "bitrate_kbps": 900},
                {"name": "360p", "width": 640, "height": 360, "bitrate_kbps": 400},
            ],
            "storage_enabled": False,
            "status_webhook_url": "",
        }
    }
    try:
        if os.path.exists(CONFIG_FILE):
            with open(CONFIG_FILE, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
                config.update(loaded_config)
                logging.info(f"Loaded configuration file: {CONFIG_FILE}")
        else:
            # Create config directory if it doesn't exist
            os.makedirs(os.path.dirname(CONFIG_FILE), exist_ok=True)
            # Save default config
            with open(CONFIG_FILE, 'w', encoding='utf-8') as f:
                json.dump(config, f, ensure_ascii=False, indent=2)
                logging.info(f"Created default configuration file: {CONFIG_FILE}")
    except (OSError, ValueError) as e:
        logging.error(f"Failed to load configuration file: {str(e)}")

    # 优先使用环境变量
    section = config.setdefault("live_transcode", {})
    for env_name, key in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            section[key] = value
            logging.info(f"Using {key} from environment")
    if os.environ.get("S3_BUCKET"):
        section["storage_enabled"] = True

    return config


# Get current configuration
CURRENT_CONFIG = load_config()
LIVE_CONFIG = get_live_transcode_config(CURRENT_CONFIG)

notifier = None
if LIVE_CONFIG.status_webhook_url:
    notifier = StatusNotifier(LIVE_CONFIG.status_webhook_url, timeout=LIVE_CONFIG.webhook_timeout)
    logging.info(f"Status webhook enabled: {LIVE_CONFIG.status_webhook_url}")

ffmpeg_runner = get_ffmpeg_runner(LIVE_CONFIG)
if not ffmpeg_runner.check_available():
    logging.error(f"FFmpeg binary not found at path: {LIVE_CONFIG.ffmpeg_path}")

supervisor = get_transcode_supervisor(
    LIVE_CONFIG,
    runner=ffmpeg_runner,
    on_state_change=notifier.notify if notifier else None,
)

storage_sync = None
if LIVE_CONFIG.storage_enabled:
    storage_sync = StorageSync(
        LIVE_CONFIG,
        S3Uploader(LIVE_CONFIG),
        source=supervisor.active_output_dirs,
    )
    storage_sync.start()
    logging.info(f"Storage sync enabled, bucket: {LIVE_CONFIG.s3_bucket}")

live_api.init_supervisor(supervisor, storage_sync)
live_api.register_routes(app)


@app.route('/health', methods=['GET'])
def health():
    """Health check"""
    return jsonify({
        "status": "ok",
        "summary": supervisor.get_status_summary(),
    })


def shutdown():
    """Stop background threads and all encoder processes"""
    if storage_sync is not None:
        storage_sync.stop()
    supervisor.shutdown()
    if notifier is not None:
        notifier.close()


atexit.register(shutdown)


# Start the server
if __name__ == '__main__':
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 8001)), debug=False, threaded=True)
