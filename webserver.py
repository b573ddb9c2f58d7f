#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
import sys
import json
import copy
import atexit

# Add current directory to Python path to ensure modules can be imported
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
import logging
import traceback

from transcription_service import create_transcriber, get_transcription_provider
from modules.moderation_client import ContentModerationClient, configure_moderation_from_dict
from modules.verification import (
    ToolAvailabilityChecker,
    VerificationManager,
    VerificationPipeline,
    get_verification_config,
)
from modules.verification import api as verification_api

# Configure logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

# 配置较少日志输出的模块
for module in ['urllib3', 'requests', 'werkzeug', 'chardet.charsetprober']:
    logging.getLogger(module).setLevel(logging.WARNING)

logger = logging.getLogger()

# 设置文件日志处理器
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

# Configuration file path
CONFIG_FILE = os.environ.get("CONFIG_FILE", "config/config.json")

DEFAULT_CONFIG = {
    "max_upload_mb": 500,
    "verification": {
        "ffmpeg_path": "ffmpeg",
        "ffprobe_path": "ffprobe",
        "tool_timeout": 120,
        "probe_timeout": 30,
        "job_timeout": 600,
        "max_concurrent_jobs": 2,
        "transcode_concurrency": 1,
        "frame_concurrency": 0,
        "transcribe_concurrency": 3,
        "frame_count": 3,
        "require_video_frames": True,
        "transcription_language": "en-US",
        "reaper_interval": 300,
        "reaper_max_age": 3600,
        "record_ttl": 3600
    },
    "transcription": {
        "enabled": True,
        "provider": "speaches",
        "api_base_url": "http://localhost:8000/v1",
        "api_key": "cant-be-empty",
        "model": "Systran/faster-whisper-small",
        "timeout": 60
    },
    "moderation": {
        "api_url": "",
        "api_token": "",
        "model": "gpt-4o-mini",
        "timeout": 60,
        "fallback_on_error": False,
        "max_frames": 3
    }
}


# Load configuration
def load_config(config_file=CONFIG_FILE):
    """Load configuration file, creating it with defaults when missing"""
    config = copy.deepcopy(DEFAULT_CONFIG)
    try:
        if os.path.exists(config_file):
            with open(config_file, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
                config.update(loaded_config)
                logging.info(f"Loaded configuration file: {config_file}")
        else:
            # Create config directory if it doesn't exist
            os.makedirs(os.path.dirname(config_file) or ".", exist_ok=True)
            # Save default config
            with open(config_file, 'w', encoding='utf-8') as f:
                json.dump(config, f, ensure_ascii=False, indent=2)
                logging.info(f"Created default configuration file: {config_file}")
    except (OSError, ValueError) as e:
        logging.error(f"Failed to load configuration file: {str(e)}")

    return config


def build_verification_manager(config, transcriber=None, moderator=None, start_background=True):
    """Create the verification pipeline and job manager from the app configuration"""
    verification_config = get_verification_config(config)

    if transcriber is None:
        transcriber = create_transcriber(config.get("transcription"))
        logging.info(f"Transcription provider: {get_transcription_provider()}")
    if moderator is None:
        configure_moderation_from_dict(config.get("moderation"))
        moderator = ContentModerationClient()

    checker = ToolAvailabilityChecker(timeout=verification_config.version_probe_timeout)
    pipeline = VerificationPipeline(
        verification_config,
        transcriber=transcriber,
        moderator=moderator,
        checker=checker,
    )
    for tool in (verification_config.ffmpeg_path, verification_config.ffprobe_path):
        if not checker.is_available(tool):
            logging.warning(f"{tool} is not available; video and audio verification will fail")

    return VerificationManager(verification_config, pipeline, start_background=start_background)


def create_app(config=None, manager=None):
    """Create the Flask application"""
    config = config if config is not None else load_config()

    app = Flask(__name__)
    CORS(app)  # Enable CORS
    app.config['MAX_CONTENT_LENGTH'] = int(config.get("max_upload_mb") or 500) * 1024 * 1024

    if manager is None:
        manager = build_verification_manager(config)
        atexit.register(manager.stop)

    verification_api.init_verification_manager(manager)
    verification_api.register_routes(app)

    @app.errorhandler(413)
    def request_too_large(e):
        """Handle uploads above the configured size limit"""
        return jsonify({"status": "error", "message": "Uploaded file is too large"}), 413

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle uncaught exceptions"""
        if isinstance(e, HTTPException):
            return jsonify({"status": "error", "message": e.description}), e.code

        app.logger.error(f"Uncaught exception: {str(e)}")
        app.logger.error(traceback.format_exc())
        return jsonify({"status": "error", "message": "An unexpected error occurred on the server."}), 500

    return app


# Start the server
if __name__ == '__main__':
    app = create_app()
    app.run(host='0.0.0.0', port=int(os.environ.get('PORT', 8080)), debug=False)
