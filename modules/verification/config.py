"""
审核流水线配置模块

定义外部工具路径、超时、并发和采样相关的配置参数及默认值。
"""

import os
import tempfile
from dataclasses import dataclass


def _default_scratch_dir() -> str:
    return os.getenv(
        "VERIFICATION_SCRATCH_DIR",
        os.path.join(tempfile.gettempdir(), "content-verification"),
    )


@dataclass
class VerificationConfig:
    """审核配置

    从全局配置的 verification 段读取参数，提供默认值。
    """

    # 外部工具
    ffmpeg_path: str = os.getenv("FFMPEG_PATH", "ffmpeg")
    ffprobe_path: str = os.getenv("FFPROBE_PATH", "ffprobe")
    loglevel: str = "error"  # ffmpeg 日志级别

    # 临时目录
    scratch_dir: str = ""

    # 超时配置（秒）
    tool_timeout: int = 120  # 单次 ffmpeg 调用超时
    probe_timeout: int = 30  # ffprobe 探测超时
    version_probe_timeout: int = 10  # 可用性检测（-version）超时
    job_timeout: int = 600  # 单个任务总时长上限

    # 并发限制
    max_concurrent_jobs: int = 2  # 每进程同时运行的任务数
    transcode_concurrency: int = 1  # 音频片段提取并发数（1 = 顺序执行）
    frame_concurrency: int = 0  # 帧提取并发数（0 = 与帧数相同）
    transcribe_concurrency: int = 3  # 转写并发数

    # 音频采样
    clip_length: int = 60  # 单个片段时长
    short_media_threshold: int = 120  # 不超过该时长只取开头一段
    long_media_threshold: int = 180  # 超过该时长增加中段采样
    audio_sample_rate: int = 44100
    audio_channels: int = 2
    audio_codec: str = "libmp3lame"

    # 帧采样
    frame_count: int = 3
    frame_width: int = 320  # 缩放宽度（高度按比例）
    frame_quality: int = 5  # JPEG 质量（-q:v，越大越差）
    require_video_frames: bool = True  # 视频任务零帧时是否失败

    # 探测失败时的默认时长
    default_video_duration: float = 10.0
    default_audio_duration: float = 60.0

    # 文本提取
    text_cap: int = 10000
    evidence_text_cap: int = 5000  # 作为审核证据时的上限
    epub_max_documents: int = 5

    # 转写
    transcription_language: str = "en-US"

    # 清理
    reaper_interval: int = 300
    reaper_max_age: int = 3600  # 超过该时长的临时目录视为孤儿
    record_ttl: int = 3600  # 已结束任务记录的保留时长

    def __post_init__(self):
        if not self.scratch_dir:
            self.scratch_dir = _default_scratch_dir()

    @classmethod
    def from_app_config(cls, app_config: dict) -> 'VerificationConfig':
        """从应用配置创建 VerificationConfig

        Args:
            app_config: 全局配置字典

        Returns:
            VerificationConfig 实例
        """
        section = (app_config or {}).get("verification", {}) or {}

        config = cls()

        # 外部工具
        if section.get("ffmpeg_path"):
            config.ffmpeg_path = str(section["ffmpeg_path"])
        if section.get("ffprobe_path"):
            config.ffprobe_path = str(section["ffprobe_path"])
        if "loglevel" in section:
            config.loglevel = section["loglevel"] or "error"
        if section.get("scratch_dir"):
            config.scratch_dir = str(section["scratch_dir"])

        # 超时
        if "tool_timeout" in section:
            config.tool_timeout = int(section["tool_timeout"] or 120)
        if "probe_timeout" in section:
            config.probe_timeout = int(section["probe_timeout"] or 30)
        if "version_probe_timeout" in section:
            config.version_probe_timeout = int(section["version_probe_timeout"] or 10)
        if "job_timeout" in section:
            config.job_timeout = int(section["job_timeout"] or 600)

        # 并发
        if "max_concurrent_jobs" in section:
            config.max_concurrent_jobs = max(1, int(section["max_concurrent_jobs"] or 2))
        if "transcode_concurrency" in section:
            config.transcode_concurrency = max(1, int(section["transcode_concurrency"] or 1))
        if "frame_concurrency" in section:
            config.frame_concurrency = max(0, int(section["frame_concurrency"] or 0))
        if "transcribe_concurrency" in section:
            config.transcribe_concurrency = max(1, int(section["transcribe_concurrency"] or 3))

        # 采样
        if "clip_length" in section:
            config.clip_length = int(section["clip_length"] or 60)
        if "short_media_threshold" in section:
            config.short_media_threshold = int(section["short_media_threshold"] or 120)
        if "long_media_threshold" in section:
            config.long_media_threshold = int(section["long_media_threshold"] or 180)
        if "frame_count" in section:
            config.frame_count = max(1, int(section["frame_count"] or 3))
        if "frame_width" in section:
            config.frame_width = int(section["frame_width"] or 320)
        if "frame_quality" in section:
            config.frame_quality = int(section["frame_quality"] or 5)
        if "require_video_frames" in section:
            config.require_video_frames = bool(section["require_video_frames"])

        # 默认时长
        if "default_video_duration" in section:
            config.default_video_duration = float(section["default_video_duration"] or 10)
        if "default_audio_duration" in section:
            config.default_audio_duration = float(section["default_audio_duration"] or 60)

        # 文本
        if "text_cap" in section:
            config.text_cap = int(section["text_cap"] or 10000)
        if "evidence_text_cap" in section:
            config.evidence_text_cap = int(section["evidence_text_cap"] or 5000)
        if "epub_max_documents" in section:
            config.epub_max_documents = int(section["epub_max_documents"] or 5)

        if section.get("transcription_language"):
            config.transcription_language = str(section["transcription_language"])

        # 清理
        if "reaper_interval" in section:
            config.reaper_interval = int(section["reaper_interval"] or 300)
        if "reaper_max_age" in section:
            config.reaper_max_age = int(section["reaper_max_age"] or 3600)
        if "record_ttl" in section:
            config.record_ttl = int(section["record_ttl"] or 3600)

        return config

    def get_effective_frame_concurrency(self, frame_count: int) -> int:
        """获取帧提取的有效并发数

        Args:
            frame_count: 本次提取的帧数

        Returns:
            线程池大小
        """
        if self.frame_concurrency > 0:
            return max(1, min(self.frame_concurrency, frame_count))
        return max(1, frame_count)


def get_verification_config(app_config: dict) -> VerificationConfig:
    """获取审核配置的便捷函数"""
    return VerificationConfig.from_app_config(app_config)
