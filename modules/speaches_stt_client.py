from __future__ import annotations

import math
import mimetypes
import os
from dataclasses import dataclass
from typing import Optional, Dict, Any, List

import logging
import requests

from modules.verification.models import TranscriptionResult


@dataclass
class SpeachesConfig:
    """
    审核转写使用的 Speaches 服务配置（OpenAI 兼容 /audio/transcriptions）

    默认值来自环境变量 SPEACHES_BASE_URL / SPEACHES_API_KEY /
    SPEACHES_STT_MODEL / SPEACHES_TIMEOUT。审核片段长度为 60 秒，
    超时默认也放宽到 60 秒。
    """

    base_url: str = os.getenv("SPEACHES_BASE_URL", "http://localhost:8000/v1")
    api_key: str = os.getenv("SPEACHES_API_KEY", "cant-be-empty")
    model: str = os.getenv("SPEACHES_STT_MODEL", "Systran/faster-whisper-small")
    timeout: float = float(os.getenv("SPEACHES_TIMEOUT", "60"))
    enabled: bool = True

    @classmethod
    def from_section(cls, section: Optional[Dict[str, Any]]) -> "SpeachesConfig":
        """由 transcription 配置段生成配置，缺失的字段保留默认值"""
        cfg = cls()
        if not isinstance(section, dict):
            return cfg

        cfg.base_url = _first_text(section, "api_base_url", "base_url") or cfg.base_url
        cfg.api_key = _first_text(section, "api_key", "api_token") or cfg.api_key
        cfg.model = _first_text(section, "model") or cfg.model
        if isinstance(section.get("enabled"), bool):
            cfg.enabled = section["enabled"]
        try:
            cfg.timeout = float(section.get("timeout", cfg.timeout))
        except (TypeError, ValueError):
            pass
        return cfg


def _first_text(section: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = str(section.get(key) or "").strip()
        if value:
            return value
    return ""


# 模块级默认配置，由 config.json 的 transcription 段驱动
DEFAULT_SPEACHES_CONFIG = SpeachesConfig()


def configure_speaches_from_dict(config_section: Optional[Dict[str, Any]]) -> None:
    """
    更新模块级默认配置，例如:
    {"provider": "speaches", "api_base_url": "http://stt:8000/v1", "timeout": 60}
    """
    global DEFAULT_SPEACHES_CONFIG
    DEFAULT_SPEACHES_CONFIG = SpeachesConfig.from_section(config_section)


class SpeachesSTTClient:
    """审核片段转写客户端（Speaches，OpenAI 兼容接口）"""

    def __init__(self, config: Optional[SpeachesConfig] = None) -> None:
        self.config = config or DEFAULT_SPEACHES_CONFIG
        self.logger = logging.getLogger("Transcription.Speaches")

    @property
    def endpoint(self) -> str:
        return (self.config.base_url or "").rstrip("/") + "/audio/transcriptions"

    def transcribe(
        self,
        audio_bytes: bytes,
        mime_hint: str = "audio/mpeg",
        language: Optional[str] = None,
    ) -> TranscriptionResult:
        """
        上传一段音频，返回文本、置信度和语言。

        请求 verbose_json 以拿到分段的 avg_logprob 估算置信度；
        HTTP 或解析失败时返回空文本、零置信度的结果。
        """
        if not audio_bytes or not self.config.enabled:
            return TranscriptionResult()

        lang_code = _language_code(language)
        form = {"model": self.config.model, "response_format": "verbose_json"}
        if lang_code:
            form["language"] = lang_code
        upload = (_audio_filename(mime_hint), audio_bytes, mime_hint or "application/octet-stream")

        try:
            resp = requests.post(
                self.endpoint,
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                data=form,
                files={"file": upload},
                timeout=self.config.timeout,
            )
            resp.raise_for_status()
            payload = resp.json()
        except requests.RequestException as exc:
            self.logger.error("Speaches STT request to %s failed: %s", self.endpoint, exc)
            return TranscriptionResult()
        except ValueError as exc:
            self.logger.error("Speaches STT returned invalid JSON: %s", exc)
            return TranscriptionResult()

        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            self.logger.warning("Speaches STT response has no text: %r", payload)
            return TranscriptionResult()

        text = text.strip()
        return TranscriptionResult(
            text=text,
            confidence=_confidence_from_segments(payload.get("segments"), text),
            language=payload.get("language") or lang_code,
        )


def _language_code(language: Optional[str]) -> Optional[str]:
    # Whisper 只接受两字母代码：en-US -> en
    code = str(language or "").strip().replace("_", "-").split("-")[0].lower()
    return code or None


def _confidence_from_segments(segments: Optional[List[Dict[str, Any]]], text: str) -> float:
    """
    根据分段的平均对数概率估算置信度：exp(平均 avg_logprob)，限制在 [0, 1]。
    没有分段信息时，有文本记为 0.5，无文本记为 0。
    """
    if not text:
        return 0.0

    logprobs = []
    for segment in segments or []:
        if isinstance(segment, dict) and isinstance(segment.get("avg_logprob"), (int, float)):
            logprobs.append(float(segment["avg_logprob"]))

    if not logprobs:
        return 0.5

    confidence = math.exp(sum(logprobs) / len(logprobs))
    return round(max(0.0, min(1.0, confidence)), 4)


def _audio_filename(mime_hint: Optional[str]) -> str:
    extension = mimetypes.guess_extension((mime_hint or "").split(";")[0].strip()) if mime_hint else None
    return f"audio{extension or '.mp3'}"
