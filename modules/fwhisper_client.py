from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import logging
import requests

from modules.verification.models import TranscriptionResult


@dataclass
class FasterWhisperConfig:
    """faster-whisper-service settings, seeded from FWHISPER_* environment variables."""

    base_url: str = os.getenv("FWHISPER_BASE_URL", "http://localhost:8001")
    timeout: float = float(os.getenv("FWHISPER_TIMEOUT", "60"))
    model: Optional[str] = os.getenv("FWHISPER_MODEL")
    enabled: bool = True

    @classmethod
    def from_section(cls, section: Optional[Dict[str, Any]]) -> "FasterWhisperConfig":
        cfg = cls()
        if not isinstance(section, dict):
            return cfg

        url = str(section.get("api_base_url") or section.get("base_url") or "").strip()
        cfg.base_url = url or cfg.base_url
        cfg.model = str(section.get("model") or "").strip() or cfg.model
        if isinstance(section.get("enabled"), bool):
            cfg.enabled = section["enabled"]
        try:
            cfg.timeout = float(section.get("timeout", cfg.timeout))
        except (TypeError, ValueError):
            pass
        return cfg


DEFAULT_FWHISPER_CONFIG = FasterWhisperConfig()

# 服务按文件扩展名识别格式
_MIME_FILENAMES = {
    "audio/mpeg": "audio.mp3",
    "audio/mp3": "audio.mp3",
    "audio/wav": "audio.wav",
    "audio/x-wav": "audio.wav",
    "audio/ogg": "audio.ogg",
    "audio/flac": "audio.flac",
    "audio/mp4": "audio.m4a",
    "audio/aac": "audio.aac",
    "audio/webm": "audio.webm",
}


def configure_fwhisper_from_dict(config_section: Optional[Dict[str, Any]]) -> None:
    global DEFAULT_FWHISPER_CONFIG
    DEFAULT_FWHISPER_CONFIG = FasterWhisperConfig.from_section(config_section)


class FasterWhisperClient:
    """Transcribes verification clips through faster-whisper-service."""

    def __init__(self, config: Optional[FasterWhisperConfig] = None) -> None:
        self.config = config or DEFAULT_FWHISPER_CONFIG
        self.logger = logging.getLogger("Transcription.FWhisper")

    def endpoints(self) -> List[str]:
        """Namespaced endpoint first, bare one second; base_url may or may not end in /v1."""
        root = (self.config.base_url or "").rstrip("/")
        if root.endswith("/v1"):
            root = root[:-len("/v1")].rstrip("/")
        return [f"{root}/v1/audio/transcriptions", f"{root}/audio/transcriptions"]

    def transcribe(
        self,
        audio_bytes: bytes,
        mime_hint: str = "audio/mpeg",
        language: Optional[str] = None,
    ) -> TranscriptionResult:
        """Upload one clip; any failure yields an empty zero-confidence result."""
        if not audio_bytes or not self.config.enabled:
            return TranscriptionResult()

        mime_type = (mime_hint or "audio/mpeg").split(";")[0].strip().lower()
        upload = {"file": (_MIME_FILENAMES.get(mime_type, "audio.bin"), audio_bytes, mime_type)}
        form: Dict[str, Any] = {}
        if self.config.model:
            form["model"] = self.config.model
        if language:
            form["language"] = language

        payload = self._post(upload, form)
        if payload is None:
            return TranscriptionResult()

        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            self.logger.warning("FWhisper response has no text: %r", payload)
            return TranscriptionResult()

        text = text.strip()
        if not text:
            return TranscriptionResult(language=payload.get("language") or language)
        return TranscriptionResult(
            text=text,
            confidence=_clip_confidence(payload),
            language=payload.get("language") or language,
        )

    def _post(self, upload: Dict[str, Any], form: Dict[str, Any]) -> Optional[Any]:
        for url in self.endpoints():
            try:
                resp = requests.post(url, files=upload, data=form, timeout=self.config.timeout)
                resp.raise_for_status()
                return resp.json()
            except requests.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else None
                self.logger.error("FWhisper request to %s failed with HTTP %s", url, status)
                if status != 404:
                    return None
            except requests.RequestException as exc:
                self.logger.error("FWhisper request to %s failed: %s", url, exc)
                return None
            except ValueError as exc:
                self.logger.error("FWhisper returned invalid JSON: %s", exc)
                return None
        return None


def _clip_confidence(payload: Dict[str, Any]) -> float:
    # 服务未返回 confidence 时用 language_probability 近似
    for key in ("confidence", "language_probability"):
        value = payload.get(key)
        if isinstance(value, (int, float)):
            return max(0.0, min(1.0, float(value)))
    return 0.5
