import logging
from typing import Optional, Dict, Any, Callable, Tuple

from modules import fwhisper_client, speaches_stt_client
from modules.fwhisper_client import FasterWhisperClient
from modules.speaches_stt_client import SpeachesSTTClient
from modules.verification.models import TranscriptionResult

logger = logging.getLogger(__name__)

# provider -> (配置函数, 客户端类)
PROVIDERS: Dict[str, Tuple[Callable[[Optional[Dict[str, Any]]], None], Callable[[], object]]] = {
    "speaches": (speaches_stt_client.configure_speaches_from_dict, SpeachesSTTClient),
    "fwhisper": (fwhisper_client.configure_fwhisper_from_dict, FasterWhisperClient),
}

_PROVIDER: str = "speaches"
_DEFAULT_LANGUAGE: str = "en-US"


def configure_transcription_from_dict(config_section: Optional[Dict[str, Any]]) -> None:
    """
    根据 transcription 配置段选择转写服务并更新其默认配置。
    未知或缺省的 provider 使用 speaches。
    """
    global _PROVIDER, _DEFAULT_LANGUAGE

    section = config_section if isinstance(config_section, dict) else {}
    provider = str(section.get("provider") or "").strip().lower()
    if provider not in PROVIDERS:
        if provider:
            logger.warning(f"Unknown transcription provider {provider!r}, using speaches")
        provider = "speaches"

    configure, _ = PROVIDERS[provider]
    configure(config_section)
    _PROVIDER = provider
    _DEFAULT_LANGUAGE = str(section.get("language") or "").strip() or _DEFAULT_LANGUAGE

    logger.info(f"Transcription provider: {_PROVIDER}, default language: {_DEFAULT_LANGUAGE}")


def get_transcription_provider() -> str:
    return _PROVIDER


def _new_client() -> object:
    _, client_cls = PROVIDERS[_PROVIDER]
    return client_cls()


def normalize_language_hint(language: Optional[str]) -> Optional[str]:
    """
    将 BCP-47 语言标签（如 en-US、zh-CN）转换为 Whisper 使用的两字母代码。
    """
    if not language:
        return None
    lang = str(language).strip().replace("_", "-")
    if not lang:
        return None
    return lang.split("-")[0].lower()


class VerificationTranscriber:
    """
    审核流水线使用的语音转写适配器。

    按配置选择 Speaches 或 faster-whisper 客户端，统一语言参数，
    返回 TranscriptionResult。
    """

    def __init__(self, client: Optional[object] = None, default_language: Optional[str] = None) -> None:
        self._client = client or _new_client()
        self.default_language = default_language or _DEFAULT_LANGUAGE

    @property
    def client(self) -> object:
        return self._client

    def transcribe(
        self,
        audio_bytes: bytes,
        mime_hint: str,
        language_hint: Optional[str] = None,
    ) -> TranscriptionResult:
        language = normalize_language_hint(language_hint or self.default_language)
        result = self._client.transcribe(audio_bytes, mime_hint, language)
        if not isinstance(result, TranscriptionResult):
            # 兼容只返回文本的客户端
            text = str(result or "").strip()
            return TranscriptionResult(text=text, confidence=0.5 if text else 0.0, language=language)
        return result


def create_transcriber(config_section: Optional[Dict[str, Any]] = None) -> VerificationTranscriber:
    """根据 transcription 配置段创建转写适配器"""
    if config_section is not None:
        configure_transcription_from_dict(config_section)
    return VerificationTranscriber()
