from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

import logging
import requests

from modules.verification.errors import ModerationFailed
from modules.verification.models import Evidence, ModerationVerdict


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ModerationConfig:
    """
    内容审核服务配置（OpenAI 兼容 chat completions 接口，支持图片输入）

    环境变量：
    - MODERATION_API_URL，例如: https://api.openai.com/v1/chat/completions
      为空时只使用关键词审核
    - MODERATION_API_TOKEN
    - MODERATION_MODEL，默认: gpt-4o-mini
    - MODERATION_TIMEOUT，HTTP 超时时间（秒）
    - MODERATION_FALLBACK_ON_ERROR，服务出错时是否退回关键词审核
    """

    api_url: str = os.getenv("MODERATION_API_URL", "")
    api_token: str = os.getenv("MODERATION_API_TOKEN", "")
    model: str = os.getenv("MODERATION_MODEL", "gpt-4o-mini")
    timeout: float = float(os.getenv("MODERATION_TIMEOUT", "60"))
    fallback_on_error: bool = _env_flag("MODERATION_FALLBACK_ON_ERROR")
    max_frames: int = 3
    transcript_chars: int = 1000
    platform: str = "a Christian gospel media platform"
    extra_guidelines: List[str] = field(default_factory=list)


DEFAULT_MODERATION_CONFIG = ModerationConfig()


def configure_moderation_from_dict(config_section: Optional[Dict[str, Any]]) -> None:
    """
    根据 config.json 中的 moderation 段落更新默认配置。

    {
      "moderation": {
        "api_url": "https://api.openai.com/v1/chat/completions",
        "api_token": "sk-...",
        "model": "gpt-4o-mini",
        "timeout": 60,
        "fallback_on_error": false,
        "max_frames": 3
      }
    }
    """
    global DEFAULT_MODERATION_CONFIG

    cfg = ModerationConfig()
    if not isinstance(config_section, dict):
        DEFAULT_MODERATION_CONFIG = cfg
        return

    api_url = str(config_section.get("api_url") or "").strip()
    if api_url:
        cfg.api_url = api_url

    api_token = str(config_section.get("api_token") or config_section.get("api_key") or "").strip()
    if api_token:
        cfg.api_token = api_token

    model = str(config_section.get("model") or "").strip()
    if model:
        cfg.model = model

    timeout_value = config_section.get("timeout")
    if timeout_value is not None:
        try:
            cfg.timeout = float(timeout_value)
        except (TypeError, ValueError):
            pass

    fallback = config_section.get("fallback_on_error")
    if isinstance(fallback, bool):
        cfg.fallback_on_error = fallback

    max_frames = config_section.get("max_frames")
    if isinstance(max_frames, int) and max_frames >= 0:
        cfg.max_frames = max_frames

    platform = str(config_section.get("platform") or "").strip()
    if platform:
        cfg.platform = platform

    guidelines = config_section.get("extra_guidelines")
    if isinstance(guidelines, list):
        cfg.extra_guidelines = [str(g) for g in guidelines if g]

    DEFAULT_MODERATION_CONFIG = cfg


INAPPROPRIATE_KEYWORDS = [
    "explicit", "nude", "sex", "porn", "violence", "kill", "hate",
    "fuck", "shit", "damn", "blasphemy", "blaspheme",
]

FAITH_KEYWORDS = [
    "jesus", "christ", "god", "lord", "prayer", "worship", "praise", "gospel",
    "bible", "scripture", "faith", "church", "sermon", "hymn", "devotional",
    "blessing", "amen", "hallelujah", "hosanna",
    "salvation", "redemption", "repentance", "resurrection", "holy spirit",
    "spirit of god", "light of the world", "alpha and omega", "immanuel",
    "emmanuel", "father", "son of god", "only begotten",
    # Yoruba
    "jésù", "jésu", "olúwa", "oluwa", "ọlọrun", "olorun", "ìwòrìpò", "iworipo",
    "àdúrà", "adura", "ìgbàgbọ", "igbagbo",
    # Hausa
    "yesu", "ubangiji", "allah", "addu'a", "ibada",
    # Igbo
    "jisos", "chiukwu", "ekpere", "abụ",
    "yehovah", "yahweh", "messiah",
]

_FAITH_FLAG = re.compile(r"gospel|worship|biblical|christian|faith", re.IGNORECASE)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def _keyword_pattern(keywords: List[str]) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(k) for k in keywords) + r")\b", re.IGNORECASE)


_INAPPROPRIATE_PATTERN = _keyword_pattern(INAPPROPRIATE_KEYWORDS)
_FAITH_PATTERN = _keyword_pattern(FAITH_KEYWORDS)


def keyword_moderation(evidence: Evidence) -> ModerationVerdict:
    """
    关键词审核（未配置审核服务或服务出错时使用）

    - 命中不当词汇：拒绝，置信度 0.7
    - 命中信仰相关词汇：通过，置信度 0.6
    - 都未命中：拒绝并要求人工复核，置信度 0.4
    """
    text = " ".join(
        part for part in (evidence.title, evidence.description or "", evidence.transcript or "") if part
    )

    if _INAPPROPRIATE_PATTERN.search(text):
        detail = {
            "isApproved": False,
            "confidence": 0.7,
            "reason": "Inappropriate keywords detected",
            "flags": ["inappropriate_keywords"],
            "requiresReview": False,
        }
    elif _FAITH_PATTERN.search(text):
        detail = {
            "isApproved": True,
            "confidence": 0.6,
            "reason": "Faith-related keywords detected",
            "flags": [],
            "requiresReview": False,
        }
    else:
        detail = {
            "isApproved": False,
            "confidence": 0.4,
            "reason": "Unable to determine content type - requires review",
            "flags": ["unclear_content"],
            "requiresReview": True,
        }

    detail["source"] = "keywords"
    return ModerationVerdict(approved=detail["isApproved"], detail=detail)


def parse_moderation_reply(reply: str) -> Optional[Dict[str, Any]]:
    """
    解析模型回复。优先提取 JSON 对象；没有 JSON 时按关键词推断；
    JSON 格式错误返回 None。
    """
    match = _JSON_OBJECT.search(reply or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            return None
        if not isinstance(parsed, dict):
            return None

        approved = parsed.get("isApproved") is True
        try:
            confidence = float(parsed.get("confidence") or 0.5)
        except (TypeError, ValueError):
            confidence = 0.5
        confidence = max(0.0, min(1.0, confidence))
        raw_flags = parsed.get("flags")
        flags = [f for f in raw_flags if isinstance(f, str)] if isinstance(raw_flags, list) else []

        # 明确通过的内容不进入人工复核
        clear_faith = any(_FAITH_FLAG.search(f) for f in flags)
        if approved and (confidence >= 0.8 or clear_faith):
            requires_review = False
        else:
            requires_review = parsed.get("requiresReview") is True

        return {
            "isApproved": approved,
            "confidence": confidence,
            "reason": parsed.get("reason") or "AI analysis completed",
            "flags": flags,
            "requiresReview": requires_review,
        }

    lowered = (reply or "").lower()
    approved = any(word in lowered for word in ("approved", "gospel", "christian", "appropriate"))
    return {
        "isApproved": approved,
        "confidence": 0.6,
        "reason": "Parsed from text response",
        "flags": [],
        "requiresReview": not approved,
    }


class ContentModerationClient:
    """内容审核客户端，基于 OpenAI 兼容 chat completions 接口。"""

    def __init__(self, config: Optional[ModerationConfig] = None) -> None:
        self.config = config or DEFAULT_MODERATION_CONFIG
        self.logger = logging.getLogger("Moderation.Client")

    @property
    def enabled(self) -> bool:
        return bool(self.config.api_url)

    def moderate(self, evidence: Evidence) -> ModerationVerdict:
        """
        审核证据集合。

        未配置 api_url 时直接使用关键词审核；请求或解析失败时抛出 ModerationFailed，
        fallback_on_error 开启时改为关键词审核。
        """
        if not self.enabled:
            self.logger.info("Moderation API not configured, using keyword moderation")
            return keyword_moderation(evidence)

        try:
            reply = self._request(evidence)
        except ModerationFailed as exc:
            if self.config.fallback_on_error:
                self.logger.warning("Moderation API failed (%s), falling back to keywords", exc.message)
                return keyword_moderation(evidence)
            raise

        detail = parse_moderation_reply(reply)
        if detail is None:
            self.logger.error("Could not parse moderation reply: %r", reply[:200])
            return keyword_moderation(evidence)

        detail["source"] = "ai"
        self.logger.info(
            "Moderation result: approved=%s confidence=%.2f flags=%s",
            detail["isApproved"], detail["confidence"], detail["flags"],
        )
        return ModerationVerdict(approved=detail["isApproved"], detail=detail)

    def build_prompt(self, evidence: Evidence) -> str:
        transcript = evidence.transcript or ""
        if len(transcript) > self.config.transcript_chars:
            transcript = transcript[:self.config.transcript_chars] + "..."
        frame_count = min(len(evidence.frames), self.config.max_frames)

        lines = [
            f"You review uploads for {self.config.platform} and decide whether each one may be published.",
            "",
            "Content:",
            f"- Title: \"{evidence.title or 'N/A'}\"",
            f"- Description: \"{evidence.description or 'N/A'}\"",
            f"- Content type: {evidence.content_type.value}",
        ]
        if transcript:
            lines.append(f"- Transcript or text excerpt: \"{transcript}\"")
        if evidence.thumbnail:
            lines.append("- The first attached image is the thumbnail shown to users.")
        if frame_count:
            lines.append(f"- {frame_count} attached image(s) are frames taken from the beginning, middle and end of the video.")

        lines += [
            "",
            "Approve Christian and gospel content in any language, including worship music, hymns and sermons",
            "that use scriptural language without naming Jesus. Reject sexual content, nudity, violence,",
            "hate speech, profanity, blasphemy, illegal activity and secular or non-Christian material.",
            "An inappropriate thumbnail is grounds for rejection on its own.",
        ]
        lines += self.config.extra_guidelines
        lines += [
            "",
            "Reply with JSON only:",
            '{"isApproved": true|false, "confidence": 0.0-1.0, "reason": "short explanation",',
            ' "flags": ["flag"], "requiresReview": true|false}',
            "Use confidence above 0.8 for clear decisions and set requiresReview when unsure.",
        ]
        return "\n".join(lines)

    def build_payload(self, evidence: Evidence) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": self.build_prompt(evidence)}]
        if evidence.thumbnail:
            content.append({"type": "image_url", "image_url": {"url": evidence.thumbnail}})
        for frame in evidence.frames[:self.config.max_frames]:
            content.append({"type": "image_url", "image_url": {"url": frame.inline_image_data}})

        return {
            "model": self.config.model,
            "messages": [
                {"role": "user", "content": content},
            ],
            "temperature": 0,
        }

    def _request(self, evidence: Evidence) -> str:
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"

        try:
            response = requests.post(
                self.config.api_url,
                headers=headers,
                json=self.build_payload(evidence),
                timeout=self.config.timeout,
            )
        except requests.RequestException as exc:
            raise ModerationFailed(f"Moderation request failed: {exc}") from exc

        if response.status_code != 200:
            raise ModerationFailed(f"Moderation request failed: HTTP {response.status_code} {response.text[:100]}")

        try:
            result = response.json()
        except ValueError as exc:
            raise ModerationFailed(f"Moderation response is not JSON: {exc}") from exc

        return _reply_text(result)


def _reply_text(result: Any) -> str:
    """从 OpenAI 兼容或 Ollama 响应中取出回复文本"""
    if isinstance(result, dict):
        choices = result.get("choices")
        if isinstance(choices, list) and choices:
            message = choices[0].get("message") or {}
            content = message.get("content")
            if isinstance(content, list):
                return "".join(part.get("text", "") for part in content if isinstance(part, dict))
            if isinstance(content, str):
                return content
        if isinstance(result.get("message"), dict):
            return str(result["message"].get("content") or "")
        if "response" in result:
            return str(result.get("response") or "")
    raise ModerationFailed("Moderation response has no reply text")
