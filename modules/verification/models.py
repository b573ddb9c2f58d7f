"""
审核任务数据模型

定义审核任务、进度事件、采样结果和最终结论的数据结构。
"""

import base64
import secrets
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional

from .errors import InvalidInput, VerificationCancelled, VerificationTimeout


class ContentType(Enum):
    """内容类型枚举"""
    VIDEO = "video"
    AUDIO = "audio"
    BOOK = "book"

    @classmethod
    def parse(cls, value: Any) -> "ContentType":
        """解析内容类型（兼容上传接口使用的复数/别名写法）

        Args:
            value: 字符串或 ContentType

        Returns:
            ContentType 枚举值

        Raises:
            InvalidInput: 无法识别的内容类型
        """
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().lower()
        aliases = {
            "video": cls.VIDEO,
            "videos": cls.VIDEO,
            "audio": cls.AUDIO,
            "music": cls.AUDIO,
            "book": cls.BOOK,
            "books": cls.BOOK,
            "ebook": cls.BOOK,
        }
        if raw not in aliases:
            raise InvalidInput(f"Unsupported content type: {value!r}")
        return aliases[raw]


class Stage(Enum):
    """流水线阶段枚举"""
    RECEIVED = "received"          # 已接收
    VALIDATING = "validating"      # 校验中
    SAMPLING = "sampling"          # 采样中（音频/帧/文本）
    TRANSCRIBING = "transcribing"  # 转写中
    FRAMES_READY = "frames_ready"  # 视频证据就绪
    TEXT_READY = "text_ready"      # 文本证据就绪
    MODERATING = "moderating"      # 审核中
    DONE = "done"                  # 已完成
    ERROR = "error"                # 错误（终态）


# 各阶段默认进度百分比
STAGE_PROGRESS = {
    Stage.RECEIVED: 10,
    Stage.VALIDATING: 20,
    Stage.SAMPLING: 30,
    Stage.TRANSCRIBING: 50,
    Stage.FRAMES_READY: 70,
    Stage.TEXT_READY: 70,
    Stage.MODERATING: 75,
    Stage.DONE: 100,
}

VIDEO_MIME_PREFIX = "video/"
AUDIO_MIME_PREFIX = "audio/"
PDF_MIME_TYPE = "application/pdf"
EPUB_MIME_TYPE = "application/epub+zip"
BOOK_MIME_TYPES = (PDF_MIME_TYPE, EPUB_MIME_TYPE)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_job_id() -> str:
    """生成任务 ID（时间戳 + 随机后缀）"""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


@dataclass(frozen=True)
class VerificationJob:
    """审核任务

    创建后不可变，一次流水线运行独占使用。
    """

    job_id: str
    file_bytes: bytes = field(repr=False)
    mime_type: str
    content_type: ContentType
    title: str
    description: Optional[str] = None
    thumbnail_bytes: Optional[bytes] = field(default=None, repr=False)
    thumbnail_mime_type: Optional[str] = None

    @classmethod
    def create(
        cls,
        file_bytes: bytes,
        mime_type: str,
        content_type: Any,
        title: str,
        description: Optional[str] = None,
        thumbnail_bytes: Optional[bytes] = None,
        thumbnail_mime_type: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> "VerificationJob":
        """创建任务，未指定 job_id 时自动生成"""
        return cls(
            job_id=job_id or generate_job_id(),
            file_bytes=file_bytes or b"",
            mime_type=(mime_type or "").strip().lower(),
            content_type=ContentType.parse(content_type),
            title=title or "",
            description=description,
            thumbnail_bytes=thumbnail_bytes or None,
            thumbnail_mime_type=thumbnail_mime_type,
        )

    def validate(self) -> None:
        """校验输入，在调用任何外部工具之前快速失败

        Raises:
            InvalidInput: 空文件或 MIME 类型与内容类型不匹配
        """
        if not self.file_bytes:
            raise InvalidInput("Uploaded file is empty")

        if self.content_type == ContentType.VIDEO:
            if not self.mime_type.startswith(VIDEO_MIME_PREFIX):
                raise InvalidInput(f"Unsupported video mime type: {self.mime_type or 'unknown'}")
        elif self.content_type == ContentType.AUDIO:
            if not self.mime_type.startswith(AUDIO_MIME_PREFIX):
                raise InvalidInput(f"Unsupported audio mime type: {self.mime_type or 'unknown'}")
        elif self.mime_type not in BOOK_MIME_TYPES:
            raise InvalidInput(f"Unsupported book mime type: {self.mime_type or 'unknown'}")

    @property
    def thumbnail_data_url(self) -> Optional[str]:
        if not self.thumbnail_bytes:
            return None
        return to_data_url(self.thumbnail_bytes, self.thumbnail_mime_type or "image/jpeg")


def to_data_url(data: bytes, mime_type: str) -> str:
    """将二进制数据编码为 data URL"""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


@dataclass
class ProgressEvent:
    """进度事件（推送给进度回调，不持久化）"""

    job_id: str
    percent: int
    stage: Stage
    message: str
    timestamp: str = field(default_factory=_utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "percent": self.percent,
            "stage": self.stage.value,
            "message": self.message,
            "timestamp": self.timestamp,
        }


class ClipWindow(NamedTuple):
    """音频采样窗口（起始偏移, 时长），单位秒"""
    offset: float
    length: float


@dataclass
class AudioSample:
    data: bytes = field(repr=False)
    offset_seconds: float
    duration_seconds: float
    mime_type: str = "audio/mpeg"


@dataclass
class Frame:
    inline_image_data: str = field(repr=False)
    timestamp_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_seconds": self.timestamp_seconds,
            "inline_image_data": self.inline_image_data,
        }


@dataclass
class StepOutcome:
    """单步结果：成功携带 value，失败携带 error"""

    label: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, label: str, value: Any) -> "StepOutcome":
        return cls(label=label, value=value)

    @classmethod
    def failure(cls, label: str, error: BaseException) -> "StepOutcome":
        return cls(label=label, error=error)


@dataclass
class TranscriptionResult:
    text: str = ""
    confidence: float = 0.0
    language: Optional[str] = None


@dataclass
class ModerationVerdict:
    approved: bool
    detail: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Evidence:
    """提交给审核服务的证据集合"""

    title: str
    content_type: ContentType
    description: Optional[str] = None
    transcript: str = ""
    frames: List[Frame] = field(default_factory=list)
    thumbnail: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "title": self.title,
            "content_type": self.content_type.value,
        }
        if self.description:
            payload["description"] = self.description
        if self.transcript:
            payload["transcript"] = self.transcript
        if self.frames:
            payload["frames"] = [frame.inline_image_data for frame in self.frames]
        if self.thumbnail:
            payload["thumbnail"] = self.thumbnail
        return payload


@dataclass
class VerificationResult:
    """审核最终结论，返回给调用方后不再保留"""

    approved: bool
    moderation_detail: Dict[str, Any]
    transcript: Optional[str] = None
    frames: Optional[List[Frame]] = None
    duration_seconds: Optional[float] = None
    failures: Dict[str, int] = field(default_factory=dict)

    def to_dict(self, include_frames: bool = False) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "approved": self.approved,
            "moderation_detail": self.moderation_detail,
            "transcript": self.transcript,
            "frame_count": len(self.frames or []),
            "duration_seconds": self.duration_seconds,
            "failures": dict(self.failures),
        }
        if include_frames:
            result["frames"] = [frame.to_dict() for frame in self.frames or []]
        return result


class CancellationToken:
    """任务级取消令牌

    支持显式取消、截止时间以及父令牌联动：父令牌取消或超时，子令牌随之生效。
    """

    def __init__(self, deadline: Optional[float] = None, parent: Optional["CancellationToken"] = None):
        """初始化取消令牌

        Args:
            deadline: 截止时间（time.monotonic() 时间基准），None 表示不限时
            parent: 父令牌
        """
        self._event = threading.Event()
        self._reason: Optional[str] = None
        self.deadline = deadline
        self.parent = parent

    @classmethod
    def with_timeout(cls, seconds: Optional[float], parent: Optional["CancellationToken"] = None) -> "CancellationToken":
        deadline = time.monotonic() + seconds if seconds and seconds > 0 else None
        return cls(deadline=deadline, parent=parent)

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self.parent is not None and self.parent.cancelled

    @property
    def reason(self) -> Optional[str]:
        if self._event.is_set():
            return self._reason
        if self.parent is not None:
            return self.parent.reason
        return None

    def remaining(self) -> Optional[float]:
        """距截止时间的剩余秒数，不限时返回 None"""
        candidates = []
        if self.deadline is not None:
            candidates.append(self.deadline - time.monotonic())
        if self.parent is not None:
            parent_remaining = self.parent.remaining()
            if parent_remaining is not None:
                candidates.append(parent_remaining)
        if not candidates:
            return None
        return max(0.0, min(candidates))

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise VerificationCancelled(f"Verification cancelled: {self.reason or 'cancelled'}")
        if self.expired():
            raise VerificationTimeout("Verification job exceeded its time budget")

    def stopped(self) -> bool:
        """已取消或已超过截止时间"""
        return self.cancelled or self.expired()
