"""
FFprobe 时长探测模块

使用 ffprobe 快速获取媒体时长。时长只用于选择采样策略，
探测失败时返回默认值而不是让任务失败。
"""

import math
import logging
from typing import Optional

from .config import VerificationConfig
from .errors import VerificationCancelled, VerificationFailed, VerificationTimeout
from .models import AUDIO_MIME_PREFIX, CancellationToken
from .runner import ProcessRunner, ScratchWorkspace

logger = logging.getLogger(__name__)


class DurationProbe:
    """时长探测器"""

    def __init__(self, runner: ProcessRunner, config: Optional[VerificationConfig] = None):
        """初始化时长探测器

        Args:
            runner: 进程运行器
            config: 审核配置
        """
        self.runner = runner
        self.config = config or VerificationConfig()

    def build_command(self) -> list:
        return [
            self.config.ffprobe_path,
            "-v", "quiet",
            "-show_entries", "format=duration",
            "-of", "csv=p=0",
            "-i", "{input}",
        ]

    def fallback_for(self, mime_type: str) -> float:
        """获取探测失败时的默认时长

        Args:
            mime_type: 媒体 MIME 类型

        Returns:
            音频 60 秒，其他（视频类）10 秒
        """
        if (mime_type or "").lower().startswith(AUDIO_MIME_PREFIX):
            return float(self.config.default_audio_duration)
        return float(self.config.default_video_duration)

    def probe_duration(
        self,
        data: bytes,
        mime_type: str = "video/mp4",
        workspace: Optional[ScratchWorkspace] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> float:
        """获取媒体时长（秒）

        Args:
            data: 媒体数据
            mime_type: 媒体 MIME 类型（决定默认值）
            workspace: 任务工作区
            cancel: 取消令牌

        Returns:
            时长秒数，失败时返回默认值
        """
        fallback = self.fallback_for(mime_type)
        try:
            output = self.runner.run_capture(
                data,
                self.build_command(),
                workspace=workspace,
                timeout=self.config.probe_timeout,
                cancel=cancel,
            )
        except VerificationCancelled:
            raise
        except VerificationTimeout:
            if cancel is not None and cancel.expired():
                raise
            logger.warning(f"ffprobe timeout, using default duration {fallback}s")
            return fallback
        except VerificationFailed as e:
            logger.warning(f"Could not get duration ({e.kind}: {e.message}), using default {fallback}s")
            return fallback

        duration = parse_duration(output)
        if duration is None:
            logger.warning(f"ffprobe returned unusable duration {output.strip()[:50]!r}, using default {fallback}s")
            return fallback

        logger.info(f"ffprobe got duration: {duration}s")
        return duration


def parse_duration(output: str) -> Optional[float]:
    """解析 ffprobe 的 csv 输出，无效值返回 None"""
    for line in (output or "").splitlines():
        line = line.strip().rstrip(",")
        if not line:
            continue
        try:
            value = float(line)
        except ValueError:
            return None
        if math.isnan(value) or math.isinf(value) or value <= 0:
            return None
        return value
    return None
