"""
音频采样模块

根据媒体时长选择采样窗口，并用 ffmpeg 提取固定长度的 mp3 片段供转写使用。
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from .config import VerificationConfig
from .errors import ToolExecutionFailed, VerificationTimeout
from .models import AudioSample, CancellationToken, ClipWindow, StepOutcome
from .runner import ProcessRunner, ScratchWorkspace, format_seconds

logger = logging.getLogger(__name__)


def select_sampling_plan(
    total: float,
    clip_length: float = 60,
    short_threshold: float = 120,
    long_threshold: float = 180,
) -> List[ClipWindow]:
    """根据总时长选择采样窗口

    - 不超过 short_threshold：只取开头一段
    - 不超过 long_threshold：开头 + 结尾
    - 更长：开头 + 中段 + 结尾

    Args:
        total: 媒体总时长（秒）
        clip_length: 单个片段时长
        short_threshold: 短媒体阈值
        long_threshold: 长媒体阈值

    Returns:
        按偏移排序的 ClipWindow 列表
    """
    total = max(0.0, float(total or 0))

    if total <= short_threshold:
        return [ClipWindow(0, min(clip_length, total))]

    end = ClipWindow(max(0, total - clip_length), clip_length)
    if total <= long_threshold:
        return [ClipWindow(0, clip_length), end]

    middle = ClipWindow(max(0, total / 2 - clip_length / 2), clip_length)
    return [ClipWindow(0, clip_length), middle, end]


class AudioSampler:
    """音频片段提取器"""

    def __init__(self, runner: ProcessRunner, config: Optional[VerificationConfig] = None):
        self.runner = runner
        self.config = config or VerificationConfig()

    def plan(self, total: float) -> List[ClipWindow]:
        return select_sampling_plan(
            total,
            clip_length=self.config.clip_length,
            short_threshold=self.config.short_media_threshold,
            long_threshold=self.config.long_media_threshold,
        )

    def build_command(self, max_duration: float, start_offset: float = 0) -> List[str]:
        """构建片段提取命令

        Args:
            max_duration: 片段时长（秒）
            start_offset: 起始偏移（秒）

        Returns:
            带 {input}/{output} 占位符的命令列表
        """
        return [
            self.config.ffmpeg_path,
            "-hide_banner",
            "-loglevel", self.config.loglevel,
            "-i", "{input}",
            "-ss", format_seconds(start_offset),
            "-t", format_seconds(max_duration),
            "-vn",
            "-acodec", self.config.audio_codec,
            "-ar", str(self.config.audio_sample_rate),
            "-ac", str(self.config.audio_channels),
            "-y",
            "{output}",
        ]

    def extract_sample(
        self,
        data: bytes,
        max_duration: float,
        start_offset: float = 0,
        workspace: Optional[ScratchWorkspace] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> AudioSample:
        """提取单个音频片段

        Args:
            data: 源媒体数据
            max_duration: 片段时长（秒）
            start_offset: 起始偏移（秒）
            workspace: 任务工作区
            cancel: 取消令牌

        Returns:
            AudioSample

        Raises:
            ToolUnavailable: ffmpeg 不可用
            ToolExecutionFailed: 提取失败或输出为空
        """
        output = self.runner.run(
            data,
            self.build_command(max_duration, start_offset),
            output_suffix=".mp3",
            workspace=workspace,
            timeout=self.config.tool_timeout,
            cancel=cancel,
        )
        if not output:
            raise ToolExecutionFailed(f"Empty audio clip at offset {start_offset}s")

        logger.info(f"Audio clip extracted: offset={start_offset}s, length={max_duration}s, {len(output)} bytes")
        return AudioSample(
            data=output,
            offset_seconds=float(start_offset),
            duration_seconds=float(max_duration),
        )

    def extract_clips(
        self,
        data: bytes,
        plan: List[ClipWindow],
        workspace: Optional[ScratchWorkspace] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[StepOutcome]:
        """按采样计划提取所有片段

        单个片段执行失败只记为失败结果；工具不可用、取消和超时直接抛出。

        Returns:
            与 plan 顺序一致的 StepOutcome 列表
        """
        if not plan:
            return []

        workers = max(1, min(self.config.transcode_concurrency, len(plan)))
        if workers == 1:
            return [self._extract_outcome(data, window, workspace, cancel) for window in plan]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="AudioClip") as executor:
            futures = [
                executor.submit(self._extract_outcome, data, window, workspace, cancel)
                for window in plan
            ]
            return [future.result() for future in futures]

    def _extract_outcome(
        self,
        data: bytes,
        window: ClipWindow,
        workspace: Optional[ScratchWorkspace],
        cancel: Optional[CancellationToken],
    ) -> StepOutcome:
        label = f"clip@{format_seconds(window.offset)}"
        if window.length <= 0:
            return StepOutcome.failure(label, ToolExecutionFailed("Clip length is zero"))
        try:
            sample = self.extract_sample(data, window.length, window.offset, workspace, cancel)
            return StepOutcome.success(label, sample)
        except VerificationTimeout:
            raise
        except ToolExecutionFailed as e:
            if cancel is not None and cancel.stopped():
                raise
            logger.warning(f"Failed to extract audio clip at {window.offset}s: {e.message}")
            return StepOutcome.failure(label, e)
