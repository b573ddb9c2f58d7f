"""
视频帧采样模块

在计算出的时间点并行截取关键帧，缩放压缩后以 data URL 形式返回。
"""

import os
import shutil
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from .config import VerificationConfig
from .errors import ToolExecutionFailed, VerificationTimeout
from .models import CancellationToken, Frame, StepOutcome, to_data_url
from .runner import ProcessRunner, ScratchWorkspace, format_seconds

logger = logging.getLogger(__name__)


def compute_frame_timestamps(frame_count: int, duration: float) -> List[float]:
    """计算截帧时间点

    避开片头（至少第 5 秒）和片尾，3 帧时为开头 5%、中点和结尾 90% 处。

    Args:
        frame_count: 帧数
        duration: 视频时长（秒）

    Returns:
        时间点列表（秒）
    """
    if frame_count < 1:
        return []

    duration = max(0.0, float(duration or 0))
    if frame_count == 1:
        return [max(5, duration * 0.5)]
    if frame_count == 2:
        return [max(5, duration * 0.1), duration * 0.5]
    if frame_count == 3:
        return [
            max(5, duration * 0.05),
            duration * 0.5,
            max(duration - 10, duration * 0.9),
        ]

    timestamps = [max(5, duration * 0.05)]
    for k in range(1, frame_count - 1):
        timestamps.append(k * duration / frame_count)
    timestamps.append(max(duration - 10, duration * 0.95))
    return timestamps


class FrameSampler:
    """关键帧提取器"""

    def __init__(self, runner: ProcessRunner, config: Optional[VerificationConfig] = None):
        self.runner = runner
        self.config = config or VerificationConfig()

    def build_command(self, timestamp: float, input_path: str, output_path: str) -> List[str]:
        # -ss 放在 -i 之前做输入端 seek
        return [
            self.config.ffmpeg_path,
            "-hide_banner",
            "-loglevel", self.config.loglevel,
            "-ss", format_seconds(timestamp),
            "-i", input_path,
            "-vframes", "1",
            "-vf", f"scale={self.config.frame_width}:-1",
            "-q:v", str(self.config.frame_quality),
            "-y",
            output_path,
        ]

    def extract_frame_outcomes(
        self,
        data: bytes,
        frame_count: int,
        total_duration: float,
        workspace: Optional[ScratchWorkspace] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[StepOutcome]:
        """截取所有帧并返回逐帧结果

        输入数据只写入一次，各时间点并行截取。子目录在任何路径上都会删除。

        Args:
            data: 视频数据
            frame_count: 帧数
            total_duration: 视频时长（秒）
            workspace: 任务工作区
            cancel: 取消令牌

        Returns:
            与时间点顺序一致的 StepOutcome 列表

        Raises:
            ToolUnavailable: ffmpeg 不可用
            VerificationTimeout: 截帧超时
            VerificationCancelled: 任务被取消
        """
        timestamps = compute_frame_timestamps(frame_count, total_duration)
        if not timestamps:
            return []

        # 先检测一次，避免每个线程各自失败
        self.runner.checker.ensure_available(self.config.ffmpeg_path)

        with self.runner.open_workspace(workspace) as ws:
            frame_dir = ws.subdirectory("frames")
            try:
                input_path = os.path.join(frame_dir, "input")
                with open(input_path, "wb") as f:
                    f.write(data)

                workers = self.config.get_effective_frame_concurrency(len(timestamps))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="FrameExtract") as executor:
                    futures = [
                        executor.submit(self._extract_one, input_path, frame_dir, index, timestamp, cancel)
                        for index, timestamp in enumerate(timestamps)
                    ]
                    outcomes = [future.result() for future in futures]
            finally:
                shutil.rmtree(frame_dir, ignore_errors=True)

        succeeded = sum(1 for outcome in outcomes if outcome.ok)
        logger.info(f"Extracted {succeeded}/{len(timestamps)} frames")
        return outcomes

    def extract_frames(
        self,
        data: bytes,
        frame_count: int,
        total_duration: float,
        workspace: Optional[ScratchWorkspace] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[Frame]:
        """截取帧，失败的帧直接丢弃"""
        outcomes = self.extract_frame_outcomes(data, frame_count, total_duration, workspace, cancel)
        return [outcome.value for outcome in outcomes if outcome.ok]

    def _extract_one(
        self,
        input_path: str,
        frame_dir: str,
        index: int,
        timestamp: float,
        cancel: Optional[CancellationToken],
    ) -> StepOutcome:
        label = f"frame@{format_seconds(timestamp)}"
        output_path = os.path.join(frame_dir, f"frame-{index}.jpg")
        try:
            self.runner.execute(
                self.build_command(timestamp, input_path, output_path),
                timeout=self.config.tool_timeout,
                cancel=cancel,
            )
            if not os.path.exists(output_path) or os.path.getsize(output_path) == 0:
                raise ToolExecutionFailed(f"No frame produced at {timestamp}s")
            with open(output_path, "rb") as f:
                image = f.read()
            return StepOutcome.success(label, Frame(to_data_url(image, "image/jpeg"), float(timestamp)))
        except VerificationTimeout:
            raise
        except ToolExecutionFailed as e:
            if cancel is not None and cancel.stopped():
                raise
            logger.warning(f"Failed to extract frame at {timestamp}s: {e.message}")
            return StepOutcome.failure(label, e)
        except OSError as e:
            logger.warning(f"Failed to read frame at {timestamp}s: {e}")
            return StepOutcome.failure(label, ToolExecutionFailed(str(e)))
