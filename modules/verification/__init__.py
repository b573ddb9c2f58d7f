"""
内容审核流水线模块

对上传的视频、音频和图书在发布前进行审核。

核心特性：
- 按时长选择音频采样窗口（开头/中段/结尾），控制转写成本
- 视频关键帧并行截取，缩放后以 data URL 提交审核
- PDF/EPUB 文本提取，失败时返回空文本而不是中断任务
- 单个片段/帧/转写失败只降级证据，工具不可用和审核失败终止任务
- 进度事件单调递增，临时文件在任何退出路径上都会删除
"""

from .errors import (
    VerificationFailed,
    ToolUnavailable,
    ToolExecutionFailed,
    VerificationTimeout,
    ExtractionDegraded,
    ModerationFailed,
    InvalidInput,
    VerificationCancelled,
)
from .models import (
    ContentType,
    Stage,
    VerificationJob,
    ProgressEvent,
    AudioSample,
    Frame,
    Evidence,
    TranscriptionResult,
    ModerationVerdict,
    VerificationResult,
    CancellationToken,
)
from .config import VerificationConfig, get_verification_config
from .runner import ProcessRunner, ScratchWorkspace, ToolAvailabilityChecker
from .ffprobe import DurationProbe
from .audio import AudioSampler, select_sampling_plan
from .frames import FrameSampler, compute_frame_timestamps
from .document import DocumentTextExtractor
from .pipeline import VerificationPipeline, ProgressReporter
from .manager import VerificationManager, JobRecord, JobStatus

__all__ = [
    'VerificationFailed',
    'ToolUnavailable',
    'ToolExecutionFailed',
    'VerificationTimeout',
    'ExtractionDegraded',
    'ModerationFailed',
    'InvalidInput',
    'VerificationCancelled',
    'ContentType',
    'Stage',
    'VerificationJob',
    'ProgressEvent',
    'AudioSample',
    'Frame',
    'Evidence',
    'TranscriptionResult',
    'ModerationVerdict',
    'VerificationResult',
    'CancellationToken',
    'VerificationConfig',
    'get_verification_config',
    'ProcessRunner',
    'ScratchWorkspace',
    'ToolAvailabilityChecker',
    'DurationProbe',
    'AudioSampler',
    'select_sampling_plan',
    'FrameSampler',
    'compute_frame_timestamps',
    'DocumentTextExtractor',
    'VerificationPipeline',
    'ProgressReporter',
    'VerificationManager',
    'JobRecord',
    'JobStatus',
]
