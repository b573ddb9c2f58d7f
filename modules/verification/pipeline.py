"""
内容审核流水线

按内容类型选择采样策略（视频/音频/图书），在受控并发下提取证据、转写音频、
调用审核服务，并在每个阶段推送进度事件：
- 视频：探测时长 → 音频片段与关键帧并行提取 → 并行转写 → 审核
- 音频：探测时长 → 音频片段 → 转写 → 审核
- 图书：提取文本 → 审核
"""

import os
import logging
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .base import ModeratorProtocol, ProgressSink, TranscriberProtocol
from .config import VerificationConfig
from .errors import (
    ModerationFailed,
    ToolExecutionFailed,
    VerificationFailed,
)
from .models import (
    STAGE_PROGRESS,
    AudioSample,
    CancellationToken,
    ContentType,
    Evidence,
    Frame,
    ModerationVerdict,
    ProgressEvent,
    Stage,
    StepOutcome,
    VerificationJob,
    VerificationResult,
)
from .runner import ProcessRunner, ScratchWorkspace, ToolAvailabilityChecker
from .ffprobe import DurationProbe
from .audio import AudioSampler
from .frames import FrameSampler
from .document import DocumentTextExtractor

logger = logging.getLogger(__name__)


class ProgressReporter:
    """进度上报器

    保证单个任务内进度百分比不回退；回调抛出的异常只记录日志。
    """

    def __init__(self, job_id: str, sink: Optional[ProgressSink] = None):
        self.job_id = job_id
        self.sink = sink
        self.percent = 0
        self.stage: Optional[Stage] = None

    def emit(self, stage: Stage, message: str, percent: Optional[int] = None) -> ProgressEvent:
        """推送进度事件

        Args:
            stage: 阶段
            message: 描述信息
            percent: 进度百分比，默认取阶段对应的值

        Returns:
            已推送的 ProgressEvent
        """
        target = STAGE_PROGRESS.get(stage, self.percent) if percent is None else percent
        self.percent = max(self.percent, min(100, int(target)))
        self.stage = stage

        event = ProgressEvent(self.job_id, self.percent, stage, message)
        logger.info(f"[{self.job_id}] {self.percent}% {stage.value}: {message}")
        if self.sink is not None:
            try:
                self.sink(event)
            except Exception as e:
                logger.warning(f"[{self.job_id}] Progress callback failed: {e}")
        return event

    def error(self, message: str) -> ProgressEvent:
        # 错误事件保留最后的进度值
        return self.emit(Stage.ERROR, message, self.percent)


@dataclass
class _Collected:
    """策略收集到的证据"""
    transcript: str = ""
    frames: List[Frame] = field(default_factory=list)
    duration_seconds: Optional[float] = None


class _JobContext:
    """单次运行的上下文：任务、进度、取消令牌、工作区和失败计数"""

    def __init__(
        self,
        job: VerificationJob,
        reporter: ProgressReporter,
        cancel: CancellationToken,
        scratch_dir: str,
    ):
        self.job = job
        self.reporter = reporter
        self.cancel = cancel
        self.scratch_dir = scratch_dir
        self.failures: Dict[str, int] = {}
        self._workspace: Optional[ScratchWorkspace] = None
        self._lock = threading.Lock()

    @property
    def workspace(self) -> ScratchWorkspace:
        # 首次使用时创建，图书任务不会创建
        with self._lock:
            if self._workspace is None:
                os.makedirs(self.scratch_dir, exist_ok=True)
                self._workspace = ScratchWorkspace(self.scratch_dir, self.job.job_id)
            return self._workspace

    def count_failure(self, key: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self._lock:
            self.failures[key] = self.failures.get(key, 0) + amount

    def close_workspace(self) -> None:
        if self._workspace is not None:
            self._workspace.close()


class VerificationPipeline:
    """内容审核流水线"""

    def __init__(
        self,
        config: VerificationConfig,
        transcriber: TranscriberProtocol,
        moderator: ModeratorProtocol,
        runner: Optional[ProcessRunner] = None,
        checker: Optional[ToolAvailabilityChecker] = None,
        probe: Optional[DurationProbe] = None,
        audio_sampler: Optional[AudioSampler] = None,
        frame_sampler: Optional[FrameSampler] = None,
        text_extractor: Optional[DocumentTextExtractor] = None,
    ):
        """初始化流水线

        Args:
            config: 审核配置
            transcriber: 语音转写服务
            moderator: 内容审核服务
            runner: 进程运行器，默认按配置创建
            checker: 工具可用性检测器（每进程一个）
            probe/audio_sampler/frame_sampler/text_extractor: 可替换的各步骤实现
        """
        self.config = config
        self.transcriber = transcriber
        self.moderator = moderator
        self.checker = checker or ToolAvailabilityChecker(timeout=config.version_probe_timeout)
        self.runner = runner or ProcessRunner(
            self.checker,
            scratch_dir=config.scratch_dir,
            default_timeout=config.tool_timeout,
        )
        self.probe = probe or DurationProbe(self.runner, config)
        self.audio_sampler = audio_sampler or AudioSampler(self.runner, config)
        self.frame_sampler = frame_sampler or FrameSampler(self.runner, config)
        self.text_extractor = text_extractor or DocumentTextExtractor(config)

        self.strategies: Dict[ContentType, Callable[[_JobContext], _Collected]] = {
            ContentType.VIDEO: self._collect_video,
            ContentType.AUDIO: self._collect_audio,
            ContentType.BOOK: self._collect_book,
        }

    def verify(
        self,
        job: VerificationJob,
        on_progress: Optional[ProgressSink] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> VerificationResult:
        """运行一次审核

        Args:
            job: 审核任务
            on_progress: 进度回调
            cancel: 调用方的取消令牌

        Returns:
            VerificationResult

        Raises:
            VerificationFailed: 任务失败（kind 区分失败类型）
        """
        reporter = ProgressReporter(job.job_id, on_progress)
        token = CancellationToken.with_timeout(self.config.job_timeout, parent=cancel)
        ctx = _JobContext(job, reporter, token, self.config.scratch_dir)

        try:
            reporter.emit(Stage.RECEIVED, "File received")
            reporter.emit(Stage.VALIDATING, f"Validating {job.content_type.value} upload")
            job.validate()
            token.raise_if_cancelled()

            strategy = self.strategies.get(job.content_type)
            if strategy is None:
                raise VerificationFailed(f"No verification strategy for {job.content_type.value}")
            collected = strategy(ctx)

            # 审核前释放临时文件
            ctx.close_workspace()
            token.raise_if_cancelled()

            evidence = Evidence(
                title=job.title,
                content_type=job.content_type,
                description=job.description,
                transcript=collected.transcript,
                frames=collected.frames,
                thumbnail=job.thumbnail_data_url,
            )
            if evidence.thumbnail:
                reporter.emit(Stage.MODERATING, "Checking thumbnail")
            reporter.emit(Stage.MODERATING, "Running content moderation", 80)
            verdict = self._moderate(evidence)
            reporter.emit(Stage.MODERATING, "Finalizing verification", 95)

            result = VerificationResult(
                approved=verdict.approved,
                moderation_detail=verdict.detail,
                transcript=collected.transcript or None,
                frames=collected.frames or None,
                duration_seconds=collected.duration_seconds,
                failures=dict(ctx.failures),
            )
            reporter.emit(Stage.DONE, "Verification approved" if result.approved else "Verification rejected")
            return result
        except VerificationFailed as e:
            logger.error(f"[{job.job_id}] Verification failed ({e.kind}): {e.message}")
            reporter.error(e.message)
            raise
        except Exception as e:
            logger.exception(f"[{job.job_id}] Unexpected verification error: {e}")
            reporter.error(str(e))
            raise VerificationFailed(str(e)) from e
        finally:
            ctx.close_workspace()

    # ------------------------------------------------------------------
    # 各内容类型的策略

    def _collect_video(self, ctx: _JobContext) -> _Collected:
        job = ctx.job
        ctx.reporter.emit(Stage.SAMPLING, "Analyzing video")
        duration = self.probe.probe_duration(job.file_bytes, job.mime_type, ctx.workspace, ctx.cancel)
        plan = self.audio_sampler.plan(duration)

        clip_outcomes, frame_outcomes = self._run_parallel(
            ctx.cancel,
            lambda token: self.audio_sampler.extract_clips(job.file_bytes, plan, ctx.workspace, token),
            lambda token: self.frame_sampler.extract_frame_outcomes(
                job.file_bytes, self.config.frame_count, duration, ctx.workspace, token
            ),
        )

        samples = self._collect_samples(ctx, clip_outcomes)
        if clip_outcomes and not samples:
            logger.warning(f"[{job.job_id}] All {len(clip_outcomes)} audio clips failed, continuing without transcript")
        frames = [outcome.value for outcome in frame_outcomes if outcome.ok]
        ctx.count_failure("frames", len(frame_outcomes) - len(frames))

        ctx.reporter.emit(Stage.TRANSCRIBING, f"Transcribing {len(samples)} audio clip(s)")
        transcript = self._transcribe_samples(ctx, samples)

        if not frames and self.config.require_video_frames:
            raise ToolExecutionFailed("No frames could be extracted from video")

        ctx.reporter.emit(Stage.FRAMES_READY, f"Extracted {len(frames)} frame(s)")
        return _Collected(transcript=transcript, frames=frames, duration_seconds=duration)

    def _collect_audio(self, ctx: _JobContext) -> _Collected:
        job = ctx.job
        ctx.reporter.emit(Stage.SAMPLING, "Analyzing audio")
        duration = self.probe.probe_duration(job.file_bytes, job.mime_type, ctx.workspace, ctx.cancel)
        plan = self.audio_sampler.plan(duration)

        clip_outcomes = self.audio_sampler.extract_clips(job.file_bytes, plan, ctx.workspace, ctx.cancel)
        samples = self._collect_samples(ctx, clip_outcomes)
        if not samples:
            # 音频任务只有转写这一种证据
            raise ToolExecutionFailed(f"No audio clips could be extracted ({len(clip_outcomes)} attempted)")

        ctx.reporter.emit(Stage.TRANSCRIBING, f"Transcribing {len(samples)} audio clip(s)")
        transcript = self._transcribe_samples(ctx, samples)

        ctx.reporter.emit(Stage.TEXT_READY, "Audio transcript ready")
        return _Collected(transcript=transcript, duration_seconds=duration)

    def _collect_book(self, ctx: _JobContext) -> _Collected:
        job = ctx.job
        ctx.reporter.emit(Stage.SAMPLING, "Extracting document text")
        text = self.text_extractor.extract_text(
            job.file_bytes, job.mime_type, max_chars=self.config.evidence_text_cap
        )
        if not text:
            logger.warning(f"[{job.job_id}] No text extracted from {job.mime_type}")
            ctx.count_failure("text")
        ctx.cancel.raise_if_cancelled()

        ctx.reporter.emit(Stage.TEXT_READY, f"Extracted {len(text)} characters")
        return _Collected(transcript=text)

    # ------------------------------------------------------------------

    def _run_parallel(self, cancel: CancellationToken, *tasks: Callable[[CancellationToken], object]) -> list:
        """并行执行互相独立的子步骤

        任一子步骤失败时取消其余子步骤，等待它们退出后抛出最先发生的错误。
        """
        group = CancellationToken(parent=cancel)
        with ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="VerifyStep") as executor:
            futures = [executor.submit(task, group) for task in tasks]
            done, _ = wait(futures, return_when=FIRST_EXCEPTION)
            first_error = None
            for future in futures:
                if future in done and future.exception() is not None:
                    first_error = future.exception()
                    break
            if first_error is not None:
                group.cancel("sibling step failed")
                wait(futures)

        if first_error is not None:
            raise first_error
        return [future.result() for future in futures]

    def _collect_samples(self, ctx: _JobContext, outcomes: List[StepOutcome]) -> List[AudioSample]:
        samples = [outcome.value for outcome in outcomes if outcome.ok]
        ctx.count_failure("audio_clips", len(outcomes) - len(samples))
        return samples

    def _transcribe_samples(self, ctx: _JobContext, samples: List[AudioSample]) -> str:
        """并行转写所有片段，按偏移顺序拼接非空文本"""
        if not samples:
            return ""

        ordered = sorted(samples, key=lambda sample: sample.offset_seconds)
        workers = max(1, min(self.config.transcribe_concurrency, len(ordered)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="Transcribe") as executor:
            futures = [executor.submit(self._transcribe_one, ctx, sample) for sample in ordered]
            texts = [future.result() for future in futures]

        ctx.cancel.raise_if_cancelled()
        return " ".join(text for text in texts if text)

    def _transcribe_one(self, ctx: _JobContext, sample: AudioSample) -> str:
        if ctx.cancel.stopped():
            return ""
        try:
            result = self.transcriber.transcribe(
                sample.data,
                sample.mime_type,
                self.config.transcription_language,
            )
        except Exception as e:
            logger.warning(f"[{ctx.job.job_id}] Transcription failed for clip at {sample.offset_seconds}s: {e}")
            ctx.count_failure("transcripts")
            return ""

        text = (getattr(result, "text", "") or "").strip()
        logger.info(
            f"[{ctx.job.job_id}] Clip at {sample.offset_seconds}s transcribed: "
            f"{len(text)} chars, confidence {getattr(result, 'confidence', 0.0)}"
        )
        return text

    def _moderate(self, evidence: Evidence) -> ModerationVerdict:
        try:
            verdict = self.moderator.moderate(evidence)
        except ModerationFailed:
            raise
        except Exception as e:
            raise ModerationFailed(f"Moderation service error: {e}") from e

        if not isinstance(verdict, ModerationVerdict):
            raise ModerationFailed("Moderation service returned no verdict")
        return verdict
