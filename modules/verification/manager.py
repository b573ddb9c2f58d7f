"""
审核任务管理器

负责审核任务的生命周期管理：
- 提交任务并在后台线程中运行流水线
- 限制每进程同时运行的任务数
- 记录进度事件供 HTTP 轮询
- 取消任务、清理过期记录和孤儿临时目录
"""

import time
import threading
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .config import VerificationConfig
from .errors import VerificationCancelled, VerificationFailed
from .models import (
    STAGE_PROGRESS,
    CancellationToken,
    ProgressEvent,
    Stage,
    VerificationJob,
    VerificationResult,
)
from .pipeline import VerificationPipeline
from .reaper import ScratchReaper

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """任务状态枚举"""
    QUEUED = "queued"        # 等待空闲槽位
    RUNNING = "running"      # 运行中
    COMPLETED = "completed"  # 已完成（已得出结论）
    FAILED = "failed"        # 失败
    CANCELLED = "cancelled"  # 已取消


@dataclass
class JobRecord:
    """任务记录

    保存任务状态、进度事件日志以及最终结论或错误。
    """

    job_id: str
    content_type: str
    title: str
    status: JobStatus = JobStatus.QUEUED
    events: List[ProgressEvent] = field(default_factory=list)
    result: Optional[VerificationResult] = None
    error: Optional[Dict[str, Any]] = None
    cancel: CancellationToken = field(default_factory=CancellationToken, repr=False)

    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def __post_init__(self):
        self._lock = threading.Lock()

    def add_event(self, event: ProgressEvent) -> None:
        with self._lock:
            self.events.append(event)

    def events_since(self, index: int = 0) -> List[ProgressEvent]:
        with self._lock:
            return list(self.events[max(0, index):])

    @property
    def percent(self) -> int:
        with self._lock:
            return self.events[-1].percent if self.events else 0

    def mark_running(self):
        self.status = JobStatus.RUNNING
        self.started_at = time.time()

    def mark_completed(self, result: VerificationResult):
        self.status = JobStatus.COMPLETED
        self.result = result
        self.completed_at = time.time()

    def mark_failed(self, error: VerificationFailed):
        self.status = JobStatus.CANCELLED if isinstance(error, VerificationCancelled) else JobStatus.FAILED
        self.error = error.to_dict()
        self.completed_at = time.time()

    def is_finished(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def is_expired(self, ttl: float) -> bool:
        return self.is_finished() and self.completed_at is not None and time.time() - self.completed_at > ttl

    def to_dict(self, include_events: bool = True, include_frames: bool = False) -> Dict[str, Any]:
        """转换为 API 响应字典"""
        data: Dict[str, Any] = {
            "job_id": self.job_id,
            "content_type": self.content_type,
            "title": self.title,
            "status": self.status.value,
            "percent": self.percent,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
        if include_events:
            data["events"] = [event.to_dict() for event in self.events_since(0)]
        if self.result is not None:
            data["result"] = self.result.to_dict(include_frames=include_frames)
        if self.error is not None:
            data["error"] = self.error
        return data


class VerificationManager:
    """审核任务管理器"""

    def __init__(self, config: VerificationConfig, pipeline: VerificationPipeline, start_background: bool = True):
        """初始化任务管理器

        Args:
            config: 审核配置
            pipeline: 审核流水线
            start_background: 是否启动记录清理线程和临时目录清理线程
        """
        self.config = config
        self.pipeline = pipeline
        self.records: Dict[str, JobRecord] = {}
        self.lock = threading.RLock()
        self._slots = threading.BoundedSemaphore(max(1, config.max_concurrent_jobs))
        self._workers: Dict[str, threading.Thread] = {}

        self.reaper = ScratchReaper(
            config.scratch_dir,
            max_age=config.reaper_max_age,
            interval=config.reaper_interval,
        )

        self._cleanup_thread = None
        self._stop_cleanup = threading.Event()
        if start_background:
            self.reaper.start()
            self._start_cleanup_thread()

    def _start_cleanup_thread(self):
        if self._cleanup_thread is None or not self._cleanup_thread.is_alive():
            self._stop_cleanup.clear()
            self._cleanup_thread = threading.Thread(
                target=self._cleanup_loop,
                daemon=True,
                name="VerificationCleanup"
            )
            self._cleanup_thread.start()

    def _cleanup_loop(self):
        while not self._stop_cleanup.is_set():
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Error in verification cleanup loop: {e}")
            self._stop_cleanup.wait(self.config.reaper_interval)

    def submit(self, job: VerificationJob) -> JobRecord:
        """提交审核任务

        Args:
            job: 审核任务

        Returns:
            JobRecord（任务在后台线程中运行）
        """
        record = JobRecord(
            job_id=job.job_id,
            content_type=job.content_type.value,
            title=job.title,
        )
        with self.lock:
            if job.job_id in self.records:
                raise VerificationFailed(f"Job {job.job_id} already exists")
            self.records[job.job_id] = record

        record.add_event(ProgressEvent(
            job.job_id, STAGE_PROGRESS[Stage.RECEIVED], Stage.RECEIVED, "Waiting for a verification slot"
        ))

        worker = threading.Thread(
            target=self._run_job,
            args=(job, record),
            daemon=True,
            name=f"Verify-{job.job_id}"
        )
        with self.lock:
            self._workers[job.job_id] = worker
        worker.start()
        logger.info(f"Submitted verification job {job.job_id} ({job.content_type.value})")
        return record

    def _run_job(self, job: VerificationJob, record: JobRecord):
        acquired = False
        try:
            # 等待空闲槽位，期间响应取消
            while not acquired:
                if record.cancel.cancelled:
                    raise VerificationCancelled(f"Verification cancelled: {record.cancel.reason}")
                acquired = self._slots.acquire(timeout=0.5)

            record.mark_running()
            result = self.pipeline.verify(job, on_progress=record.add_event, cancel=record.cancel)
            record.mark_completed(result)
            logger.info(f"Verification job {job.job_id} finished: approved={result.approved}")
        except VerificationFailed as e:
            if not record.events or record.events[-1].stage != Stage.ERROR:
                record.add_event(ProgressEvent(job.job_id, record.percent, Stage.ERROR, e.message))
            record.mark_failed(e)
        except Exception as e:
            logger.exception(f"Verification job {job.job_id} crashed: {e}")
            record.add_event(ProgressEvent(job.job_id, record.percent, Stage.ERROR, str(e)))
            record.mark_failed(VerificationFailed(str(e)))
        finally:
            if acquired:
                self._slots.release()
            with self.lock:
                self._workers.pop(job.job_id, None)

    def get_record(self, job_id: str) -> Optional[JobRecord]:
        with self.lock:
            return self.records.get(job_id)

    def list_records(self) -> List[JobRecord]:
        with self.lock:
            return list(self.records.values())

    def cancel(self, job_id: str, reason: str = "manual") -> bool:
        """取消任务

        Args:
            job_id: 任务 ID
            reason: 取消原因

        Returns:
            是否发出了取消信号（任务不存在或已结束返回 False）
        """
        record = self.get_record(job_id)
        if not record or record.is_finished():
            return False
        record.cancel.cancel(reason)
        logger.info(f"Cancellation requested for job {job_id} ({reason})")
        return True

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[JobRecord]:
        """等待任务结束（主要用于测试和命令行调用）"""
        with self.lock:
            worker = self._workers.get(job_id)
        if worker is not None:
            worker.join(timeout)
        return self.get_record(job_id)

    def cleanup(self) -> int:
        """清理过期的已结束任务记录

        Returns:
            清理的记录数量
        """
        with self.lock:
            expired = [
                job_id for job_id, record in self.records.items()
                if record.is_expired(self.config.record_ttl)
            ]
            for job_id in expired:
                self.records.pop(job_id, None)

        if expired:
            logger.info(f"Cleaned up {len(expired)} finished verification records")
        return len(expired)

    def stop(self):
        """停止管理器，取消所有运行中的任务"""
        self._stop_cleanup.set()
        if self._cleanup_thread:
            self._cleanup_thread.join(timeout=5)
        self.reaper.stop()

        with self.lock:
            for record in self.records.values():
                if not record.is_finished():
                    record.cancel.cancel("shutdown")
            workers = list(self._workers.values())

        for worker in workers:
            worker.join(timeout=5)

    def get_stats(self) -> Dict[str, Any]:
        with self.lock:
            counts: Dict[str, int] = {}
            for record in self.records.values():
                counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return {
            "total": sum(counts.values()),
            "by_status": counts,
            "max_concurrent_jobs": self.config.max_concurrent_jobs,
        }
