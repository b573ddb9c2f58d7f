"""
外部工具进程管理模块

负责在内存数据上执行 ffmpeg/ffprobe：写入临时文件、替换命令占位符、带超时执行、
读取输出，并在任何退出路径上删除临时文件。
"""

import os
import re
import shutil
import tempfile
import subprocess
import threading
import time
import logging
import uuid
import secrets
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from .errors import (
    ToolExecutionFailed,
    ToolUnavailable,
    VerificationCancelled,
    VerificationTimeout,
)
from .models import CancellationToken

logger = logging.getLogger(__name__)

INPUT_PLACEHOLDER = "{input}"
OUTPUT_PLACEHOLDER = "{output}"

# ScratchWorkspace 目录名：<任务ID>-<毫秒时间戳>-<6位十六进制>
WORKSPACE_NAME_PATTERN = re.compile(r"^[\w-]{1,64}-\d{13,}-[0-9a-f]{6}$")


class ToolAvailabilityChecker:
    """外部工具可用性检测

    每个可执行文件只用 -version 探测一次，结果缓存在实例中。
    生产环境每进程一个实例，注入流水线；测试可替换为假的检测器。
    """

    def __init__(self, version_args: Sequence[str] = ("-version",), timeout: int = 10):
        self.version_args = list(version_args)
        self.timeout = timeout
        self._cache: Dict[str, bool] = {}
        self._lock = threading.Lock()

    def is_available(self, executable: str) -> bool:
        with self._lock:
            if executable not in self._cache:
                self._cache[executable] = self._probe(executable)
            return self._cache[executable]

    def ensure_available(self, executable: str) -> None:
        if not self.is_available(executable):
            raise ToolUnavailable(executable)

    def reset(self) -> None:
        with self._lock:
            self._cache.clear()

    def _probe(self, executable: str) -> bool:
        try:
            result = subprocess.run(
                [executable, *self.version_args],
                capture_output=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"{executable} is not available: {e}")
            return False

        if result.returncode != 0:
            logger.warning(f"{executable} version probe exited with code {result.returncode}")
            return False

        logger.info(f"{executable} is available")
        return True


class ScratchWorkspace:
    """任务级临时目录

    目录名由任务 ID、毫秒时间戳和随机后缀组成，避免并发任务冲突。
    close() 删除整个目录。
    """

    def __init__(self, root: str, job_id: str):
        self.root = root
        self.job_id = job_id
        name = f"{_safe_name(job_id)}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"
        self.path = os.path.join(root, name)
        os.makedirs(self.path, exist_ok=False)
        self._closed = False

    def new_path(self, prefix: str, suffix: str = "") -> str:
        """生成工作区内唯一的文件路径（不创建文件）"""
        return os.path.join(self.path, f"{prefix}-{uuid.uuid4().hex[:12]}{suffix}")

    def subdirectory(self, prefix: str) -> str:
        """在工作区内创建唯一子目录"""
        path = self.new_path(prefix)
        os.makedirs(path)
        return path

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if os.path.exists(self.path):
            try:
                shutil.rmtree(self.path)
            except OSError as e:
                logger.warning(f"Failed to remove scratch workspace {self.path}: {e}")

    def __enter__(self) -> "ScratchWorkspace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@dataclass
class CommandResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")


class ProcessRunner:
    """外部工具运行器

    所有调用都带超时；取消令牌生效或超时时终止子进程。
    """

    def __init__(
        self,
        checker: Optional[ToolAvailabilityChecker] = None,
        scratch_dir: Optional[str] = None,
        default_timeout: Optional[float] = 120,
        poll_interval: float = 0.2,
    ):
        """初始化运行器

        Args:
            checker: 可用性检测器
            scratch_dir: 未传入工作区时使用的临时根目录
            default_timeout: 默认超时（秒），None 表示不限
            poll_interval: 检查取消/超时的轮询间隔（秒）
        """
        self.checker = checker or ToolAvailabilityChecker()
        self.scratch_dir = scratch_dir
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    def execute(
        self,
        command: List[str],
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> CommandResult:
        """执行命令

        Args:
            command: 命令列表，第一个元素为可执行文件
            timeout: 超时时间（秒），默认使用 default_timeout
            cancel: 取消令牌

        Returns:
            CommandResult

        Raises:
            ToolUnavailable: 可执行文件不存在
            ToolExecutionFailed: 非零退出码
            VerificationTimeout: 超时或任务截止时间已到
            VerificationCancelled: 任务被取消
        """
        executable = command[0]
        self.checker.ensure_available(executable)
        if cancel is not None:
            cancel.raise_if_cancelled()

        limit = self.default_timeout if timeout is None else timeout

        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ToolUnavailable(executable, f"{executable} not found: {e}") from e
        except OSError as e:
            raise ToolExecutionFailed(f"Failed to start {executable}: {e}") from e

        started = time.monotonic()
        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.cancelled:
                    self._kill(process)
                    raise VerificationCancelled(f"{executable} cancelled: {cancel.reason}")
                if cancel is not None and cancel.expired():
                    self._kill(process)
                    raise VerificationTimeout(f"{executable} stopped: job time budget exhausted")
                if limit is not None and time.monotonic() - started >= limit:
                    _, stderr = self._kill(process)
                    raise VerificationTimeout(
                        f"{executable} timeout ({limit}s)",
                        stderr=(stderr or b"").decode("utf-8", errors="replace"),
                    )

        result = CommandResult(process.returncode, stdout or b"", stderr or b"")
        if result.returncode != 0:
            error_msg = result.stderr_text.strip() or "Unknown error"
            logger.warning(f"{executable} error (code {result.returncode}): {error_msg[-300:]}")
            raise ToolExecutionFailed(
                f"{executable} failed with exit code {result.returncode}",
                stderr=result.stderr_text,
                returncode=result.returncode,
            )
        return result

    def run(
        self,
        input_bytes: bytes,
        command_template: List[str],
        output_suffix: str = ".out",
        workspace: Optional[ScratchWorkspace] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> bytes:
        """在内存数据上运行工具并返回输出文件内容

        Args:
            input_bytes: 输入数据
            command_template: 命令模板，{input}/{output} 会被替换为临时文件路径
            output_suffix: 输出文件扩展名（ffmpeg 依赖它推断格式）
            workspace: 任务工作区，None 时临时创建
            timeout: 超时时间（秒）
            cancel: 取消令牌

        Returns:
            输出文件内容
        """
        with self.open_workspace(workspace) as ws:
            input_path = ws.new_path("input")
            output_path = ws.new_path("output", output_suffix)
            try:
                with open(input_path, "wb") as f:
                    f.write(input_bytes)
                command = self.render(command_template, input_path, output_path)
                self.execute(command, timeout=timeout, cancel=cancel)
                if not os.path.exists(output_path):
                    raise ToolExecutionFailed(f"{command[0]} produced no output file")
                with open(output_path, "rb") as f:
                    return f.read()
            finally:
                remove_file(input_path)
                remove_file(output_path)

    def run_capture(
        self,
        input_bytes: bytes,
        command_template: List[str],
        workspace: Optional[ScratchWorkspace] = None,
        timeout: Optional[float] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> str:
        """在内存数据上运行工具并返回标准输出（用于元数据探测）"""
        with self.open_workspace(workspace) as ws:
            input_path = ws.new_path("input")
            try:
                with open(input_path, "wb") as f:
                    f.write(input_bytes)
                command = self.render(command_template, input_path)
                return self.execute(command, timeout=timeout, cancel=cancel).stdout_text
            finally:
                remove_file(input_path)

    @staticmethod
    def render(command_template: List[str], input_path: str, output_path: str = "") -> List[str]:
        """替换命令模板中的占位符"""
        return [
            str(part).replace(INPUT_PLACEHOLDER, input_path).replace(OUTPUT_PLACEHOLDER, output_path)
            for part in command_template
        ]

    def open_workspace(self, workspace: Optional[ScratchWorkspace] = None):
        """借用已有工作区，或创建退出时自动删除的临时工作区"""
        if workspace is not None:
            return _BorrowedWorkspace(workspace)
        root = self.scratch_dir or os.path.join(tempfile.gettempdir(), "content-verification")
        os.makedirs(root, exist_ok=True)
        return ScratchWorkspace(root, "adhoc")

    @staticmethod
    def _kill(process: subprocess.Popen):
        """终止子进程并回收输出"""
        try:
            process.kill()
        except OSError:
            pass
        try:
            return process.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {process.pid} did not exit after kill")
            return b"", b""


class _BorrowedWorkspace:
    """外部传入的工作区：退出时不关闭，由所有者负责清理"""

    def __init__(self, workspace: ScratchWorkspace):
        self.workspace = workspace

    def __enter__(self) -> ScratchWorkspace:
        return self.workspace

    def __exit__(self, exc_type, exc, tb) -> None:
        return None


def remove_file(path: str) -> None:
    """删除文件（不存在时忽略）"""
    try:
        if path and os.path.isfile(path):
            os.remove(path)
    except OSError as e:
        logger.warning(f"Failed to cleanup file {path}: {e}")


def format_seconds(value: float) -> str:
    """格式化命令行中的秒数（整数不带小数点）"""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return f"{value:.3f}".rstrip("0").rstrip(".")


def is_workspace_name(name: str) -> bool:
    """是否为 ScratchWorkspace 创建的目录名"""
    return WORKSPACE_NAME_PATTERN.match(name or "") is not None


def _safe_name(value: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in value or "")
    return cleaned[:64] or "job"
