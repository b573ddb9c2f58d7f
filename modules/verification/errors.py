"""
内容审核流水线异常定义

每种异常带有稳定的 kind 字符串，调用方（HTTP 层、任务管理器）据此区分失败类型。
"""

from typing import Any, Dict, Optional


class VerificationFailed(Exception):
    """审核任务失败的基类"""

    kind = "verification_failed"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ToolUnavailable(VerificationFailed):
    """转码/探测工具不可用（未安装或不在 PATH 中）"""

    kind = "tool_unavailable"

    def __init__(self, executable: str, message: str = ""):
        super().__init__(message or f"{executable} is not available")
        self.executable = executable


class ToolExecutionFailed(VerificationFailed):
    """外部工具执行失败（非零退出码）"""

    kind = "tool_execution_failed"

    def __init__(self, message: str, stderr: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr or ""
        self.returncode = returncode

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.returncode is not None:
            result["returncode"] = self.returncode
        if self.stderr:
            # stderr 可能很长，只保留末尾
            result["stderr"] = self.stderr[-500:]
        return result


class VerificationTimeout(ToolExecutionFailed):
    """工具调用超时或任务总时长超限"""

    kind = "timeout"


class ExtractionDegraded(VerificationFailed):
    """单个片段/帧/文本提取失败，证据集降级"""

    kind = "extraction_degraded"


class ModerationFailed(VerificationFailed):
    """审核服务调用失败，任务终止"""

    kind = "moderation_failed"


class InvalidInput(VerificationFailed):
    """输入不合法（空文件、不支持的 MIME 类型等）"""

    kind = "invalid_input"


class VerificationCancelled(VerificationFailed):
    """任务被取消"""

    kind = "cancelled"
