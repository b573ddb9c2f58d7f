"""
临时目录清理模块

周期性删除临时根目录下超过指定时长的任务工作区，作为进程崩溃后残留文件的兜底清理。
只处理 ScratchWorkspace 命名的目录，根目录中的其他文件不受影响。
"""

import os
import time
import shutil
import threading
import logging
from typing import Optional

from .runner import is_workspace_name

logger = logging.getLogger(__name__)


class ScratchReaper:
    """孤儿临时目录清理器"""

    def __init__(self, scratch_dir: str, max_age: float = 3600, interval: float = 300):
        """初始化清理器

        Args:
            scratch_dir: 临时根目录
            max_age: 超过该时长（秒）的工作区视为孤儿
            interval: 清理间隔（秒）
        """
        self.scratch_dir = scratch_dir
        self.max_age = max_age
        self.interval = interval
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def sweep(self, now: Optional[float] = None) -> int:
        """执行一次清理

        Args:
            now: 当前时间戳，默认 time.time()

        Returns:
            删除的工作区数
        """
        if not os.path.isdir(self.scratch_dir):
            return 0

        now = time.time() if now is None else now
        removed = 0
        for entry in os.scandir(self.scratch_dir):
            if not is_workspace_name(entry.name):
                continue
            try:
                if not entry.is_dir(follow_symlinks=False):
                    continue
                age = now - entry.stat(follow_symlinks=False).st_mtime
                if age <= self.max_age:
                    continue
                shutil.rmtree(entry.path)
                removed += 1
                logger.info(f"Removed orphaned scratch entry: {entry.name} (age {int(age)}s)")
            except OSError as e:
                logger.warning(f"Failed to remove scratch entry {entry.path}: {e}")

        if removed:
            logger.info(f"Scratch reaper removed {removed} orphaned entries")
        return removed

    def start(self) -> None:
        """启动后台清理线程"""
        if self._thread is None or not self._thread.is_alive():
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._loop,
                daemon=True,
                name="ScratchReaper"
            )
            self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _loop(self):
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error in scratch reaper loop: {e}")
            self._stop_event.wait(self.interval)
