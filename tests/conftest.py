import os
import sys
import threading
import time

import pytest

from modules.verification.audio import select_sampling_plan
from modules.verification.config import VerificationConfig
from modules.verification.errors import ToolExecutionFailed
from modules.verification.frames import compute_frame_timestamps
from modules.verification.models import (
    AudioSample,
    Frame,
    ModerationVerdict,
    StepOutcome,
    TranscriptionResult,
    VerificationJob,
)
from modules.verification.pipeline import VerificationPipeline
from modules.verification.runner import ToolAvailabilityChecker

# 用当前解释器模拟外部工具
FAKE_TOOL = sys.executable

# 按 -ss 参数决定行为的假 ffmpeg
FAKE_FFMPEG = """#!{python}
import sys
import time

args = sys.argv[1:]
if args and args[0] in ("-version", "--version"):
    sys.exit(0)
offset = args[args.index("-ss") + 1]
if offset in {fail_at}:
    sys.stderr.write("seek failed at " + offset)
    sys.exit(1)
time.sleep({sleep})
with open(args[-1], "wb") as f:
    f.write(("clip-" + offset).encode())
"""


class UnavailableChecker(ToolAvailabilityChecker):
    """所有工具都不可用"""

    def _probe(self, executable):
        return False


class AvailableChecker(ToolAvailabilityChecker):
    """所有工具都可用，不实际探测"""

    def _probe(self, executable):
        return True


class FakeProbe:
    def __init__(self, duration=300.0):
        self.duration = duration
        self.calls = 0

    def probe_duration(self, data, mime_type="video/mp4", workspace=None, cancel=None):
        self.calls += 1
        return self.duration


class FakeAudioSampler:
    """按计划返回片段，可指定失败的偏移；每个片段在工作区写一个文件"""

    def __init__(self, fail_offsets=(), error=None, wait_for_cancel=False):
        self.fail_offsets = set(fail_offsets)
        self.error = error
        self.wait_for_cancel = wait_for_cancel
        self.saw_cancel = threading.Event()

    def plan(self, total):
        return select_sampling_plan(total)

    def extract_clips(self, data, plan, workspace=None, cancel=None):
        if self.wait_for_cancel:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if cancel is not None and cancel.cancelled:
                    self.saw_cancel.set()
                    cancel.raise_if_cancelled()
                time.sleep(0.01)
        if self.error is not None:
            raise self.error

        outcomes = []
        for window in plan:
            if workspace is not None:
                with open(workspace.new_path("clip", ".mp3"), "wb") as f:
                    f.write(b"clip")
            label = f"clip@{window.offset}"
            if window.offset in self.fail_offsets:
                outcomes.append(StepOutcome.failure(label, ToolExecutionFailed("decode error")))
            else:
                sample = AudioSample(
                    data=f"audio-{float(window.offset)}".encode(),
                    offset_seconds=float(window.offset),
                    duration_seconds=float(window.length),
                )
                outcomes.append(StepOutcome.success(label, sample))
        return outcomes


class FakeFrameSampler:
    def __init__(self, fail_count=0, error=None):
        self.fail_count = fail_count
        self.error = error
        self.calls = 0

    def extract_frame_outcomes(self, data, frame_count, total_duration, workspace=None, cancel=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        outcomes = []
        for index, timestamp in enumerate(compute_frame_timestamps(frame_count, total_duration)):
            label = f"frame@{timestamp}"
            if index < self.fail_count:
                outcomes.append(StepOutcome.failure(label, ToolExecutionFailed("seek failed")))
            else:
                outcomes.append(StepOutcome.success(label, Frame(f"data:image/jpeg;base64,{index}", timestamp)))
        return outcomes


class FakeTranscriber:
    """返回 "text-<偏移>"；delays 让较早的片段更晚完成"""

    def __init__(self, fail=False, delays=None):
        self.fail = fail
        self.delays = delays or {}
        self.calls = []
        self._lock = threading.Lock()

    def transcribe(self, audio_bytes, mime_hint, language_hint=None):
        with self._lock:
            self.calls.append((audio_bytes, mime_hint, language_hint))
        offset = audio_bytes.decode().split("-", 1)[1]
        time.sleep(self.delays.get(offset, 0))
        if self.fail:
            raise RuntimeError("stt backend down")
        return TranscriptionResult(text=f"text-{offset}", confidence=0.9, language="en")


class FakeModerator:
    def __init__(self, approved=True, error=None):
        self.approved = approved
        self.error = error
        self.evidence = []

    def moderate(self, evidence):
        self.evidence.append(evidence)
        if self.error is not None:
            raise self.error
        return ModerationVerdict(approved=self.approved, detail={"reason": "fake"})


class StubTextExtractor:
    def __init__(self, text="In the beginning was the Word"):
        self.text = text
        self.calls = []

    def extract_text(self, data, mime_type, max_chars=None):
        self.calls.append((mime_type, max_chars))
        return self.text[:max_chars] if max_chars else self.text


def build_pipeline(config, **overrides):
    options = dict(
        transcriber=FakeTranscriber(),
        moderator=FakeModerator(),
        probe=FakeProbe(300),
        audio_sampler=FakeAudioSampler(),
        frame_sampler=FakeFrameSampler(),
        text_extractor=StubTextExtractor(),
    )
    options.update(overrides)
    return VerificationPipeline(config, **options)


def make_job(content_type="video", mime_type=None, file_bytes=b"media-bytes", **kwargs):
    default_mime = {
        "video": "video/mp4",
        "audio": "audio/mpeg",
        "book": "application/pdf",
    }
    return VerificationJob.create(
        file_bytes=file_bytes,
        mime_type=default_mime[content_type] if mime_type is None else mime_type,
        content_type=content_type,
        title=kwargs.pop("title", "Sunday Worship"),
        **kwargs,
    )


def scratch_is_empty(path):
    return not os.path.exists(path) or os.listdir(path) == []


@pytest.fixture
def config(tmp_path):
    return VerificationConfig(scratch_dir=str(tmp_path / "scratch"))


@pytest.fixture
def events():
    return []


def write_fake_ffmpeg(directory, fail_at=(), sleep=0):
    """写出可执行的假 ffmpeg；-ss 取值在 fail_at 中时以非零码退出"""
    path = os.path.join(str(directory), "fake-ffmpeg")
    with open(path, "w") as f:
        f.write(FAKE_FFMPEG.format(python=FAKE_TOOL, fail_at=tuple(str(v) for v in fail_at), sleep=sleep))
    os.chmod(path, 0o755)
    return path
