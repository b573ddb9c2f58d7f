import os

import pytest

from modules.verification.audio import AudioSampler, select_sampling_plan
from modules.verification.errors import ToolUnavailable, VerificationTimeout
from modules.verification.frames import FrameSampler, compute_frame_timestamps
from modules.verification.models import ClipWindow
from modules.verification.runner import ProcessRunner, ScratchWorkspace

from conftest import AvailableChecker, UnavailableChecker, write_fake_ffmpeg


class TestSamplingPlan:
    def test_short_media_single_clip(self):
        assert select_sampling_plan(90) == [ClipWindow(0, 60)]

    def test_very_short_media_uses_full_length(self):
        assert select_sampling_plan(42.5) == [ClipWindow(0, 42.5)]

    def test_medium_media_beginning_and_end(self):
        assert select_sampling_plan(150) == [ClipWindow(0, 60), ClipWindow(90, 60)]

    def test_long_media_three_clips(self):
        assert select_sampling_plan(300) == [ClipWindow(0, 60), ClipWindow(120, 60), ClipWindow(240, 60)]

    @pytest.mark.parametrize("total,count", [(120, 1), (120.01, 2), (180, 2), (180.01, 3)])
    def test_threshold_boundaries(self, total, count):
        assert len(select_sampling_plan(total)) == count

    def test_offsets_are_ordered(self):
        plan = select_sampling_plan(3600)
        assert [w.offset for w in plan] == sorted(w.offset for w in plan)

    def test_zero_duration(self):
        assert select_sampling_plan(0) == [ClipWindow(0, 0)]


class TestFrameTimestamps:
    def test_three_frames_at_100_seconds(self):
        assert compute_frame_timestamps(3, 100) == [5, 50, 90]

    def test_single_frame(self):
        assert compute_frame_timestamps(1, 100) == [50]
        assert compute_frame_timestamps(1, 6) == [5]

    def test_two_frames(self):
        assert compute_frame_timestamps(2, 100) == [10, 50]

    def test_more_than_three_frames(self):
        timestamps = compute_frame_timestamps(5, 200)
        assert timestamps == [10, 40, 80, 120, 190]

    def test_no_frames(self):
        assert compute_frame_timestamps(0, 100) == []


class TestCommands:
    def test_audio_clip_command(self, config):
        sampler = AudioSampler(ProcessRunner(AvailableChecker()), config)
        command = sampler.build_command(60, 120)

        assert command[0] == config.ffmpeg_path
        assert command[command.index("-ss") + 1] == "120"
        assert command[command.index("-t") + 1] == "60"
        assert command[command.index("-acodec") + 1] == "libmp3lame"
        assert command[command.index("-ar") + 1] == "44100"
        assert command[command.index("-ac") + 1] == "2"
        assert "-vn" in command
        assert command[-1] == "{output}"

    def test_frame_command_seeks_before_input(self, config):
        sampler = FrameSampler(ProcessRunner(AvailableChecker()), config)
        command = sampler.build_command(12.5, "/tmp/in", "/tmp/out.jpg")

        assert command.index("-ss") < command.index("-i")
        assert command[command.index("-ss") + 1] == "12.5"
        assert command[command.index("-vf") + 1] == "scale=320:-1"
        assert command[command.index("-q:v") + 1] == "5"
        assert command[-1] == "/tmp/out.jpg"


@pytest.fixture
def workspace(config):
    os.makedirs(config.scratch_dir)
    ws = ScratchWorkspace(config.scratch_dir, "sampling")
    yield ws
    ws.close()


def make_sampler(sampler_cls, config, tmp_path, **fake):
    config.ffmpeg_path = write_fake_ffmpeg(tmp_path, **fake)
    runner = ProcessRunner(AvailableChecker(), scratch_dir=config.scratch_dir, poll_interval=0.05)
    return sampler_cls(runner, config)


class TestAudioExtraction:
    def test_clips_follow_plan_order(self, config, tmp_path, workspace):
        sampler = make_sampler(AudioSampler, config, tmp_path)

        outcomes = sampler.extract_clips(b"media", sampler.plan(300), workspace)

        assert [outcome.value.data for outcome in outcomes] == [b"clip-0", b"clip-120", b"clip-240"]
        assert [outcome.value.offset_seconds for outcome in outcomes] == [0.0, 120.0, 240.0]
        assert os.listdir(workspace.path) == []

    def test_failed_clip_becomes_failed_outcome(self, config, tmp_path, workspace):
        sampler = make_sampler(AudioSampler, config, tmp_path, fail_at=["120"])

        outcomes = sampler.extract_clips(b"media", sampler.plan(300), workspace)

        assert [outcome.ok for outcome in outcomes] == [True, False, True]
        assert outcomes[1].error.kind == "tool_execution_failed"
        assert "seek failed at 120" in outcomes[1].error.stderr
        assert os.listdir(workspace.path) == []

    def test_timeout_propagates(self, config, tmp_path, workspace):
        config.tool_timeout = 0.5
        sampler = make_sampler(AudioSampler, config, tmp_path, sleep=5)

        with pytest.raises(VerificationTimeout):
            sampler.extract_clips(b"media", [ClipWindow(0, 60)], workspace)

        assert os.listdir(workspace.path) == []

    def test_unavailable_tool_propagates(self, config, workspace):
        sampler = AudioSampler(ProcessRunner(UnavailableChecker()), config)

        with pytest.raises(ToolUnavailable):
            sampler.extract_clips(b"media", [ClipWindow(0, 60)], workspace)


class TestFrameExtraction:
    def test_frames_are_data_urls(self, config, tmp_path, workspace):
        sampler = make_sampler(FrameSampler, config, tmp_path)

        frames = sampler.extract_frames(b"media", 3, 100, workspace)

        assert [frame.timestamp_seconds for frame in frames] == [5, 50, 90]
        assert all(frame.inline_image_data.startswith("data:image/jpeg;base64,") for frame in frames)

    def test_failed_frame_is_dropped_and_subdirectory_removed(self, config, tmp_path, workspace):
        sampler = make_sampler(FrameSampler, config, tmp_path, fail_at=["50"])

        outcomes = sampler.extract_frame_outcomes(b"media", 3, 100, workspace)
        frames = [outcome.value for outcome in outcomes if outcome.ok]

        assert [outcome.ok for outcome in outcomes] == [True, False, True]
        assert [frame.timestamp_seconds for frame in frames] == [5, 90]
        assert os.listdir(workspace.path) == []

    def test_timeout_propagates_and_subdirectory_removed(self, config, tmp_path, workspace):
        config.tool_timeout = 0.5
        sampler = make_sampler(FrameSampler, config, tmp_path, sleep=5)

        with pytest.raises(VerificationTimeout):
            sampler.extract_frames(b"media", 1, 100, workspace)

        assert os.listdir(workspace.path) == []
