import os
import threading
import time

import pytest

from modules.verification.manager import JobStatus, VerificationManager
from modules.verification.models import Stage
from modules.verification.reaper import ScratchReaper
from modules.verification.runner import ScratchWorkspace, is_workspace_name

from conftest import FakeModerator, build_pipeline, make_job


class BlockingModerator(FakeModerator):
    """审核调用阻塞，直到测试放行"""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def moderate(self, evidence):
        self.entered.set()
        self.release.wait(5)
        return super().moderate(evidence)


@pytest.fixture
def manager_factory(config):
    managers = []

    def factory(**pipeline_overrides):
        manager = VerificationManager(config, build_pipeline(config, **pipeline_overrides), start_background=False)
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        manager.stop()


class TestScratchReaper:
    def age(self, path, seconds=7200):
        past = time.time() - seconds
        os.utime(path, (past, past))

    def test_removes_only_old_workspaces(self, tmp_path):
        old = ScratchWorkspace(str(tmp_path), "old-job")
        with open(old.new_path("input"), "wb") as f:
            f.write(b"x")
        fresh = ScratchWorkspace(str(tmp_path), "fresh-job")
        self.age(old.path)

        removed = ScratchReaper(str(tmp_path), max_age=3600).sweep()

        assert removed == 1
        assert not os.path.exists(old.path)
        assert os.path.exists(fresh.path)

    def test_leaves_foreign_entries_alone(self, tmp_path):
        foreign_dir = tmp_path / "systemd-private-abc"
        foreign_dir.mkdir()
        stray = tmp_path / "report.pdf"
        stray.write_bytes(b"y")
        lookalike = tmp_path / "job-1700000000000-abc123"
        lookalike.write_bytes(b"z")
        for path in (foreign_dir, stray, lookalike):
            self.age(path)

        assert ScratchReaper(str(tmp_path), max_age=3600).sweep() == 0
        assert foreign_dir.exists()
        assert stray.exists()
        assert lookalike.exists()

    def test_workspace_names_match_pattern(self, tmp_path):
        with ScratchWorkspace(str(tmp_path), "../evil/job") as workspace:
            assert is_workspace_name(os.path.basename(workspace.path))
        assert not is_workspace_name("tmpabc123")
        assert not is_workspace_name("job-123-abc123")

    def test_missing_root_is_ignored(self, tmp_path):
        assert ScratchReaper(str(tmp_path / "missing")).sweep() == 0

    def test_start_and_stop(self, tmp_path):
        reaper = ScratchReaper(str(tmp_path), interval=0.05)
        reaper.start()
        assert reaper.running
        reaper.stop()
        assert not reaper.running


class TestVerificationManager:
    def test_job_completes_with_event_log(self, manager_factory):
        manager = manager_factory()
        record = manager.submit(make_job("video"))

        record = manager.wait(record.job_id, timeout=10)

        assert record.status == JobStatus.COMPLETED
        assert record.result.approved is True
        assert record.events[0].stage == Stage.RECEIVED
        assert record.events[-1].stage == Stage.DONE
        assert record.percent == 100

        data = record.to_dict()
        assert data["status"] == "completed"
        assert data["result"]["frame_count"] == 3
        assert "frames" not in data["result"]

    def test_failed_job_records_error_kind(self, manager_factory):
        manager = manager_factory(moderator=FakeModerator(error=RuntimeError("down")))
        record = manager.submit(make_job("video"))

        record = manager.wait(record.job_id, timeout=10)

        assert record.status == JobStatus.FAILED
        assert record.error["kind"] == "moderation_failed"
        assert record.events[-1].stage == Stage.ERROR

    def test_concurrent_jobs_are_bounded(self, config, manager_factory):
        config.max_concurrent_jobs = 1
        moderator = BlockingModerator()
        manager = manager_factory(moderator=moderator)

        first = manager.submit(make_job("book"))
        assert moderator.entered.wait(5)
        second = manager.submit(make_job("book"))
        time.sleep(0.3)

        assert first.status == JobStatus.RUNNING
        assert second.status == JobStatus.QUEUED
        assert [e.stage for e in second.events] == [Stage.RECEIVED]

        moderator.release.set()
        assert manager.wait(first.job_id, timeout=10).status == JobStatus.COMPLETED
        assert manager.wait(second.job_id, timeout=10).status == JobStatus.COMPLETED

    def test_cancel_queued_job(self, config, manager_factory):
        config.max_concurrent_jobs = 1
        moderator = BlockingModerator()
        manager = manager_factory(moderator=moderator)

        first = manager.submit(make_job("book"))
        assert moderator.entered.wait(5)
        second = manager.submit(make_job("book"))

        assert manager.cancel(second.job_id) is True
        record = manager.wait(second.job_id, timeout=10)
        moderator.release.set()

        assert record.status == JobStatus.CANCELLED
        assert record.error["kind"] == "cancelled"
        assert manager.wait(first.job_id, timeout=10).status == JobStatus.COMPLETED
        assert manager.cancel(first.job_id) is False

    def test_cancel_unknown_job(self, manager_factory):
        assert manager_factory().cancel("missing") is False

    def test_cleanup_drops_expired_records(self, config, manager_factory):
        config.record_ttl = 0
        manager = manager_factory()
        record = manager.submit(make_job("book"))
        manager.wait(record.job_id, timeout=10)
        record.completed_at -= 1

        assert manager.cleanup() == 1
        assert manager.get_record(record.job_id) is None

    def test_events_since(self, manager_factory):
        manager = manager_factory()
        record = manager.wait(manager.submit(make_job("book")).job_id, timeout=10)

        assert len(record.events_since(0)) == len(record.events)
        assert record.events_since(len(record.events)) == []
        assert record.events_since(2)[0] is record.events[2]

    def test_stats(self, manager_factory):
        manager = manager_factory()
        manager.wait(manager.submit(make_job("book")).job_id, timeout=10)

        stats = manager.get_stats()
        assert stats["total"] == 1
        assert stats["by_status"] == {"completed": 1}
