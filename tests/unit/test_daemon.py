import asyncio

import pytest

from stepwright.config import StepwrightConfig
from stepwright.daemon import DaemonController, serve
from stepwright.journal import ActivityJournal
from stepwright.leases import LeaseManager


@pytest.fixture
def daemon_config(tmp_path):
    return StepwrightConfig(
        daemon={"runtime_dir": str(tmp_path / "run"), "stop_timeout_s": 2},
        lease={"sweep_interval_s": 0.05},
    )


def test_controller_lifecycle(daemon_config):
    controller = DaemonController(daemon_config, command=["sleep", "30"])

    assert controller.status().running is False
    started = controller.start()
    try:
        assert started.running
        assert controller.pid_path.read_text() == str(started.pid)
        again = controller.start()
        assert again.pid == started.pid
        assert again.message == f"Daemon is already running (PID: {started.pid})"
    finally:
        stopped = controller.stop()

    assert stopped.message == f"Daemon stopped (PID: {started.pid})"
    assert not controller.pid_path.exists()
    assert controller.stop().message == "Daemon is not running"


def test_stale_pid_file_is_cleaned_up(daemon_config):
    controller = DaemonController(daemon_config, command=["true"])
    controller.pid_path.parent.mkdir(parents=True)
    controller.pid_path.write_text("not-a-pid")

    assert controller.status().running is False
    assert not controller.pid_path.exists()


def test_start_reports_immediate_exit(daemon_config):
    controller = DaemonController(daemon_config, command=["false"])
    status = controller.start()
    assert status.running is False
    assert "exited immediately" in status.message
    assert not controller.pid_path.exists()


@pytest.mark.asyncio
async def test_serve_recovers_then_sweeps(daemon_config, store):
    journal = ActivityJournal(store)
    leases = LeaseManager(store, daemon_config.lease)
    await journal.append("crashed", "orchestrator", "run.started")
    await leases.acquire("tmp.txt", "other/step", ttl_ms=30)

    stop_event = asyncio.Event()
    task = asyncio.create_task(serve(daemon_config, stop_event, store=store))
    await asyncio.sleep(0.2)
    stop_event.set()
    await asyncio.wait_for(task, timeout=2)

    assert await journal.unfinished_runs() == []
    assert await store.list_leases() == []
    assert [r.action for r in await journal.query_by_trace("crashed")][-1] == "run.finished"
