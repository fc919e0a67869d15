"""Background process that keeps the lease table and the journal tidy."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import BaseModel

from .config import StepwrightConfig, load_config
from .journal import ActivityJournal
from .leases import LeaseManager
from .orchestrator import recover_runs
from .persistence import DurableStore, get_store

logger = logging.getLogger(__name__)

_POLL_INTERVAL_S = 0.1


class DaemonStatus(BaseModel):
    running: bool
    pid: Optional[int] = None
    message: str = ""


class DaemonController:
    """Start, stop and inspect the daemon through its pid file.

    Every operation is idempotent: starting a running daemon or stopping a
    stopped one reports the current state instead of failing.
    """

    def __init__(
        self,
        config: Optional[StepwrightConfig] = None,
        command: Optional[Sequence[str]] = None,
    ) -> None:
        self._config = config or load_config()
        self._command: List[str] = (
            list(command) if command else [sys.executable, "-m", "stepwright.daemon"]
        )

    @property
    def pid_path(self) -> Path:
        return self._config.daemon.pid_path

    @property
    def log_path(self) -> Path:
        return self._config.daemon.log_path

    def _read_pid(self) -> Optional[int]:
        try:
            return int(self.pid_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    @staticmethod
    def _is_alive(pid: int) -> bool:
        try:
            reaped, _ = os.waitpid(pid, os.WNOHANG)
            if reaped == pid:
                return False
        except ChildProcessError:
            pass
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def _wait_for_exit(self, pid: int, timeout_s: float) -> bool:
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            if not self._is_alive(pid):
                return True
            time.sleep(_POLL_INTERVAL_S)
        return not self._is_alive(pid)

    def status(self) -> DaemonStatus:
        pid = self._read_pid()
        if pid is not None and self._is_alive(pid):
            return DaemonStatus(running=True, pid=pid, message=f"Daemon is running (PID: {pid})")
        if self.pid_path.exists():
            self.pid_path.unlink(missing_ok=True)
        return DaemonStatus(running=False, message="Daemon is not running")

    def start(self) -> DaemonStatus:
        current = self.status()
        if current.running:
            return DaemonStatus(
                running=True,
                pid=current.pid,
                message=f"Daemon is already running (PID: {current.pid})",
            )

        self.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_path, "ab") as log:
            process = subprocess.Popen(
                self._command,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        self.pid_path.write_text(str(process.pid))
        logger.info(f"Daemon started (PID: {process.pid})")

        time.sleep(_POLL_INTERVAL_S)
        if process.poll() is not None:
            self.pid_path.unlink(missing_ok=True)
            return DaemonStatus(
                running=False,
                message=(
                    f"Daemon exited immediately with code {process.returncode}; "
                    f"see {self.log_path}"
                ),
            )
        return DaemonStatus(
            running=True, pid=process.pid, message=f"Daemon started (PID: {process.pid})"
        )

    def stop(self) -> DaemonStatus:
        current = self.status()
        if not current.running or current.pid is None:
            return DaemonStatus(running=False, message="Daemon is not running")

        pid = current.pid
        logger.info(f"Stopping daemon (PID: {pid})")
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        if not self._wait_for_exit(pid, self._config.daemon.stop_timeout_s):
            logger.warning(f"Daemon (PID: {pid}) ignored SIGTERM; sending SIGKILL")
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            self._wait_for_exit(pid, self._config.daemon.stop_timeout_s)
        self.pid_path.unlink(missing_ok=True)
        return DaemonStatus(running=False, pid=pid, message=f"Daemon stopped (PID: {pid})")

    def restart(self) -> DaemonStatus:
        self.stop()
        return self.start()


async def _recover(journal: ActivityJournal, leases: LeaseManager) -> None:
    recovered = await recover_runs(journal, leases)
    if recovered:
        logger.warning(f"Recovered {len(recovered)} unfinished run(s): {', '.join(recovered)}")


async def serve(
    config: StepwrightConfig,
    stop_event: asyncio.Event,
    store: Optional[DurableStore] = None,
) -> None:
    """Sweep expired leases and recover orphaned runs until stopped.

    Runs whose orchestrator still renews its run lease are left alone, so
    the pass is safe while other processes execute flows.
    """
    owned = store is None
    store = store or get_store(config=config)
    journal = ActivityJournal(store)
    leases = LeaseManager(store, config.lease)
    await _recover(journal, leases)

    interval = config.lease.sweep_interval_s
    logger.info(f"Daemon serving; sweeping expired leases every {interval}s")
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            await _recover(journal, leases)
    if owned:
        await store.close()
    logger.info("Daemon stopped")


async def _main(config: StepwrightConfig) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)
    await serve(config, stop_event)


def main() -> None:
    config = load_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info(f"Daemon starting (PID: {os.getpid()})")
    asyncio.run(_main(config))


if __name__ == "__main__":
    main()
