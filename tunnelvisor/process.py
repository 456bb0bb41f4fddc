"""
Process helpers for supervised tunnel daemons.

Locates the daemon binary, runs hook scripts, launches detached daemons and
delivers signals to the process ids recorded in PID files. Liveness and
termination go through psutil so a zombie counts as dead and a recycled pid
is not mistaken for the daemon.
"""

import logging
import os
import signal
import subprocess
import time
from pathlib import Path
from typing import Iterable, Optional

import psutil

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05


def find_daemon(paths: Iterable[Path]) -> Optional[Path]:
    """Return the first executable file among the probed paths."""
    for path in paths:
        path = Path(path)
        if path.is_file() and os.access(path, os.X_OK):
            return path
    return None


class SupervisedProcess:
    """Handle on a daemon identified only by its process id."""

    def __init__(self, pid: int):
        self.pid = pid
        try:
            self._proc = psutil.Process(pid)
        except (psutil.NoSuchProcess, ValueError):
            self._proc = None

    def is_alive(self) -> bool:
        """Check whether the process exists and is not a zombie."""
        if self._proc is None:
            return False
        try:
            if not self._proc.is_running():
                return False
            return self._proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists but belongs to someone else
            return True

    def signal(self, sig: int):
        """Send a signal. Raises psutil.NoSuchProcess or psutil.AccessDenied."""
        if self._proc is None:
            raise psutil.NoSuchProcess(self.pid)
        self._proc.send_signal(sig)

    def wait(self, timeout: float) -> bool:
        """Poll until the process is gone. Returns True if it exited in time."""
        deadline = time.monotonic() + timeout
        while self.is_alive():
            if time.monotonic() >= deadline:
                return False
            time.sleep(POLL_INTERVAL)
        return True

    def terminate(self, timeout: float, kill_timeout: float) -> bool:
        """SIGTERM, wait up to timeout, then SIGKILL and wait again.

        Returns True if the process is gone afterwards. A process that is
        already dead counts as terminated.
        """
        if not self.is_alive():
            return True

        try:
            self.signal(signal.SIGTERM)
        except psutil.NoSuchProcess:
            return True

        if self.wait(timeout):
            return True

        logger.warning(f"Process {self.pid} did not stop gracefully, forcing kill")
        try:
            self.signal(signal.SIGKILL)
        except psutil.NoSuchProcess:
            return True
        return self.wait(kill_timeout)

    def memory_mb(self) -> Optional[float]:
        if self._proc is None:
            return None
        try:
            return self._proc.memory_info().rss / 1024 / 1024
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def cpu_percent(self) -> Optional[float]:
        if self._proc is None:
            return None
        try:
            return self._proc.cpu_percent(interval=0.1)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None


def run_hook(path: Path, cwd: Path, timeout: Optional[float] = None) -> int:
    """Run a hook script synchronously in cwd and return its exit code.

    Executable hooks run directly; others are handed to /bin/sh.
    Raises subprocess.TimeoutExpired when a timeout is set and exceeded.
    """
    path = Path(path)
    cmd = [str(path)] if os.access(path, os.X_OK) else ["/bin/sh", str(path)]
    logger.info(f"Running hook {path}")
    result = subprocess.run(cmd, cwd=cwd, stdin=subprocess.DEVNULL, timeout=timeout)
    if result.returncode != 0:
        logger.warning(f"Hook {path} exited with code {result.returncode}")
    return result.returncode


def launch_daemon(
    binary: Path,
    config_path: Path,
    pid_path: Path,
    work_dir: Path,
    timeout: Optional[float] = None,
) -> int:
    """Ask the daemon to detach and write its own pid. Returns the launch exit code.

    Only the launch is checked, not the daemon's later health.
    """
    cmd = [
        str(binary),
        "--daemon",
        "--writepid",
        str(pid_path),
        "--config",
        str(config_path),
        "--cd",
        str(work_dir),
    ]
    result = subprocess.run(
        cmd,
        cwd=work_dir,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        timeout=timeout,
    )
    if result.returncode != 0:
        stderr = result.stderr.decode("utf-8", errors="replace").strip()
        logger.error(f"Launch of {config_path.name} exited with code {result.returncode}: {stderr}")
    return result.returncode
