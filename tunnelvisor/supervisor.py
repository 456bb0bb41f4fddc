"""
Multi-instance tunnel supervision.

One daemon per configuration unit, tracked by PID files in the PID
directory. The lock marker records that at least one instance was started
and not cleanly stopped; finding it on start means the previous run died
without a stop, so every tracked instance is terminated before relaunching.

Hook scripts and signal delivery are best effort. With `strict` enabled
their failures, and a missing daemon binary, are reported as failures.
"""

import logging
import signal
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import psutil

from .config import Config, config
from .console import Reporter
from .errors import BinaryNotFound, NotRunning
from .models import disable_history, initialize_db, record_event
from .pidfile import PIDFile, pid_files
from .process import SupervisedProcess, find_daemon, launch_daemon, run_hook
from .units import discover

logger = logging.getLogger(__name__)


@dataclass
class LaunchResult:
    """Outcome of the launch phase of start."""

    launched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class OperationResult:
    """Outcome of one supervisor command."""

    command: str
    exit_code: int
    message: str
    units: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    reason: Optional[str] = None  # not_running, binary_not_found, launch_failed, best_effort_failed

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "ok": self.ok,
            "exit_code": self.exit_code,
            "message": self.message,
            "units": self.units,
            "errors": self.errors,
            "reason": self.reason,
        }


class Supervisor:
    """Starts, stops and signals every tunnel daemon found in the working directory."""

    COMMANDS = ("start", "stop", "restart", "condrestart", "reload", "reopen", "status")

    def __init__(self, cfg: Config = None, reporter: Reporter = None):
        self.config = cfg or config
        self.reporter = reporter or Reporter()
        if self.config.history_enabled:
            initialize_db(self.config.db_path)
        else:
            disable_history()

    # State

    def is_running(self) -> bool:
        """True when the lock marker exists."""
        return self.config.lock_file.exists()

    def daemon_binary(self) -> Path:
        binary = find_daemon(self.config.daemon_paths)
        if binary is None:
            probed = ", ".join(str(p) for p in self.config.daemon_paths)
            raise BinaryNotFound(f"OpenVPN binary not found (looked in {probed})")
        return binary

    def _create_lock(self):
        self.config.lock_file.parent.mkdir(parents=True, exist_ok=True)
        self.config.lock_file.touch()

    def _remove_lock(self):
        try:
            self.config.lock_file.unlink()
        except FileNotFoundError:
            pass

    def _require_running(self):
        if not self.is_running():
            raise NotRunning("OpenVPN is not running")

    # Dispatch

    def run(self, command: str) -> OperationResult:
        """Run one command after checking the daemon binary is installed."""
        if command not in self.COMMANDS:
            raise ValueError(f"Unknown command: {command}")

        try:
            self.daemon_binary()
            result = getattr(self, command)()
        except BinaryNotFound as e:
            # Exit 0 unless strict; long-standing init script behaviour
            logger.warning(str(e))
            self.reporter.info(str(e))
            result = OperationResult(
                command, 1 if self.config.strict else 0, str(e), reason="binary_not_found"
            )

        record_event(command, success=result.ok, detail=result.message)
        logger.info(f"{command} finished with exit code {result.exit_code}: {result.message}")
        return result

    # Lifecycle

    def start(self) -> OperationResult:
        """Clean up after an unclean shutdown, then launch one daemon per unit."""
        binary = self.daemon_binary()
        errors = []

        if self.is_running():
            logger.warning("Lock marker present, previous run was not shut down cleanly")
            outcomes = self._terminate_all("cleanup")
            self._remove_lock()
            errors.extend(f"{o['name']}: pid {o['pid']} survived termination" for o in outcomes if not o["ok"])
            if any(o["was_alive"] for o in outcomes):
                time.sleep(self.config.restart_delay)

        self.config.pid_dir.mkdir(parents=True, exist_ok=True)
        for pid_file in pid_files(self.config.pid_dir):
            pid_file.remove()

        startup_hook = self.config.work_dir / self.config.startup_hook
        if startup_hook.is_file() and not self._run_hook(startup_hook):
            errors.append(f"startup hook {startup_hook.name} failed")

        launch = self._launch_all(binary)
        if launch.launched:
            self._create_lock()

        units = [{"name": n, "ok": True, "pid": PIDFile(self._pid_path(n)).read()} for n in launch.launched]
        units += [{"name": n, "ok": False, "pid": None} for n in launch.failed]

        if not launch.ok:
            return OperationResult(
                "start",
                1,
                f"failed to launch {', '.join(launch.failed)}",
                units,
                errors,
                reason="launch_failed",
            )
        if errors and self.config.strict:
            return OperationResult("start", 1, "; ".join(errors), units, errors, reason="best_effort_failed")
        return OperationResult("start", 0, f"launched {len(launch.launched)} tunnel(s)", units, errors)

    def stop(self) -> OperationResult:
        """Terminate every tracked daemon and clear the lock marker."""
        outcomes = self._terminate_all("stop")
        errors = [f"{o['name']}: pid {o['pid']} survived termination" for o in outcomes if not o["ok"]]

        shutdown_hook = self.config.work_dir / self.config.shutdown_hook
        if shutdown_hook.is_file() and not self._run_hook(shutdown_hook):
            errors.append(f"shutdown hook {shutdown_hook.name} failed")

        self._remove_lock()

        units = [{"name": o["name"], "ok": o["ok"], "pid": o["pid"]} for o in outcomes]
        if errors and self.config.strict:
            return OperationResult("stop", 1, "; ".join(errors), units, errors, reason="best_effort_failed")
        return OperationResult("stop", 0, f"stopped {len(outcomes)} tunnel(s)", units, errors)

    def restart(self) -> OperationResult:
        stopped = self.stop()
        time.sleep(self.config.restart_delay)
        started = self.start()
        return self._combine("restart", stopped, started)

    def condrestart(self) -> OperationResult:
        """Restart only when the lock marker says tunnels are running."""
        if not self.is_running():
            return OperationResult("condrestart", 0, "not running, nothing to do")
        stopped = self.stop()
        time.sleep(self.config.restart_delay)
        started = self.start()
        return self._combine("condrestart", stopped, started)

    def reload(self) -> OperationResult:
        return self._signal_all("reload", signal.SIGHUP, "Reloading OpenVPN tunnels")

    def reopen(self) -> OperationResult:
        return self._signal_all("reopen", signal.SIGUSR1, "Reopening OpenVPN log files")

    def status(self) -> OperationResult:
        result = self._signal_all("status", signal.SIGUSR2, "Requesting OpenVPN status")
        if result.ok:
            self.reporter.info("Status written to the daemon log")
        return result

    # Inspection

    def describe_units(self, metrics: bool = True) -> list[dict]:
        """Discovered units with PID file state.

        With metrics, live daemons also report CPU (sampled for 0.1s each) and memory.
        """
        described = []
        for unit in discover(self.config):
            pid_file = PIDFile(unit.pid_path)
            pid = pid_file.read()
            proc = SupervisedProcess(pid) if pid else None
            alive = proc.is_alive() if proc else False

            info = unit.to_dict()
            info.update(
                pid_file=pid_file.exists(),
                pid=pid,
                alive=alive,
                cpu_percent=proc.cpu_percent() if alive and metrics else None,
                memory_mb=proc.memory_mb() if alive and metrics else None,
            )
            described.append(info)
        return described

    # Internals

    def _pid_path(self, name: str) -> Path:
        return self.config.pid_dir / f"{name}.pid"

    def _combine(self, command: str, stopped: OperationResult, started: OperationResult) -> OperationResult:
        exit_code = stopped.exit_code or started.exit_code
        return OperationResult(
            command,
            exit_code,
            f"{stopped.message}; {started.message}",
            started.units,
            stopped.errors + started.errors,
            reason=stopped.reason or started.reason,
        )

    def _run_hook(self, path: Path, unit: Optional[str] = None) -> bool:
        """Run a hook in the working directory. Returns True on exit code 0."""
        try:
            code = run_hook(path, self.config.work_dir, timeout=self.config.hook_timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Hook {path} timed out after {self.config.hook_timeout}s")
            record_event("hook", unit=unit, success=False, detail=f"{path.name} timed out")
            return False
        except OSError as e:
            logger.error(f"Failed to run hook {path}: {e}")
            record_event("hook", unit=unit, success=False, detail=f"{path.name}: {e}")
            return False

        record_event("hook", unit=unit, success=code == 0, detail=f"{path.name} exited {code}")
        return code == 0

    def _launch_all(self, binary: Path) -> LaunchResult:
        result = LaunchResult()

        for unit in discover(self.config):
            self.reporter.begin(f"Starting tunnel {unit.name}")

            if unit.hook_path and not self._run_hook(unit.hook_path, unit.name) and self.config.strict:
                logger.error(f"Not launching {unit.name}: hook {unit.hook_path.name} failed")
                result.failed.append(unit.name)
                self.reporter.failure()
                continue

            pid_file = PIDFile(unit.pid_path)
            pid_file.remove()

            try:
                code = launch_daemon(
                    binary,
                    unit.config_path,
                    unit.pid_path,
                    self.config.work_dir,
                    timeout=self.config.launch_timeout,
                )
                detail = f"exit code {code}"
            except subprocess.TimeoutExpired:
                logger.error(f"Launch of {unit.name} timed out after {self.config.launch_timeout}s")
                code, detail = None, "launch timed out"
            except OSError as e:
                logger.error(f"Failed to launch {unit.name}: {e}")
                code, detail = None, str(e)

            if code == 0:
                result.launched.append(unit.name)
                logger.info(f"Launched tunnel {unit.name}")
                self.reporter.ok()
            else:
                result.failed.append(unit.name)
                self.reporter.failure()
            record_event("launch", unit=unit.name, pid=pid_file.read(), success=code == 0, detail=detail)

        return result

    def _terminate_all(self, operation: str) -> list[dict]:
        """Terminate every process recorded in a PID file and remove the files."""
        outcomes = []
        for pid_file in pid_files(self.config.pid_dir):
            pid = pid_file.read()
            stopped = True
            was_alive = False

            if pid is not None:
                self.reporter.begin(f"Stopping tunnel {pid_file.name}")
                proc = SupervisedProcess(pid)
                was_alive = proc.is_alive()
                try:
                    stopped = proc.terminate(self.config.stop_timeout, self.config.kill_timeout)
                except psutil.AccessDenied as e:
                    logger.error(f"Cannot terminate {pid_file.name} (pid {pid}): {e}")
                    stopped = False

                if stopped:
                    self.reporter.ok()
                else:
                    logger.warning(f"Tunnel {pid_file.name} (pid {pid}) is still running")
                    self.reporter.failure()
                record_event(operation, unit=pid_file.name, pid=pid, success=stopped)

            pid_file.remove()
            outcomes.append({"name": pid_file.name, "pid": pid, "ok": stopped, "was_alive": was_alive})
        return outcomes

    def _signal_all(self, command: str, sig: int, label: str) -> OperationResult:
        self.reporter.begin(label)
        try:
            self._require_running()
        except NotRunning as e:
            self.reporter.failure()
            return OperationResult(command, 1, str(e), reason="not_running")

        units = []
        errors = []
        for pid_file in pid_files(self.config.pid_dir):
            pid = pid_file.read()
            if pid is None:
                continue
            try:
                SupervisedProcess(pid).signal(sig)
                delivered = True
            except psutil.Error as e:
                logger.warning(f"Could not signal {pid_file.name} (pid {pid}): {e}")
                errors.append(f"{pid_file.name}: signal to pid {pid} failed")
                delivered = False
            record_event(command, unit=pid_file.name, pid=pid, success=delivered)
            units.append({"name": pid_file.name, "pid": pid, "ok": delivered})

        if errors and self.config.strict:
            self.reporter.failure()
            return OperationResult(command, 1, "; ".join(errors), units, errors, reason="best_effort_failed")
        if errors:
            self.reporter.warning()
        else:
            self.reporter.ok()
        return OperationResult(command, 0, f"signalled {len(units) - len(errors)} tunnel(s)", units, errors)
