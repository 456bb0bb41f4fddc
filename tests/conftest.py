import io
import subprocess
import textwrap

import pytest

from tunnelvisor.config import Config
from tunnelvisor.console import Reporter
from tunnelvisor.pidfile import pid_files
from tunnelvisor.supervisor import Supervisor

FAKE_DAEMON = """\
#!/bin/sh
# Stands in for openvpn: honours --writepid/--config/--cd and backgrounds a sleeper.
echo "$*" >> "{log}"
while [ $# -gt 0 ]; do
    case "$1" in
        --writepid) pidfile="$2"; shift 2 ;;
        --config) conf="$2"; shift 2 ;;
        --cd) cd "$2" || exit 2; shift 2 ;;
        *) shift ;;
    esac
done
case "$conf" in
    *bad*) echo "cannot parse $conf" >&2; exit 1 ;;
esac
sleep 300 </dev/null >/dev/null 2>&1 &
echo $! > "$pidfile"
"""


@pytest.fixture
def fake_daemon(tmp_path):
    """Executable fake daemon; every invocation is appended to launches.log."""
    bin_dir = tmp_path / "sbin"
    bin_dir.mkdir()
    path = bin_dir / "openvpn"
    path.write_text(FAKE_DAEMON.format(log=tmp_path / "launches.log"))
    path.chmod(0o755)
    return path


@pytest.fixture
def cfg(tmp_path, fake_daemon):
    work_dir = tmp_path / "etc"
    work_dir.mkdir()
    return Config(
        work_dir=work_dir,
        pid_dir=tmp_path / "run",
        lock_file=tmp_path / "lock" / "openvpn",
        daemon_paths=[tmp_path / "missing" / "openvpn", fake_daemon],
        restart_delay=0,
        stop_timeout=3,
        kill_timeout=2,
        hook_timeout=None,
        launch_timeout=None,
        strict=False,
        data_dir=tmp_path / "data",
        history_enabled=True,
    )


@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def supervisor(cfg, output):
    sup = Supervisor(cfg, Reporter(output))
    yield sup
    # Never leave sleepers behind
    if any(True for _ in pid_files(cfg.pid_dir)):
        sup.stop()


@pytest.fixture
def sleeper():
    """A child process that dies on any of the signals the supervisor sends."""
    procs = []

    def spawn():
        proc = subprocess.Popen(["sleep", "60"])
        procs.append(proc)
        return proc

    yield spawn
    for proc in procs:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def write_units(work_dir, *names):
    for name in names:
        (work_dir / f"{name}.conf").write_text(f"remote {name}.example.net 1194\n")


def write_hook(path, body):
    path.write_text(textwrap.dedent(body))
    return path
