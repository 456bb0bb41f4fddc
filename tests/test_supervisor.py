import signal
import subprocess

import pytest

from conftest import write_hook, write_units
from tunnelvisor.console import Reporter
from tunnelvisor.models import Event
from tunnelvisor.pidfile import PIDFile, pid_files
from tunnelvisor.process import SupervisedProcess
from tunnelvisor.supervisor import Supervisor


def live_pids(cfg):
    pids = {}
    for pid_file in pid_files(cfg.pid_dir):
        pid = pid_file.read()
        assert pid is not None, f"{pid_file} is empty"
        assert SupervisedProcess(pid).is_alive(), f"{pid_file.name} (pid {pid}) is not running"
        pids[pid_file.name] = pid
    return pids


def dead_pid():
    proc = subprocess.Popen(["true"])
    proc.wait()
    return proc.pid


class TestStart:
    def test_launches_every_unit_and_runs_hook(self, cfg, supervisor):
        write_units(cfg.work_dir, "a", "b")
        write_hook(cfg.work_dir / "b.sh", "touch b.hook-ran\n")

        result = supervisor.run("start")

        assert result.exit_code == 0
        assert (cfg.work_dir / "b.hook-ran").exists()
        assert cfg.lock_file.exists()
        pids = live_pids(cfg)
        assert set(pids) == {"a", "b"}
        assert len(set(pids.values())) == 2
        assert {u["name"] for u in result.units} == {"a", "b"}

    def test_passes_daemon_flags(self, cfg, supervisor, tmp_path):
        write_units(cfg.work_dir, "a")

        supervisor.run("start")

        args = (tmp_path / "launches.log").read_text().split()
        assert args[0] == "--daemon"
        assert args[args.index("--writepid") + 1] == str(cfg.pid_dir / "a.pid")
        assert args[args.index("--config") + 1] == str(cfg.work_dir / "a.conf")
        assert args[args.index("--cd") + 1] == str(cfg.work_dir)

    def test_second_start_replaces_previous_instances(self, cfg, supervisor):
        write_units(cfg.work_dir, "a", "b")
        supervisor.run("start")
        first = live_pids(cfg)

        result = supervisor.run("start")

        assert result.exit_code == 0
        second = live_pids(cfg)
        assert set(second) == {"a", "b"}
        for pid in first.values():
            assert not SupervisedProcess(pid).is_alive()
        assert not set(first.values()) & set(second.values())

    def test_stale_lock_and_dead_pid_are_cleaned_up(self, cfg, supervisor):
        write_units(cfg.work_dir, "a")
        cfg.pid_dir.mkdir()
        cfg.pid_dir.joinpath("a.pid").write_text(f"{dead_pid()}\n")
        cfg.pid_dir.joinpath("gone.pid").write_text("")
        cfg.lock_file.parent.mkdir()
        cfg.lock_file.touch()

        result = supervisor.run("start")

        assert result.exit_code == 0
        assert cfg.lock_file.exists()
        assert set(live_pids(cfg)) == {"a"}

    def test_orphan_pid_files_removed_without_lock(self, cfg, supervisor):
        write_units(cfg.work_dir, "a")
        cfg.pid_dir.mkdir()
        cfg.pid_dir.joinpath("orphan.pid").write_text(f"{dead_pid()}\n")

        result = supervisor.run("start")

        assert result.exit_code == 0
        assert sorted(p.name for p in pid_files(cfg.pid_dir)) == ["a"]

    def test_launch_failure_is_reported_but_others_still_start(self, cfg, supervisor):
        write_units(cfg.work_dir, "a", "bad")

        result = supervisor.run("start")

        assert result.exit_code == 1
        assert result.reason == "launch_failed"
        assert set(live_pids(cfg)) == {"a"}
        assert cfg.lock_file.exists()

    def test_no_lock_when_nothing_launched(self, cfg, supervisor):
        write_units(cfg.work_dir, "bad")

        result = supervisor.run("start")

        assert result.exit_code == 1
        assert not cfg.lock_file.exists()

    def test_empty_work_dir_is_not_an_error(self, cfg, supervisor):
        result = supervisor.run("start")

        assert result.exit_code == 0
        assert not cfg.lock_file.exists()
        assert list(pid_files(cfg.pid_dir)) == []

    def test_failing_hook_is_ignored_by_default(self, cfg, supervisor):
        write_units(cfg.work_dir, "a")
        write_hook(cfg.work_dir / "a.sh", "exit 3\n")

        result = supervisor.run("start")

        assert result.exit_code == 0
        assert set(live_pids(cfg)) == {"a"}

    def test_failing_hook_skips_unit_when_strict(self, cfg, output):
        cfg.strict = True
        write_units(cfg.work_dir, "a", "b")
        write_hook(cfg.work_dir / "a.sh", "exit 3\n")
        sup = Supervisor(cfg, Reporter(output))

        try:
            result = sup.run("start")
            assert result.exit_code == 1
            assert [u["name"] for u in result.units if not u["ok"]] == ["a"]
            assert set(live_pids(cfg)) == {"b"}
        finally:
            sup.stop()

    def test_global_startup_hook_runs_before_launch(self, cfg, supervisor):
        write_units(cfg.work_dir, "a")
        write_hook(cfg.work_dir / "openvpn-startup", "ls ../run > startup-saw.txt\n")

        supervisor.run("start")

        assert (cfg.work_dir / "startup-saw.txt").read_text() == ""


class TestStop:
    def test_stop_removes_pid_files_and_lock(self, cfg, supervisor):
        write_units(cfg.work_dir, "a", "b")
        supervisor.run("start")
        pids = live_pids(cfg)

        result = supervisor.run("stop")

        assert result.exit_code == 0
        assert list(pid_files(cfg.pid_dir)) == []
        assert not cfg.lock_file.exists()
        for pid in pids.values():
            assert not SupervisedProcess(pid).is_alive()

    def test_stop_with_stale_pid_files_succeeds(self, cfg, supervisor):
        cfg.pid_dir.mkdir()
        cfg.pid_dir.joinpath("a.pid").write_text(str(dead_pid()))
        cfg.pid_dir.joinpath("b.pid").write_text("")

        result = supervisor.run("stop")

        assert result.exit_code == 0
        assert list(pid_files(cfg.pid_dir)) == []

    def test_shutdown_hook_runs(self, cfg, supervisor):
        write_hook(cfg.work_dir / "openvpn-shutdown", "touch shutdown-ran\n")

        supervisor.run("stop")

        assert (cfg.work_dir / "shutdown-ran").exists()


class TestSignals:
    @pytest.mark.parametrize(
        "command,sig",
        [("reload", signal.SIGHUP), ("reopen", signal.SIGUSR1), ("status", signal.SIGUSR2)],
    )
    def test_signal_is_delivered_to_every_tracked_pid(self, cfg, supervisor, sleeper, command, sig):
        procs = [sleeper(), sleeper()]
        cfg.pid_dir.mkdir()
        for name, proc in zip("ab", procs):
            cfg.pid_dir.joinpath(f"{name}.pid").write_text(str(proc.pid))
        cfg.pid_dir.joinpath("empty.pid").write_text("")
        cfg.lock_file.parent.mkdir()
        cfg.lock_file.touch()

        result = supervisor.run(command)

        assert result.exit_code == 0
        for proc in procs:
            assert proc.wait(timeout=5) == -sig
        assert {u["name"] for u in result.units} == {"a", "b"}

    @pytest.mark.parametrize("command", ["reload", "reopen", "status"])
    def test_not_running_without_lock(self, cfg, supervisor, sleeper, command):
        proc = sleeper()
        cfg.pid_dir.mkdir()
        cfg.pid_dir.joinpath("a.pid").write_text(str(proc.pid))

        result = supervisor.run(command)

        assert result.exit_code == 1
        assert result.reason == "not_running"
        assert proc.poll() is None

    def test_delivery_failure_is_ignored_unless_strict(self, cfg, supervisor, output):
        cfg.pid_dir.mkdir()
        cfg.pid_dir.joinpath("a.pid").write_text(str(dead_pid()))
        cfg.lock_file.parent.mkdir()
        cfg.lock_file.touch()

        assert supervisor.run("reload").exit_code == 0
        assert "WARN" in output.getvalue()

        cfg.strict = True
        result = supervisor.run("reload")
        assert result.exit_code == 1
        assert result.reason == "best_effort_failed"


class TestRestart:
    def test_condrestart_without_lock_is_a_noop(self, cfg, supervisor, sleeper):
        write_units(cfg.work_dir, "a")
        proc = sleeper()
        cfg.pid_dir.mkdir()
        cfg.pid_dir.joinpath("a.pid").write_text(str(proc.pid))

        result = supervisor.run("condrestart")

        assert result.exit_code == 0
        assert proc.poll() is None
        assert PIDFile(cfg.pid_dir / "a.pid").read() == proc.pid

    def test_condrestart_with_lock_relaunches(self, cfg, supervisor):
        write_units(cfg.work_dir, "a")
        supervisor.run("start")
        before = live_pids(cfg)["a"]

        result = supervisor.run("condrestart")

        assert result.exit_code == 0
        after = live_pids(cfg)["a"]
        assert after != before
        assert not SupervisedProcess(before).is_alive()

    def test_restart_from_stopped(self, cfg, supervisor):
        write_units(cfg.work_dir, "a")

        result = supervisor.run("restart")

        assert result.exit_code == 0
        assert cfg.lock_file.exists()
        assert set(live_pids(cfg)) == {"a"}


class TestMissingBinary:
    @pytest.mark.parametrize("command", Supervisor.COMMANDS)
    def test_reports_and_exits_zero(self, cfg, supervisor, output, command):
        write_units(cfg.work_dir, "a")
        cfg.daemon_paths = [cfg.work_dir / "nope"]

        result = supervisor.run(command)

        assert result.exit_code == 0
        assert result.reason == "binary_not_found"
        assert "not found" in output.getvalue()
        assert not cfg.pid_dir.exists()

    def test_strict_mode_fails(self, cfg, supervisor):
        cfg.daemon_paths = []
        cfg.strict = True

        assert supervisor.run("start").exit_code == 1

    def test_non_executable_candidate_is_skipped(self, cfg, supervisor, fake_daemon):
        plain = cfg.work_dir / "openvpn"
        plain.write_text("")
        cfg.daemon_paths = [plain, fake_daemon]

        assert supervisor.daemon_binary() == fake_daemon

    def test_unknown_command(self, supervisor):
        with pytest.raises(ValueError):
            supervisor.run("bounce")


class TestInspection:
    def test_describe_units(self, cfg, supervisor):
        write_units(cfg.work_dir, "a", "b")
        supervisor.run("start")
        b_pid_file = PIDFile(cfg.pid_dir / "b.pid")
        assert SupervisedProcess(b_pid_file.read()).terminate(2, 1)
        b_pid_file.remove()

        units = {u["name"]: u for u in supervisor.describe_units()}

        assert units["a"]["alive"] is True
        assert units["a"]["memory_mb"] is not None
        assert units["b"]["alive"] is False
        assert units["b"]["pid_file"] is False

        bare = {u["name"]: u for u in supervisor.describe_units(metrics=False)}
        assert bare["a"]["alive"] is True
        assert bare["a"]["cpu_percent"] is None
        assert bare["a"]["memory_mb"] is None

    def test_history_records_launches(self, cfg, supervisor):
        write_units(cfg.work_dir, "a", "bad")

        supervisor.run("start")

        launches = {e.unit: e.success for e in Event.select().where(Event.operation == "launch")}
        assert launches == {"a": True, "bad": False}
        start = Event.get(Event.operation == "start")
        assert start.unit is None
        assert start.success is False
