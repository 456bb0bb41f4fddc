"""
Configuration for the tunnel supervisor.

Loads settings from environment variables with sensible defaults.
Supervisor history and logs are stored in ~/.tunnelvisor/
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


def _env_float(name: str) -> Optional[float]:
    value = os.environ.get(name, "")
    return float(value) if value else None


def _default_daemon_paths() -> list[Path]:
    raw = os.environ.get("TUNNELVISOR_DAEMON_PATHS", "/usr/sbin/openvpn:/usr/local/sbin/openvpn")
    return [Path(p) for p in raw.split(":") if p]


@dataclass
class Config:
    """Tunnel supervisor configuration."""

    # Managed filesystem layout
    work_dir: Path = Path(os.environ.get("TUNNELVISOR_WORK_DIR", "/etc/openvpn"))
    pid_dir: Path = Path(os.environ.get("TUNNELVISOR_PID_DIR", "/var/run/openvpn"))
    lock_file: Path = Path(os.environ.get("TUNNELVISOR_LOCK_FILE", "/var/lock/subsys/openvpn"))
    config_ext: str = os.environ.get("TUNNELVISOR_CONFIG_EXT", "conf")
    startup_hook: str = os.environ.get("TUNNELVISOR_STARTUP_HOOK", "openvpn-startup")
    shutdown_hook: str = os.environ.get("TUNNELVISOR_SHUTDOWN_HOOK", "openvpn-shutdown")

    # Probed in order, first executable wins
    daemon_paths: list[Path] = field(default_factory=_default_daemon_paths)

    # Process management
    restart_delay: float = float(os.environ.get("RESTART_DELAY", "2"))
    stop_timeout: float = float(os.environ.get("STOP_TIMEOUT", "10"))
    kill_timeout: float = float(os.environ.get("KILL_TIMEOUT", "5"))
    hook_timeout: Optional[float] = _env_float("HOOK_TIMEOUT")
    launch_timeout: Optional[float] = _env_float("LAUNCH_TIMEOUT")

    # Report hook, signal and missing-binary failures instead of ignoring them
    strict: bool = _env_bool("TUNNELVISOR_STRICT", "false")

    # History and logs
    data_dir: Path = Path(os.environ.get("TUNNELVISOR_DATA_DIR", str(Path.home() / ".tunnelvisor")))
    history_enabled: bool = _env_bool("HISTORY_ENABLED", "true")
    db_path: Path = None
    log_file: Path = None
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    # Control API
    host: str = os.environ.get("TUNNELVISOR_HOST", "127.0.0.1")
    port: int = int(os.environ.get("TUNNELVISOR_PORT", "9910"))

    def __post_init__(self):
        """Normalize paths and derive the history and log locations."""
        self.work_dir = Path(self.work_dir)
        self.pid_dir = Path(self.pid_dir)
        self.lock_file = Path(self.lock_file)
        self.data_dir = Path(self.data_dir)
        self.daemon_paths = [Path(p) for p in self.daemon_paths]
        self.db_path = self.data_dir / "tunnelvisor.db"
        self.log_file = self.data_dir / "tunnelvisor.log"

    def ensure_data_dir(self):
        """Create the data directory holding history and logs."""
        self.data_dir.mkdir(parents=True, exist_ok=True)


config = Config()
