"""
Configuration unit discovery.

A unit is one tunnel definition: a `<name>.conf` file in the working
directory, an optional `<name>.sh` hook run before its daemon starts, and a
`<name>.pid` file in the PID directory while its daemon runs.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from .config import Config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigUnit:
    """A tunnel configuration discovered in the working directory."""

    name: str
    config_path: Path
    pid_path: Path
    hook_path: Optional[Path] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "config_path": str(self.config_path),
            "pid_path": str(self.pid_path),
            "hook_path": str(self.hook_path) if self.hook_path else None,
        }


def discover(cfg: Config) -> Iterator[ConfigUnit]:
    """Yield one unit per configuration file in the working directory.

    Not recursive. Order follows directory enumeration and is arbitrary.
    """
    suffix = f".{cfg.config_ext}"
    try:
        entries = os.scandir(cfg.work_dir)
    except FileNotFoundError:
        logger.warning(f"Working directory {cfg.work_dir} does not exist")
        return

    with entries:
        for entry in entries:
            if not entry.name.endswith(suffix) or len(entry.name) == len(suffix):
                continue
            if not entry.is_file():
                continue

            name = entry.name[: -len(suffix)]
            hook = cfg.work_dir / f"{name}.sh"
            yield ConfigUnit(
                name=name,
                config_path=cfg.work_dir / entry.name,
                pid_path=cfg.pid_dir / f"{name}.pid",
                hook_path=hook if hook.is_file() else None,
            )
