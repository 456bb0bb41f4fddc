"""PID files written by the daemons, one per running unit."""

import logging
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


class PIDFile:
    """A `<name>.pid` file in the PID directory."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @property
    def name(self) -> str:
        return self.path.stem

    def exists(self) -> bool:
        return self.path.exists()

    def read(self) -> Optional[int]:
        """Return the recorded process id, or None if absent or unreadable."""
        try:
            content = self.path.read_text().strip()
        except OSError:
            return None
        if not content:
            return None
        try:
            pid = int(content.split()[0])
        except ValueError:
            logger.warning(f"PID file {self.path} holds garbage: {content[:40]!r}")
            return None
        return pid if pid > 0 else None

    def remove(self):
        """Remove the file, ignoring a missing one."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __repr__(self) -> str:
        return f"PIDFile({str(self.path)!r})"


def pid_files(pid_dir: Path) -> Iterator[PIDFile]:
    """Yield every `*.pid` file in the PID directory."""
    pid_dir = Path(pid_dir)
    if not pid_dir.is_dir():
        return
    for path in sorted(pid_dir.glob("*.pid")):
        if path.is_file():
            yield PIDFile(path)
