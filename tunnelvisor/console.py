"""Human-readable progress lines for the command line, in the style of init scripts."""

import sys
from typing import TextIO

STATUS_COLUMN = 60


class Reporter:
    """Prints `message ... [  OK  ]` style lines. Not used for control decisions."""

    def __init__(self, stream: TextIO = None):
        self.stream = stream or sys.stdout
        self._pending = None

    def begin(self, message: str):
        """Start a progress line, finished later by ok/failure/warning."""
        self._pending = message

    def _finish(self, label: str):
        message = self._pending or ""
        self._pending = None
        self.stream.write(f"{message:<{STATUS_COLUMN}}[{label:^8}]\n")
        self.stream.flush()

    def ok(self):
        self._finish("OK")

    def failure(self):
        self._finish("FAIL")

    def warning(self):
        self._finish("WARN")

    def info(self, message: str):
        self.stream.write(f"{message}\n")
        self.stream.flush()
