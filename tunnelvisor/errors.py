"""Exceptions raised inside the supervisor and turned into results at the operation boundary."""


class TunnelvisorError(Exception):
    """Base class for supervisor errors."""


class BinaryNotFound(TunnelvisorError):
    """No daemon executable exists at any probed path."""


class NotRunning(TunnelvisorError):
    """The lock marker is absent, so no instances are believed to be running."""
