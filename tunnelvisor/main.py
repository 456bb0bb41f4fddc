"""
Tunnelvisor FastAPI application.

Provides a REST API mirroring the command line: lifecycle commands for all
tunnels, a listing of discovered units with their daemon state, and the
event history. Commands are serialized so only one runs at a time.
"""

import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query

from .config import config
from .models import recent_events
from .process import find_daemon
from .supervisor import Supervisor

logger = logging.getLogger(__name__)

# HTTP status for failed commands, keyed by OperationResult.reason
FAILURE_STATUS = {
    "not_running": 409,
    "binary_not_found": 503,
    "launch_failed": 500,
    "best_effort_failed": 500,
}

_operation_lock = threading.Lock()
_supervisor: Optional[Supervisor] = None


def get_supervisor() -> Supervisor:
    """Shared supervisor built from the process configuration."""
    global _supervisor
    if _supervisor is None:
        config.ensure_data_dir()
        _supervisor = Supervisor(config)
    return _supervisor


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting tunnelvisor API...")
    yield
    # Tunnels outlive the API; nothing is stopped here
    logger.info("Shutting down tunnelvisor API...")


app = FastAPI(
    title="Tunnelvisor",
    description="Supervisor for OpenVPN tunnel daemons",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/api/status")
def get_status(supervisor: Supervisor = Depends(get_supervisor)):
    """Lock marker state and daemon binary, without signalling anything."""
    binary = find_daemon(supervisor.config.daemon_paths)
    units = supervisor.describe_units(metrics=False)
    return {
        "running": supervisor.is_running(),
        "binary": str(binary) if binary else None,
        "lock_file": str(supervisor.config.lock_file),
        "units": len(units),
        "alive": sum(1 for u in units if u["alive"]),
    }


@app.get("/api/units")
def list_units(supervisor: Supervisor = Depends(get_supervisor)):
    """Discovered configuration units with their daemon state."""
    return supervisor.describe_units()


@app.get("/api/events")
def list_events(
    unit: Optional[str] = Query(None, description="Only events for this unit"),
    limit: int = Query(50, ge=1, le=1000),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Recent lifecycle events, newest first."""
    return [event.to_dict() for event in recent_events(limit=limit, unit=unit)]


@app.post("/api/{command}")
def run_command(command: str, supervisor: Supervisor = Depends(get_supervisor)):
    """Run a lifecycle command across all tunnels."""
    if command not in Supervisor.COMMANDS:
        raise HTTPException(status_code=404, detail=f"Unknown command '{command}'")

    with _operation_lock:
        result = supervisor.run(command)

    if not result.ok:
        raise HTTPException(
            status_code=FAILURE_STATUS.get(result.reason, 500),
            detail=result.to_dict(),
        )
    return result.to_dict()
