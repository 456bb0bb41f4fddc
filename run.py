"""Run the tunnelvisor control API."""

import uvicorn

from tunnelvisor.config import config
from tunnelvisor.logs import configure_logging

if __name__ == "__main__":
    configure_logging(config)
    uvicorn.run(
        "tunnelvisor.main:app",
        host=config.host,
        port=config.port,
        reload=False,
    )
