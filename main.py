import os
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from vep_scheduler.api import create_app
from vep_scheduler.config_loader import load_settings
from vep_scheduler.core import JobScheduler

# Configure logging level from environment
log_level = os.getenv("VEP_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def build_app() -> tuple[FastAPI, dict]:
    config = load_settings()
    # Create the scheduler but don't start it yet - let uvicorn handle the event loop
    service = JobScheduler(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=config.server.api_token, lifespan=lifespan)
    return app, {"host": config.server.host, "port": config.server.port}


if __name__ == "__main__":
    app, bind = build_app()
    uvicorn.run(app, host=str(bind["host"]), port=int(bind["port"]))
