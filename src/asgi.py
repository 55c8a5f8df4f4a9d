"""
ASGI entry point for uvicorn
This module exposes the FastAPI app for use with uvicorn command line
"""

import logging
from pathlib import Path

from config_loader import load_config, setup_logging
from services.provisioning_server import build_components

# Ensure logs directory exists
Path("logs").mkdir(exist_ok=True)

# Load configuration
config = load_config()
setup_logging(config)

logger = logging.getLogger(__name__)

logger.info("Initializing application components...")
components = build_components(config)
registry = components['registry']
sessions = components['sessions']

# Expose the FastAPI app for uvicorn
app = components['api'].app

# Lifespan events for proper initialization and cleanup
@app.on_event("startup")
async def startup_event():
    """Initialize the registry on startup"""
    logger.info("Starting up application...")
    await registry.initialize()
    logger.info("Registry initialized")

@app.on_event("shutdown")
async def shutdown_event():
    """Clean up resources on shutdown"""
    logger.info("Shutting down application...")
    await sessions.shutdown()
    await registry.close()
    logger.info("Application shut down complete")

logger.info("ASGI app ready for uvicorn")
