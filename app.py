"""FastAPI application hosting the plugin runtime and its control panel API."""

import logging
import os
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

# Configure logging BEFORE importing any modules that use logger
log_level = os.getenv('LOG_LEVEL', 'INFO')
logging.basicConfig(
    level=getattr(logging, log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Import after logging is configured
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from plugin_runtime import __version__
from plugin_runtime.constants import PLUGIN_REGISTRY_FILE, SETTINGS_FILE
from plugin_runtime.dependencies import get_background_service, get_control_channel, get_plugin_manager
from plugin_runtime.routers import plugins_router

# Create FastAPI app
app = FastAPI(
    title="Plugin Runtime",
    description="Plugin runtime with a cross-context control panel API",
    version=__version__
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(plugins_router)  # /api/plugins endpoints


@app.get("/")
async def root():
    return {"message": "Plugin Runtime API", "docs": "/docs"}


@app.get("/health")
async def health():
    manager = get_plugin_manager()
    return {
        "status": "ok" if manager.initialized else "starting",
        "background": get_background_service().get_state(),
        **manager.get_stats(),
    }


@app.on_event("startup")
async def startup_event():
    """Application startup event."""
    logger.info("Starting Plugin Runtime")
    logger.info(f"Plugin registry: {PLUGIN_REGISTRY_FILE}")
    logger.info(f"Settings file: {SETTINGS_FILE}")

    # The panel context connects first so it sees the runtime's events
    get_control_channel()
    await get_background_service().initialize()
    await get_plugin_manager().initialize()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event."""
    logger.info("Shutting down Plugin Runtime")
    get_control_channel().destroy()
    await get_plugin_manager().destroy()
    get_background_service().destroy()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "9090"))
    uvicorn.run("app:app", host="0.0.0.0", port=port, reload=True)
