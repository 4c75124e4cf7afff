""" main.py: FastAPI application entry point and runtime configuration.

This module builds the ASGI app, mounts API routers, configures CORS (Cross-Origin Resource Sharing), and exposes a
Prometheus metrics endpoint. It also ties the lifetime of the shared services to the app: sessions are loaded and the
memory sweep scheduler is started on startup, and active workflow runs are cancelled, sessions saved and the scheduler
stopped on shutdown. When executed directly, it starts a Uvicorn server using host/port values from configuration.
"""

import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import make_asgi_app
import logging
from config import CONFIG
from version import __version__
from monitoring.metrics import REQUEST_COUNT, REQUEST_LATENCY

# --- Router Imports ---
from api import sessions as sessions_router
from api import workflow as workflow_router
from api import classify as classify_router
from api import memory as memory_router
from api import speech as speech_router
from api import chat as chat_router
from api.dependencies import get_services, reset_services
from services.memory_scheduler import start_memory_scheduler, shutdown_memory_scheduler

# Get a logger instance for this module
logger = logging.getLogger(__name__)

app = FastAPI(title="Sahayak", version=__version__)

# Include routers
app.include_router(sessions_router.router, prefix="/api", tags=["Sessions"])
app.include_router(chat_router.router, prefix="/api", tags=["Chat"])
app.include_router(workflow_router.router, prefix="/api", tags=["Workflow"])
app.include_router(classify_router.router, prefix="/api", tags=["Classification"])
app.include_router(memory_router.router, prefix="/api", tags=["Memory"])
app.include_router(speech_router.router, prefix="/api", tags=["Speech"])

# Add Prometheus metrics endpoint
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Configure CORS
allow_origins = CONFIG.get('cors', {}).get('allow_origins', ["*"])
app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def record_request_metrics(request: Request, call_next):
    # Route template, not the raw path
    started = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status=str(response.status_code)).inc()
    REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(time.perf_counter() - started)
    return response


@app.on_event("startup")
async def on_startup():
    services = get_services()
    start_memory_scheduler(app, services.memory_store)
    logger.info(f"[startup] Sahayak {__version__} ready\n")


@app.on_event("shutdown")
async def on_shutdown():
    shutdown_memory_scheduler(app)
    reset_services()
    logger.info("[shutdown] Services stopped\n")


# The uvicorn server is used to run the FastAPI application.
if __name__ == '__main__':
    import uvicorn
    logger.info("[__main__] Starting Uvicorn server for main.py\n")
    uvicorn.run(
        app,
        host=CONFIG.get('server', {}).get('host', '0.0.0.0'),
        port=CONFIG.get('server', {}).get('port', 8080)
    )
