"""
FastAPI Main Application
========================

Main entry point for the auto mode server.
Provides the REST API for auto mode control and the feature backlog, and a
WebSocket per project for lifecycle events.
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

from fastapi import FastAPI, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .event_broadcaster import cleanup_event_broadcasters
from .exceptions import ErrorCode, create_error_response, register_exception_handlers
from .routers import auto_mode_router, features_router
from .services.auto_mode_manager import cleanup_all_services, get_settings
from .websocket import project_websocket

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    settings = get_settings()
    logger.info(
        "Auto mode server starting (projects root %s, max concurrency %d)",
        settings.projects_root, settings.max_concurrency,
    )

    yield

    # Shutdown - stop every admission loop and abort running features
    await cleanup_all_services()
    cleanup_event_broadcasters()


# Create FastAPI app
app = FastAPI(
    title="Auto Mode",
    description="Dependency-aware autonomous feature scheduler",
    version="1.0.0",
    lifespan=lifespan,
)

# ============================================================================
# Exception Handlers
# ============================================================================

# API and scheduler errors share one body, see server/exceptions.py:
# {"error_code": "NOT_FOUND", "message": "...", "details": {...}}
register_exception_handlers(app)

ALLOW_REMOTE = get_settings().allow_remote

# Browser UI origins accepted while the server is local-only
LOCAL_ORIGINS = [
    f"http://{host}:{port}"
    for host in ("localhost", "127.0.0.1")
    for port in (5173, 8888)
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if ALLOW_REMOTE else LOCAL_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# Security Middleware
# ============================================================================

LOCAL_HOSTS = ("127.0.0.1", "::1", "localhost", None)

if not ALLOW_REMOTE:
    @app.middleware("http")
    async def require_localhost(request: Request, call_next):
        """Only allow requests from localhost (disabled when AUTOMODE_ALLOW_REMOTE=1)."""
        client_host = request.client.host if request.client else None

        if client_host not in LOCAL_HOSTS:
            return JSONResponse(
                status_code=status.HTTP_403_FORBIDDEN,
                content=create_error_response(ErrorCode.FORBIDDEN, "Localhost access only"),
            )

        return await call_next(request)


# ============================================================================
# Include Routers
# ============================================================================

app.include_router(auto_mode_router)
app.include_router(features_router)


# ============================================================================
# WebSocket Endpoint
# ============================================================================

@app.websocket("/ws/projects/{project_name}")
async def websocket_endpoint(websocket: WebSocket, project_name: str):
    """WebSocket endpoint for real-time auto mode events."""
    await project_websocket(websocket, project_name)


# ============================================================================
# Health Endpoint
# ============================================================================

@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server.main:app",
        host="127.0.0.1",  # Localhost only for security
        port=8888,
        reload=True,
    )
