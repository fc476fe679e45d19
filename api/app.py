"""
Reference Enrollment Backend

FastAPI app serving the session protocol the capture controller talks to.
It keeps sessions in memory and validates uploads without storing them, which
is enough for local development and for driving the HTTP client in tests.

Usage:
    uvicorn api.app:app --port 3000
    python -m api.app
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import enrollment_router
from api.routes.enrollment import EnrollmentSessionStore, get_session_store, reset_session_store
from api.schemas import HealthResponse
from core.config import get_server_config

API_TITLE = "Face Pose Enrollment API"
API_VERSION = "0.1.0"

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = get_session_store()
    logger.info(
        f"{API_TITLE} {API_VERSION} up: session ttl {store.session_ttl_sec}s, "
        f"min quality {store.min_quality:.2f}"
    )
    yield
    logger.info(f"Dropping {store.active_count} active session(s) on shutdown")
    reset_session_store()


app = FastAPI(
    title=API_TITLE,
    description="""
Reference backend for guided face-pose enrollment.

1. `POST /start-enrollment` with `{"childId": ...}` opens a session
2. `POST /enroll-frame` (multipart: `image`, `sessionId`, `poseBucket`, `quality`) once per pose
3. `POST /complete` once FRONT, LEFT, RIGHT, UP and DOWN are all accepted

Uploaded images are validated and discarded.
""",
    version=API_VERSION,
    lifespan=lifespan,
)

# The capture client may be served from any origin during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(enrollment_router)


# ============================================================
# System
# ============================================================

@app.get("/health", response_model=HealthResponse, tags=["system"])
async def health_check(store: EnrollmentSessionStore = Depends(get_session_store)):
    """Liveness plus the number of sessions still accepting frames."""
    return HealthResponse(status="healthy", active_sessions=store.active_count)


@app.get("/", tags=["system"])
async def root():
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "docs": app.docs_url,
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    server = get_server_config()
    logger.info(f"Serving on {server['host']}:{server['port']}")
    uvicorn.run(app, host=server["host"], port=server["port"], log_level="info")
