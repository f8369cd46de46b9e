import uvicorn
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from launchpad.api.builds import router as builds_router
from launchpad.api.deployments import router as deployments_router
from launchpad.api.proxy import router as proxy_router
from launchpad.api.deps import shutdown_dependencies
from launchpad.core.config import APP_LOG_DIR, APP_LOG_LEVEL
from launchpad.utils.logging_config import setup_logging

setup_logging(level=APP_LOG_LEVEL, log_dir=APP_LOG_DIR)
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    await shutdown_dependencies()


app = FastAPI(title="Launchpad Build & Run API", lifespan=lifespan)

# ---------------------------------------------------------------------------
# Logging Middleware
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info(f"Incoming: {request.method} {request.url.path} from {client_host}")

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {e}")
            raise
        process_time = (time.time() - start_time) * 1000
        logger.info(
            f"Outgoing: {request.method} {request.url.path} - "
            f"Status: {response.status_code} - "
            f"Time: {process_time:.2f}ms"
        )
        return response

app.add_middleware(LoggingMiddleware)

# ---------------------------------------------------------------------------
# CORS: the dashboard UI runs on its own origin
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Health endpoint
@app.get("/health")
async def health_check():
    return {"status": "ok"}

# Register routers
app.include_router(builds_router)
app.include_router(deployments_router)
app.include_router(proxy_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
