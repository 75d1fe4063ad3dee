import uvicorn
import time
import logging
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from covpipe.api.webhook import router as webhook_router
from covpipe.api.runs import router as runs_router
from covpipe.api.artifacts import router as artifacts_router
from covpipe.core.config import LOG_LEVEL
from covpipe.utils.logging_config import setup_logging

# Initialize enhanced logging
setup_logging(level=getattr(logging, LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger("main")

app = FastAPI(title="Coverage Pipeline Runner")

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
            process_time = (time.time() - start_time) * 1000
            logger.info(
                f"Outgoing: {request.method} {request.url.path} - "
                f"Status: {response.status_code} - "
                f"Time: {process_time:.2f}ms"
            )
            return response
        except Exception as e:
            logger.error(f"Request failed: {request.method} {request.url.path} - Error: {str(e)}")
            raise

app.add_middleware(LoggingMiddleware)

# Health endpoint
@app.get("/health")
async def health_check():
    return {"status": "ok"}

# Register routers
app.include_router(webhook_router)
app.include_router(runs_router)
app.include_router(artifacts_router)

if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
