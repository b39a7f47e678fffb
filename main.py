import uvicorn
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from isobuild.api.runs import router as runs_router, store
from isobuild.api.status import router as status_router
from isobuild.core.config import API_HOST, API_PORT, CORS_ORIGINS
from isobuild.utils.logging_config import setup_logging

setup_logging()
logger = logging.getLogger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Server shutdown: interrupt whatever is still running so no container outlives the process
    active = store.active()
    if active:
        logger.warning("Shutdown with %d active run(s); interrupting", len(active))
        for entry in active:
            entry.orchestrator.interrupt()
        await asyncio.gather(*(entry.task for entry in active), return_exceptions=True)


app = FastAPI(title="isobuild Execution Engine API", lifespan=lifespan)

# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------
class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        client_host = request.client.host if request.client else "unknown"
        logger.info("-> %s %s from %s", request.method, request.url.path, client_host)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Request failed: %s %s - %s", request.method, request.url.path, e)
            raise

        logger.info(
            "<- %s %s %d in %.2fms",
            request.method, request.url.path, response.status_code,
            (time.time() - start_time) * 1000,
        )
        return response

app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    return {"status": "ok", "active_runs": len(store.active())}


app.include_router(runs_router)
app.include_router(status_router, tags=["Status"])

if __name__ == "__main__":
    uvicorn.run("main:app", host=API_HOST, port=API_PORT)
