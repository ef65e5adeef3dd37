import time

from fastapi import FastAPI, Request
from loguru import logger

from carebase.api.authorizations import router as authorizations_router
from carebase.api.scheduling import router as scheduling_router
from carebase.core.logger import setup_logger
from carebase.core.settings import settings
from carebase.db.models import Base
from carebase.db.session import check_database_connection, get_engine

setup_logger(level=settings.log_level, log_file=settings.log_file, json_logs=settings.log_json)

check_database_connection()
Base.metadata.create_all(bind=get_engine())
logger.info("[STARTUP] Schema ready")

app = FastAPI(title="Carebase Scheduler")
app.include_router(scheduling_router)
app.include_router(authorizations_router)

logger.info("[STARTUP] Scheduler API ready", routes=len(app.routes))


@app.get("/health")
def health():
    return {"status": "ok"}


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.debug(
        "[HTTP] Request handled",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
    )
    return response
