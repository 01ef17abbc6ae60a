# queue_api/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import config
from .engine import QueueEngine
from .errors import QueueError
from .routers import checkins, live
from .store import CheckInStore, InMemoryCheckInStore, SqlCheckInStore

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_store(backend: str = config.STORE_BACKEND) -> CheckInStore:
    if backend == "memory":
        return InMemoryCheckInStore()
    if backend == "sql":
        store = SqlCheckInStore()
        store.create_tables()
        return store
    raise ValueError(f"Unknown store backend: {backend!r}")


# =================================================================
# SETUP & LIFESPAN
# =================================================================

def create_app(store: Optional[CheckInStore] = None, follow_changes: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        queue_store = store or build_store()
        app.state.engine = QueueEngine(queue_store, follow_changes=follow_changes)
        logger.info("Live queue starting (store: %s, estimator: %s)",
                    queue_store.__class__.__name__, app.state.engine.estimator.__class__.__name__)
        yield
        await app.state.engine.close()
        logger.info("Live queue shut down")

    app = FastAPI(
        title="Live Hospital Queue",
        description="Real-time check-in queue per department, with live views for staff and patients",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"code": exc.code, "message": exc.message}, "detail": exc.message},
        )

    app.include_router(checkins.router)
    app.include_router(live.router)

    @app.get("/", tags=["Root"])
    def read_root():
        return {"message": "Live Hospital Queue API is running."}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("queue_api.main:app", host="127.0.0.1", port=8000, reload=True)
