import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from mandados.config import settings
from mandados.errors import DispatchError
from mandados.metrics import get_metrics_bytes, get_metrics_content_type
from mandados.redis_client import redis_ready
from mandados.routes import admin, couriers, orders, ws
from mandados.services import close_services, get_services

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await get_services()
    yield
    await close_services()


app = FastAPI(title="Mandados Dispatch", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(couriers.router)
app.include_router(admin.router)
app.include_router(ws.router)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError) -> JSONResponse:
    """Typed core failures keep their kind so clients can tell a lost race from a denial."""
    content = {"error": exc.kind, "detail": exc.detail}
    if getattr(exc, "current_state", None) is not None:
        content["current_state"] = exc.current_state
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.get("/health")
async def health() -> JSONResponse:
    if not await redis_ready():
        return JSONResponse(status_code=503, content={"status": "degraded", "redis": "unreachable"})
    return JSONResponse(status_code=200, content={"status": "ok"})


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: transitions, conflicts, notifications, live sessions."""
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )


def run() -> None:
    import uvicorn
    uvicorn.run("mandados.main:app", host="0.0.0.0", port=8000)
