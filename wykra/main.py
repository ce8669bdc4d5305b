import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from wykra.api.deps import close_orchestrator
from wykra.api.routes import chat, instagram, tasks, tiktok
from wykra.config import settings
from wykra.services import database
from wykra.services import logger as log_service  # noqa: F401  configures sinks
from wykra.services import metrics
from wykra.services.error_tracking import init_error_tracking
from wykra.services.redis_client import RedisClient


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_error_tracking()
    yield
    # Shutdown
    await close_orchestrator()
    await database.close_pool()
    await RedisClient.close_instance()


app = FastAPI(
    title="Wykra",
    description="Creator discovery and profile analysis over chat",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(chat.router)
app.include_router(tasks.router)
app.include_router(instagram.router)
app.include_router(tiktok.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "wykra"}


@app.middleware("http")
async def record_request_metrics(request: Request, call_next):
    t0 = time.monotonic()
    response = await call_next(request)
    route = request.scope.get("route")
    # Template paths only, so task ids never become label values.
    path = getattr(route, "path", "unmatched")
    if path != "/metrics":
        metrics.record_http_request(request.method, path, response.status_code, time.monotonic() - t0)
    return response


@app.get("/metrics", include_in_schema=False)
async def prometheus_metrics():
    body, content_type = metrics.render_latest()
    return Response(content=body, media_type=content_type)
