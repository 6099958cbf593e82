# dotformer/main.py
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from dotformer import __version__
from dotformer.database import engine, Base, SessionLocal
from dotformer.errors import DotformerError
from dotformer.plans import ensure_default_plans
from dotformer.routes import files, billing, admin
from dotformer.scheduler import billing_loop
from dotformer.schemas import HealthResponse
from dotformer.services import build_services
from dotformer.config import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    settings.validate_secrets()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        ensure_default_plans(db)
    finally:
        db.close()

    services = build_services(settings, SessionLocal)
    services.recorder.start()
    app.state.services = services

    billing_task = None
    if settings.billing_schedule_enabled:
        billing_task = asyncio.create_task(billing_loop(SessionLocal))

    yield

    # Shutdown
    if billing_task is not None:
        billing_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await billing_task
    services.recorder.stop()
    close = getattr(services.engine, "close", None)
    if close is not None:
        close()


app = FastAPI(
    title="Dotformer API",
    description="Metered image transformation cache with tiered billing",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(DotformerError)
async def dotformer_error_handler(request: Request, exc: DotformerError):
    if exc.status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse({"error": exc.message, "code": exc.code}, status_code=exc.status)


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Include routers
app.include_router(files.router)
app.include_router(billing.router)
app.include_router(admin.router)


@app.get("/v1/health", response_model=HealthResponse)
def health():
    """Health check endpoint."""
    return HealthResponse(status="ok", version=__version__)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
