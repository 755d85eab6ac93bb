from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .routes import router as api_router
from .realtime import router as ws_router
from .logging_setup import configure_logging
from .errors import RideError
from .cache import ping
from . import services
import logging
import asyncio

# configure file logging for the app
configure_logging()
logger = logging.getLogger("ridehail.main")

app = FastAPI(title="Ridehail - Matching and Ride Lifecycle API")

# Enable CORS for UI dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router, prefix="/v1")
app.include_router(ws_router, prefix="/v1")


@app.exception_handler(RideError)
async def ride_error_handler(request: Request, exc: RideError):
    logger.info("ride_error: path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


async def periodic_cache_cleanup():
    """Run cache cleanup every 60 seconds."""
    while True:
        await asyncio.sleep(60)
        await services.locator.cleanup_stale()


@app.on_event("startup")
async def _startup():
    logger.info("Starting Ridehail API application")
    await services.store.create_schema()
    app.state.cleanup_task = asyncio.create_task(periodic_cache_cleanup())
    logger.info("Started periodic cache cleanup task")


@app.on_event("shutdown")
async def _shutdown():
    task = getattr(app.state, "cleanup_task", None)
    if task:
        task.cancel()
    await services.dispatcher.shutdown()
    logger.info("Stopped Ridehail API application")


@app.get("/health")
async def health_check():
    return {"status": "ok", "redis": await ping(services.locator.redis)}
