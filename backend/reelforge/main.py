from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from .routes_intake import router as intake_router
from .routes_ops import router as ops_router
from .routes_publishes import router as publishes_router
from .routes_renders import router as renders_router
from .routes_templates import router as templates_router
from .settings import get_settings

logger = logging.getLogger("reelforge")

app = FastAPI(title="reelforge")
settings = get_settings()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(intake_router)
app.include_router(templates_router)
app.include_router(renders_router)
app.include_router(publishes_router)
app.include_router(ops_router)


@app.on_event("startup")
async def startup_event():
    """Start the watchdog scheduler on app startup."""
    from reelforge.services.scheduler import scheduler_service
    scheduler_service.configure(settings.async_database_url)
    scheduler_service.start()


@app.on_event("shutdown")
async def shutdown_event():
    from reelforge.services.scheduler import scheduler_service
    scheduler_service.stop()
    logger.info("Scheduler stopped on app shutdown")
