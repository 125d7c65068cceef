from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .db import init_models
from .errors import AppError
from .routes_cron import router as cron_router
from .routes_files import router as files_router
from .routes_posts import router as posts_router
from .routes_scheduler import router as scheduler_router
from .routes_videos import router as videos_router
from .settings import get_settings

logger = logging.getLogger("app")

settings = get_settings()
app = FastAPI(title=settings.app_name)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return JSONResponse(
        {"success": False, "error": message, "code": "VALIDATION_ERROR"},
        status_code=400,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url)
    return PlainTextResponse("Internal Server Error", status_code=500)


@app.get("/ping")
async def ping():
    return {"status": "ok"}


app.include_router(videos_router)
app.include_router(posts_router)
app.include_router(cron_router)
app.include_router(scheduler_router)
app.include_router(files_router)


@app.on_event("startup")
async def startup_event():
    """Create tables (local setups) and start the publish scheduler."""
    if settings.auto_create_tables:
        await init_models()
    from .services.scheduler import scheduler_service
    scheduler_service.start()
    if scheduler_service.is_running():
        logger.info("Scheduler started on app startup")


@app.on_event("shutdown")
async def shutdown_event():
    from .services.scheduler import scheduler_service
    scheduler_service.stop()
    logger.info("Scheduler stopped on app shutdown")
