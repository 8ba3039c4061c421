# main.py
# Description: This file contains the main FastAPI application serving the stream sync API.
#
# Imports
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any
#
# 3rd-party Libraries
import uvicorn
from loguru import logger
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
#
# Local Imports
#
# Sync Endpoint
from stream_sync_API.app.api.v1.endpoints.sync import router as sync_router, register_sync_exception_handlers, \
    current_time_ms
from stream_sync_API.app.api.v1.API_Deps.Sync_DB_Deps import open_sync_store, STORE_STATE_ATTR
from stream_sync_API.app.core.config import settings as default_settings
#
########################################################################################################################
#
# Functions:


# --- Loguru Configuration with Intercept Handler ---

# Define a handler class to intercept standard logging messages
class InterceptHandler(logging.Handler):
    def emit(self, record):
        # Get corresponding Loguru level if it exists
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


# uvicorn plus our own stdlib-logging modules (document store, client library)
LOGGERS_TO_INTERCEPT = ["uvicorn", "uvicorn.error", "uvicorn.access", "stream_sync_API"]


def configure_logging(log_level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        colorize=True,
    )
    for logger_name in LOGGERS_TO_INTERCEPT:
        mod_logger = logging.getLogger(logger_name)
        mod_logger.handlers = [InterceptHandler()]
        mod_logger.setLevel(log_level)
        mod_logger.propagate = False  # Prevent messages from reaching the root logger
    logger.info(f"Loguru logger configured at level {log_level}.")


def create_app(settings: Optional[Dict[str, Any]] = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = open_sync_store(settings["SYNC_DB_PATH"])
        setattr(app.state, STORE_STATE_ATTR, store)
        logger.info("App Startup: sync document store ready")
        try:
            yield
        finally:
            logger.info("App Shutdown: Closing DB connections")
            setattr(app.state, STORE_STATE_ATTR, None)
            store.close_all_connections()

    app = FastAPI(
        title="Stream Sync API",
        version="0.1.0",
        description="Pull/push document sync for offline-first notes",
        lifespan=lifespan,
    )

    origins = settings["ALLOWED_ORIGINS"] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    max_body_bytes = settings["MAX_BODY_BYTES"]

    @app.middleware("http")
    async def limit_body_size(request: Request, call_next):
        content_length = request.headers.get("content-length")
        if max_body_bytes > 0 and content_length and content_length.isdigit() \
                and int(content_length) > max_body_bytes:
            logger.warning(f"Rejected {request.url.path}: body of {content_length} bytes exceeds {max_body_bytes}")
            return JSONResponse(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                                content={"error": "PAYLOAD_TOO_LARGE",
                                         "message": f"Request body exceeds {max_body_bytes} bytes"})
        return await call_next(request)

    register_sync_exception_handlers(app)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": "NOT_FOUND"})
        return JSONResponse(status_code=exc.status_code, content={"error": "HTTP_ERROR", "message": str(exc.detail)})

    @app.get("/")
    async def root():
        return {"message": "Stream sync API is running."}

    # Router for sync endpoints
    app.include_router(sync_router, prefix="/sync", tags=["sync"])

    # Health check
    @app.get("/health")
    async def health_check():
        return {"status": "ok", "timestamp": current_time_ms()}

    return app


configure_logging(default_settings["LOG_LEVEL"])
app = create_app()


def run() -> None:
    uvicorn.run(app, host=default_settings["HOST"], port=default_settings["PORT"], log_config=None)


if __name__ == "__main__":
    run()

#
## End of main.py
########################################################################################################################
