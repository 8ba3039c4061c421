# stream_sync_API/app/api/v1/endpoints/sync.py
# Description: FastAPI endpoints for the document sync protocol (pull/push).
#
# Imports
import time
from typing import Any, Dict, List
#
# 3rd-party imports
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
# API Rate Limiter
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from loguru import logger
#
# Local Imports
from stream_sync_API.app.api.v1.API_Deps.Sync_DB_Deps import get_sync_store
from stream_sync_API.app.api.v1.schemas.sync_schemas import (
    ErrorResponse,
    PullRequest,
    PullResponse,
    PushRequest,
    PushResponse,
)
from stream_sync_API.app.core.config import settings
from stream_sync_API.app.core.DB_Management.Sync_Store_DB import InputError, SyncDocumentStore, SyncStoreError
#
#######################################################################################################################
#
# Functions:

# Error codes on the wire
INVALID_PAYLOAD = "INVALID_PAYLOAD"
STORAGE_FAILURE = "STORAGE_FAILURE"

router = APIRouter()
limiter = Limiter(key_func=get_remote_address, enabled=settings["RATE_LIMIT_ENABLED"])


def current_time_ms() -> int:
    return int(time.time() * 1000)


def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": message})


def _format_validation_errors(errors: List[Dict[str, Any]]) -> str:
    parts = []
    for err in errors:
        location = ".".join(str(loc) for loc in err.get("loc", ()) if loc != "body")
        parts.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return "; ".join(parts) or "Invalid payload"


async def invalid_payload_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = _format_validation_errors(exc.errors())
    logger.warning(f"{request.method} {request.url.path} rejected: {message}")
    return _error_response(status.HTTP_400_BAD_REQUEST, INVALID_PAYLOAD, message)


async def input_error_handler(request: Request, exc: InputError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} rejected by store validation: {exc}")
    return _error_response(status.HTTP_400_BAD_REQUEST, INVALID_PAYLOAD, str(exc))


async def storage_error_handler(request: Request, exc: SyncStoreError) -> JSONResponse:
    logger.error(f"{request.method} {request.url.path} failed in the document store: {exc}")
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, STORAGE_FAILURE,
                           "The document store could not complete the request.")


def register_sync_exception_handlers(app: FastAPI) -> None:
    """Installs the INVALID_PAYLOAD / STORAGE_FAILURE mapping and the rate limiter on an app."""
    app.state.limiter = limiter
    app.add_exception_handler(RequestValidationError, invalid_payload_handler)
    app.add_exception_handler(InputError, input_error_handler)
    app.add_exception_handler(SyncStoreError, storage_error_handler)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@router.post(
    "/pull",
    response_model=PullResponse,
    summary="Fetch documents changed since a timestamp",
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
)
@limiter.limit(settings["RATE_LIMIT"])
def pull_documents(
        request: Request,
        payload: PullRequest,
        store: SyncDocumentStore = Depends(get_sync_store),
):
    """Returns every document for the owner with updatedAt > since, tombstones included."""
    # Taken before reading so that a write landing mid-query is re-sent on the next pull.
    server_time = current_time_ms()
    documents = store.get_documents(payload.user_id, payload.since)
    logger.info(f"Pull for user '{payload.user_id}' since {payload.since}: {len(documents)} document(s)")
    return {"items": documents, "timestamp": server_time}


@router.post(
    "/push",
    response_model=PushResponse,
    summary="Store a batch of documents",
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
    },
)
@limiter.limit(settings["RATE_LIMIT"])
def push_documents(
        request: Request,
        payload: PushRequest,
        store: SyncDocumentStore = Depends(get_sync_store),
):
    """Applies the whole batch atomically; the payload was fully validated before this runs."""
    documents = [item.model_dump(by_alias=True) for item in payload.items]
    written = store.upsert_documents(payload.user_id, documents)
    logger.info(f"Push for user '{payload.user_id}': {written} document(s) stored")
    return {"success": True, "timestamp": current_time_ms()}

#
# End of sync.py
#######################################################################################################################
