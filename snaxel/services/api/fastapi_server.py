#!/usr/bin/env python3
"""FastAPI request surface over the aggregation service."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from snaxel.services.aggregator.service import AggregatorService, build_aggregator
from snaxel.services.shared.errors import (
    InfrastructureError,
    SnaxelError,
    map_to_http_status,
    report_error,
    to_error_payload,
)
from snaxel.services.shared.settings import get_settings
from snaxel.services.shared.telemetry import METRICS_REGISTRY, track_request

logger = logging.getLogger(__name__)

_state: Dict[str, Optional[AggregatorService]] = {"aggregator": None}


class SearchRequest(BaseModel):
    query: Optional[str] = None
    sources: Optional[List[str]] = None
    limit: Optional[int] = Field(None, ge=1, le=50)


class QueryRequest(BaseModel):
    query: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1, le=50)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    aggregator = _state["aggregator"]
    owned = aggregator is None
    if owned:
        aggregator = build_aggregator(settings)
        _state["aggregator"] = aggregator
    aggregator.cache.start_sweeper(settings.cache.sweep_interval_seconds)
    logger.info(
        "Aggregator ready (provider=%s, ttl=%ss)",
        settings.search.provider,
        settings.cache.ttl_seconds,
    )
    try:
        yield
    finally:
        aggregator.cache.stop_sweeper()
        if owned:
            aggregator.close()
            _state["aggregator"] = None


def get_aggregator() -> AggregatorService:
    aggregator = _state["aggregator"]
    if aggregator is None:
        raise InfrastructureError("Aggregator is not initialized")
    return aggregator


def install_aggregator(aggregator: Optional[AggregatorService]) -> None:
    """Use a pre-built aggregator instead of building one from settings."""
    _state["aggregator"] = aggregator


router = APIRouter(prefix="/api")


@router.get("/health")
def health(aggregator: AggregatorService = Depends(get_aggregator)) -> Dict[str, Any]:
    return {
        "success": True,
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "providers": aggregator.health_check(),
    }


@router.post("/search")
@track_request("search")
def search(
    payload: SearchRequest,
    aggregator: AggregatorService = Depends(get_aggregator),
) -> Dict[str, Any]:
    settings = get_settings()
    sources = payload.sources if payload.sources is not None else settings.search.default_sources
    envelope = aggregator.run(payload.query, sources, limit=payload.limit)
    return {"success": True, "data": envelope.model_dump(mode="json")}


@router.post("/search/all")
@track_request("search_all")
def search_all(
    payload: QueryRequest,
    aggregator: AggregatorService = Depends(get_aggregator),
) -> Dict[str, Any]:
    envelope, summary = aggregator.run_all(payload.query, limit=payload.limit)
    return {
        "success": True,
        "data": envelope.model_dump(mode="json"),
        "summary": summary.model_dump(mode="json"),
    }


@router.post("/search/{source}")
@track_request("search_single")
def search_single(
    source: str,
    payload: QueryRequest,
    aggregator: AggregatorService = Depends(get_aggregator),
):
    result = aggregator.search_single(source, payload.query, limit=payload.limit)
    if not result.ok:
        return JSONResponse(
            status_code=502,
            content={
                "success": False,
                "source": source,
                "error": {"kind": "internal", "message": result.failure.message},
                "data": result.model_dump(mode="json"),
            },
        )
    return {"success": True, "data": result.model_dump(mode="json")}


app = FastAPI(title="Snaxel Search Aggregator", version="1.0.0", lifespan=lifespan)
app.include_router(router)


@app.get("/metrics")
def metrics() -> Response:
    return Response(generate_latest(METRICS_REGISTRY), media_type=CONTENT_TYPE_LATEST)


@app.exception_handler(SnaxelError)
async def snaxel_error_handler(request: Request, exc: SnaxelError) -> JSONResponse:
    if isinstance(exc, InfrastructureError):
        report_error(exc, request_id=exc.request_id, extra_context={"path": {"url": str(request.url)}})
    return JSONResponse(status_code=map_to_http_status(exc), content=to_error_payload(exc))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    message = first.get("msg", "Invalid request body")
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    if location:
        message = f"{location}: {message}"
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": {"kind": "bad_request", "message": message}},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    report_error(exc)
    return JSONResponse(status_code=500, content=to_error_payload(exc))


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "snaxel.services.api.fastapi_server:app",
        host=settings.server.host,
        port=settings.server.port,
    )


if __name__ == "__main__":
    main()
