"""HTTP routes for operations, ingest, deferred downloads and stored files."""

import re
from typing import Any

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel

from media_relay.content_store.models import ArtifactKind
from media_relay.core.logging import get_logger
from media_relay.deferred import DeferredDownloadQueue
from media_relay.operations import OperationType
from media_relay.pipeline import IngestRequest, IngestResult, Runtime
from media_relay.transcoder import build_transform_options

logger = get_logger()

router = APIRouter()
files_router = APIRouter()

_FILE_NAME = re.compile(r"^[a-f0-9]{64}\.[a-z0-9]{1,5}$")
_KIND_DIRECTORIES = {kind.directory for kind in ArtifactKind}


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


class IngestPayload(BaseModel):
    """Body of an ingest request for a URL."""

    url: str
    user_id: str | None = None
    username: str | None = None
    channel_id: str | None = None
    operation_type: OperationType = OperationType.DOWNLOAD
    kind_hint: ArtifactKind | None = None
    skip_cache: bool = False
    output_kind: ArtifactKind | None = None
    trim_start: float | None = None
    trim_end: float | None = None
    optimize_level: int | None = None
    fps: float | None = None
    width: int | None = None


def _result_dict(result: IngestResult) -> dict[str, Any]:
    return {
        "operation_id": result.operation_id,
        "cached": result.cached,
        "artifacts": [
            {
                "url": artifact.url,
                "size": artifact.size,
                "method": artifact.method.value,
                "content_hash": artifact.content_hash,
                "kind": artifact.kind.value,
                "reused": artifact.reused,
            }
            for artifact in result.artifacts
        ],
    }


@router.get("/operations")
async def list_operations(
    request: Request, limit: int = Query(50, ge=1, le=500)
) -> list[dict[str, Any]]:
    """Recent operations, newest first."""
    runtime = get_runtime(request)
    return [op.public_dict() for op in runtime.tracker.recent(limit)]


@router.get("/operations/{operation_id}")
async def get_operation(request: Request, operation_id: str) -> dict[str, Any]:
    operation = get_runtime(request).tracker.get(operation_id)
    if operation is None:
        raise HTTPException(status_code=404, detail="Operation not found")
    return operation.public_dict()


@router.get("/operations/{operation_id}/trace")
async def get_operation_trace(request: Request, operation_id: str) -> list[dict[str, Any]]:
    """Persisted step log of an operation, oldest first."""
    runtime = get_runtime(request)
    if runtime.record_store is None:
        operation = runtime.tracker.get(operation_id)
        if operation is None:
            raise HTTPException(status_code=404, detail="Operation not found")
        return [step.model_dump() for step in operation.steps]

    trace = await runtime.record_store.get_operation_trace(operation_id)
    if not trace:
        raise HTTPException(status_code=404, detail="Operation not found")
    for entry in trace:
        entry.pop("stack_trace", None)
    return trace


@router.post("/ingest")
async def ingest(request: Request, payload: IngestPayload) -> dict[str, Any]:
    """Fetch and deliver the media behind a URL."""
    runtime = get_runtime(request)
    options = build_transform_options(
        output_kind=payload.output_kind,
        trim_start=payload.trim_start,
        trim_end=payload.trim_end,
        optimize_level=payload.optimize_level,
        fps=payload.fps,
        width=payload.width,
    )
    result = await runtime.service.ingest_url(
        IngestRequest(
            source_url=payload.url,
            user_id=payload.user_id,
            username=payload.username,
            channel_id=payload.channel_id,
            operation_type=payload.operation_type,
            kind_hint=payload.kind_hint,
            skip_cache=payload.skip_cache,
            options=options,
        )
    )
    return _result_dict(result)


def get_deferred_queue(request: Request) -> DeferredDownloadQueue:
    queue = get_runtime(request).deferred_queue
    if queue is None:
        raise HTTPException(status_code=404, detail="Deferred downloads are disabled")
    return queue


@router.get("/deferred")
async def list_deferred(request: Request, user_id: str | None = None) -> dict[str, Any]:
    """Deferred downloads, oldest first, with per-status counts."""
    queue = get_deferred_queue(request)
    return {
        "stats": queue.stats(),
        "requests": [item.model_dump(mode="json") for item in queue.requests(user_id)],
    }


@router.get("/deferred/{request_id}")
async def get_deferred(request: Request, request_id: str) -> dict[str, Any]:
    item = get_deferred_queue(request).get(request_id)
    if item is None:
        raise HTTPException(status_code=404, detail="Deferred request not found")
    return item.model_dump(mode="json")


@router.delete("/deferred/{request_id}")
async def cancel_deferred(
    request: Request, request_id: str, user_id: str | None = None
) -> dict[str, Any]:
    """Cancel a deferred download that has not finished yet."""
    queue = get_deferred_queue(request)
    if not await queue.cancel(request_id, user_id=user_id):
        raise HTTPException(status_code=404, detail="No cancellable deferred request")
    return {"id": request_id, "status": "cancelled"}


@files_router.get("/files/{kind_dir}/{name}")
async def serve_file(request: Request, kind_dir: str, name: str) -> FileResponse:
    """Serve an artifact stored on local disk."""
    if kind_dir not in _KIND_DIRECTORIES or not _FILE_NAME.match(name):
        raise HTTPException(status_code=404, detail="File not found")
    runtime = get_runtime(request)
    key = f"{kind_dir}/{name}"
    if not await runtime.local_store.exists(key):
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(runtime.local_store.path_for(key))
