from typing import Literal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from slowapi import Limiter
from slowapi.util import get_remote_address

from . import queue as queue_store
from .auth import get_current_owner
from .database import get_db
from .errors import ListAPIError
from .lists import ListService
from .models import QueuedOperation, as_utc
from .processor import QueueProcessor, queue_processor
from .routes_lists import get_list_service, raise_api_error

limiter = Limiter(key_func=get_remote_address)

router = APIRouter(
    prefix="/api/queue",
    tags=["queue"],
    dependencies=[Depends(get_current_owner)],
)
sync_router = APIRouter(
    prefix="/api/sync",
    tags=["sync"],
    dependencies=[Depends(get_current_owner)],
)

StatusFilter = Literal["pending", "in_progress", "completed", "failed", "failed_permanent", "cancelled"]


def get_processor() -> QueueProcessor:
    return queue_processor


def _iso(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def _serialize_operation(operation: QueuedOperation) -> dict:
    return {
        "id": str(operation.id),
        "operation_type": operation.operation_type,
        "target_list_id": operation.target_list_id,
        "payload": operation.payload or {},
        "status": operation.status,
        "retry_count": operation.retry_count,
        "error_message": operation.error_message,
        "last_attempted_at": _iso(operation.last_attempted_at),
        "next_eligible_at": _iso(operation.next_eligible_at),
        "created_at": _iso(operation.created_at),
        "updated_at": _iso(operation.updated_at),
    }


def _user_stats_payload(stats: dict) -> dict:
    return {**stats, "last_sync_attempt": _iso(stats.get("last_sync_attempt"))}


@router.get("")
async def list_operations(
    status: StatusFilter | None = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await queue_store.get_user_operations(db, owner_id, status, page, per_page)
    return {
        "results": [_serialize_operation(row) for row in rows],
        "page": page,
        "per_page": per_page,
        "total": total,
    }


@router.get("/stats")
async def queue_stats(
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
):
    return _user_stats_payload(await queue_store.get_user_stats(db, owner_id))


@router.get("/status")
async def processor_status(processor: QueueProcessor = Depends(get_processor)):
    return await processor.status()


@router.post("/process")
@limiter.limit("10/minute")
async def process_queue(
    request: Request,
    owner_id: int = Depends(get_current_owner),
    processor: QueueProcessor = Depends(get_processor),
):
    processor.trigger(owner_id)
    return {"ok": True, "scheduled": True}


@router.post("/retry")
async def retry_all(
    owner_id: int = Depends(get_current_owner),
    processor: QueueProcessor = Depends(get_processor),
):
    outcome = await processor.retry_user_operations(owner_id)
    return {"ok": True, **outcome}


@router.post("/{operation_id}/retry")
async def retry_operation(
    operation_id: UUID,
    owner_id: int = Depends(get_current_owner),
    processor: QueueProcessor = Depends(get_processor),
):
    try:
        outcome = await processor.retry_operation(owner_id, operation_id)
    except queue_store.OperationNotFound:
        raise HTTPException(status_code=404, detail="Operation not found")
    except queue_store.InvalidOperationStatus as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {
        "ok": True,
        "operation": _serialize_operation(outcome["operation"]),
        "summary": outcome["summary"],
    }


@router.post("/{operation_id}/cancel")
async def cancel_operation(
    operation_id: UUID,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
):
    try:
        operation = await queue_store.cancel_operation(db, owner_id, operation_id)
    except queue_store.OperationNotFound:
        raise HTTPException(status_code=404, detail="Operation not found")
    except queue_store.InvalidOperationStatus as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"ok": True, "operation": _serialize_operation(operation)}


@router.delete("/{operation_id}")
async def delete_operation(
    operation_id: UUID,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
):
    try:
        await queue_store.delete_operation(db, owner_id, operation_id)
    except queue_store.OperationNotFound:
        raise HTTPException(status_code=404, detail="Operation not found")
    except queue_store.InvalidOperationStatus as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {"ok": True}


@sync_router.post("/lists")
async def sync_all_lists(
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
    processor: QueueProcessor = Depends(get_processor),
):
    try:
        lists = await service.sync_all_lists(db, owner_id)
    except ListAPIError as exc:
        raise_api_error(exc)
    processor.trigger(owner_id)
    return {"ok": True, "results": lists}


@sync_router.post("/lists/{list_id}")
async def sync_list(
    list_id: int,
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    try:
        list_data = await service.sync_list(db, owner_id, list_id)
    except ListAPIError as exc:
        raise_api_error(exc)
    return {"ok": True, "list": list_data}


@sync_router.get("/status")
async def sync_status(
    owner_id: int = Depends(get_current_owner),
    db: AsyncSession = Depends(get_db),
    service: ListService = Depends(get_list_service),
):
    stats = await queue_store.get_user_stats(db, owner_id)
    return {
        "pending_count": stats["pending_count"],
        "failed_count": stats["failed_count"],
        "last_sync_attempt": _iso(stats["last_sync_attempt"]),
        "cache": service.cache.stats(),
    }
