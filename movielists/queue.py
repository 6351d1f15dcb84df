"""Durable queue of list operations waiting for the remote list API.

Records move through ``pending -> in_progress -> completed``; a failed attempt
lands in ``failed`` with a backoff deadline and becomes eligible again once
``next_eligible_at`` passes. Exhausted or unrecoverable records end in
``failed_permanent``. Every status change is a conditional UPDATE on the
expected prior status, so two processors can never act on the same record.
"""

import logging
import uuid
from datetime import timedelta

from sqlalchemy import and_, delete, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from .config import QueueSettings, queue_settings
from .errors import SessionExpired, is_credential_error, is_transient, reason_for
from .models import QueuedOperation, as_utc, utc_now
from .operations import (
    ADD_MOVIE,
    CREATE_LIST,
    LIST_SCOPED_TYPES,
    REMOVE_MOVIE,
    OperationPayload,
    dump_payload,
    parse_payload,
)

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_FAILED_PERMANENT = "failed_permanent"
STATUS_CANCELLED = "cancelled"

STATUSES = (
    STATUS_PENDING,
    STATUS_IN_PROGRESS,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_FAILED_PERMANENT,
    STATUS_CANCELLED,
)
ELIGIBLE_STATUSES = (STATUS_PENDING, STATUS_FAILED)
ACTIVE_STATUSES = (STATUS_PENDING, STATUS_FAILED, STATUS_IN_PROGRESS)
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED_PERMANENT, STATUS_CANCELLED)
RETRYABLE_STATUSES = (STATUS_FAILED, STATUS_FAILED_PERMANENT)

MAX_ERROR_LENGTH = 2000


class QueueError(Exception):
    pass


class OperationNotFound(QueueError):
    pass


class InvalidOperationStatus(QueueError):
    def __init__(self, status: str, action: str):
        super().__init__(f"Cannot {action} an operation in status '{status}'")
        self.status = status
        self.action = action


def retry_delay_seconds(retry_count: int, settings: QueueSettings | None = None) -> int:
    # retry_count starts at 1 (first failed attempt).
    settings = settings or queue_settings
    attempt = max(int(retry_count), 1)
    delay = settings.base_delay_seconds * (2 ** (attempt - 1))
    return min(delay, settings.max_delay_seconds)


async def _find_duplicate(
    db: AsyncSession,
    operation_type: str,
    owner_id: int,
    target_list_id: int | None,
    payload: OperationPayload,
) -> QueuedOperation | None:
    # Only the newest active record on the list can absorb a repeat; anything
    # queued after an earlier match changes what the repeat means.
    if operation_type not in (CREATE_LIST, ADD_MOVIE, REMOVE_MOVIE):
        return None
    query = select(QueuedOperation).where(
        QueuedOperation.owner_id == owner_id,
        QueuedOperation.status.in_(ACTIVE_STATUSES),
    )
    if operation_type == CREATE_LIST:
        query = query.where(QueuedOperation.target_list_id.is_(None))
    else:
        query = query.where(QueuedOperation.target_list_id == target_list_id)
    latest = (
        await db.execute(query.order_by(QueuedOperation.created_at.desc()).limit(1))
    ).scalar_one_or_none()
    if latest is None or latest.status != STATUS_PENDING or latest.operation_type != operation_type:
        return None
    data = latest.payload or {}
    field_name = "name" if operation_type == CREATE_LIST else "movie_id"
    if data.get(field_name) == getattr(payload, field_name, None):
        return latest
    return None


async def enqueue_operation(
    db: AsyncSession,
    operation_type: str,
    owner_id: int,
    target_list_id: int | None,
    payload: OperationPayload | dict,
) -> QueuedOperation:
    if isinstance(payload, dict):
        payload = parse_payload(operation_type, payload)
    elif payload.operation_type != operation_type:
        raise ValueError(f"Payload for {payload.operation_type} given to {operation_type}")
    if operation_type in LIST_SCOPED_TYPES and target_list_id is None:
        raise ValueError(f"{operation_type} requires a target list id")

    existing = await _find_duplicate(db, operation_type, owner_id, target_list_id, payload)
    if existing is not None:
        logger.info(
            "Duplicate %s operation for owner %s, reusing %s",
            operation_type, owner_id, existing.id,
        )
        return existing

    now = utc_now()
    operation = QueuedOperation(
        id=uuid.uuid4(),
        operation_type=operation_type,
        owner_id=owner_id,
        target_list_id=None if operation_type == CREATE_LIST else target_list_id,
        payload=dump_payload(payload),
        status=STATUS_PENDING,
        retry_count=0,
        next_eligible_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(operation)
    await db.commit()
    logger.info(
        "Enqueued %s operation %s (owner=%s, list=%s)",
        operation_type, operation.id, owner_id, target_list_id,
    )
    return operation


async def get_operation(db: AsyncSession, operation_id: uuid.UUID) -> QueuedOperation | None:
    return await db.get(QueuedOperation, operation_id, populate_existing=True)


async def _get_owned(db: AsyncSession, owner_id: int, operation_id: uuid.UUID) -> QueuedOperation:
    operation = await get_operation(db, operation_id)
    if operation is None or operation.owner_id != owner_id:
        raise OperationNotFound(str(operation_id))
    return operation


async def claim_operation(db: AsyncSession, operation_id: uuid.UUID) -> QueuedOperation | None:
    """Atomically move an eligible record to ``in_progress``.

    Returns the claimed record, or ``None`` if another run got there first,
    the record is not eligible yet, or a sibling with the same
    (owner, list, type) is already in progress.
    """
    now = utc_now()
    sibling = aliased(QueuedOperation)
    sibling_running = exists().where(
        sibling.owner_id == QueuedOperation.owner_id,
        sibling.target_list_id.is_not_distinct_from(QueuedOperation.target_list_id),
        sibling.operation_type == QueuedOperation.operation_type,
        sibling.status == STATUS_IN_PROGRESS,
        sibling.id != QueuedOperation.id,
    )
    result = await db.execute(
        update(QueuedOperation)
        .where(
            QueuedOperation.id == operation_id,
            QueuedOperation.status.in_(ELIGIBLE_STATUSES),
            QueuedOperation.next_eligible_at <= now,
            ~sibling_running,
        )
        .values(status=STATUS_IN_PROGRESS, last_attempted_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        logger.debug("Claim lost for operation %s", operation_id)
        return None
    operation = await get_operation(db, operation_id)
    logger.info(
        "Claimed %s operation %s (owner=%s, attempt=%s)",
        operation.operation_type, operation.id, operation.owner_id, operation.retry_count + 1,
    )
    return operation


async def mark_completed(db: AsyncSession, operation: QueuedOperation) -> bool:
    now = utc_now()
    result = await db.execute(
        update(QueuedOperation)
        .where(QueuedOperation.id == operation.id, QueuedOperation.status == STATUS_IN_PROGRESS)
        .values(status=STATUS_COMPLETED, error_message=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(operation)
    if result.rowcount != 1:
        logger.warning("Operation %s was not in progress when completing", operation.id)
        return False
    logger.info("Operation %s completed (owner=%s)", operation.id, operation.owner_id)
    return True


def next_failure_state(
    retry_count: int,
    exc: BaseException,
    settings: QueueSettings | None = None,
) -> tuple[str, int | None]:
    """Status and backoff delay after a failed attempt.

    ``retry_count`` is the count including the attempt that just failed.
    """
    settings = settings or queue_settings
    if is_credential_error(exc) or not is_transient(exc):
        return STATUS_FAILED_PERMANENT, None
    if retry_count > settings.max_retries:
        return STATUS_FAILED_PERMANENT, None
    return STATUS_FAILED, retry_delay_seconds(retry_count, settings)


async def mark_failed(
    db: AsyncSession,
    operation: QueuedOperation,
    exc: BaseException,
    settings: QueueSettings | None = None,
) -> str:
    now = utc_now()
    retry_count = (operation.retry_count or 0) + 1
    status, delay = next_failure_state(retry_count, exc, settings)
    message = f"{reason_for(exc)}: {exc}"[:MAX_ERROR_LENGTH]
    values = {
        "status": status,
        "retry_count": retry_count,
        "error_message": message,
        "updated_at": now,
    }
    if delay is not None:
        values["next_eligible_at"] = now + timedelta(seconds=delay)

    result = await db.execute(
        update(QueuedOperation)
        .where(QueuedOperation.id == operation.id, QueuedOperation.status == STATUS_IN_PROGRESS)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(operation)
    if result.rowcount != 1:
        logger.warning("Operation %s was not in progress when recording failure", operation.id)
        return operation.status

    if status == STATUS_FAILED:
        logger.warning(
            "Operation %s failed (owner=%s, retry_count=%s, reason=%s); retrying in %ss",
            operation.id, operation.owner_id, retry_count, reason_for(exc), delay,
        )
    elif is_credential_error(exc):
        logger.warning(
            "Operation %s needs re-authentication (owner=%s); marked failed_permanent",
            operation.id, operation.owner_id,
        )
    else:
        logger.error(
            "Operation %s failed permanently (owner=%s, retry_count=%s, reason=%s)",
            operation.id, operation.owner_id, retry_count, reason_for(exc),
        )
    return status


async def release_claim(db: AsyncSession, operation: QueuedOperation, reason: str) -> bool:
    """Hand an interrupted attempt back to the queue, eligible immediately.

    The retry count is left alone: the attempt never reported an outcome.
    """
    now = utc_now()
    result = await db.execute(
        update(QueuedOperation)
        .where(QueuedOperation.id == operation.id, QueuedOperation.status == STATUS_IN_PROGRESS)
        .values(
            status=STATUS_FAILED,
            error_message=f"interrupted: {reason}"[:MAX_ERROR_LENGTH],
            next_eligible_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(operation)
    if result.rowcount != 1:
        return False
    logger.warning("Operation %s released after interruption (owner=%s): %s", operation.id, operation.owner_id, reason)
    return True


async def recover_stale_claims(db: AsyncSession, lease_seconds: float) -> int:
    """Release ``in_progress`` records whose claim is older than the lease."""
    now = utc_now()
    cutoff = now - timedelta(seconds=lease_seconds)
    result = await db.execute(
        update(QueuedOperation)
        .where(
            QueuedOperation.status == STATUS_IN_PROGRESS,
            QueuedOperation.last_attempted_at < cutoff,
        )
        .values(
            status=STATUS_FAILED,
            error_message="interrupted: claim expired",
            next_eligible_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    recovered = int(result.rowcount or 0)
    if recovered:
        logger.warning("Recovered %s operations stuck in progress", recovered)
    return recovered


async def has_active_operations(db: AsyncSession, owner_id: int, list_id: int) -> bool:
    """Whether earlier mutations on this list are still waiting to reach the remote."""
    found = await db.scalar(
        select(QueuedOperation.id)
        .where(
            QueuedOperation.owner_id == owner_id,
            QueuedOperation.target_list_id == list_id,
            QueuedOperation.status.in_(ACTIVE_STATUSES),
        )
        .limit(1)
    )
    return found is not None


async def get_active_operations(
    db: AsyncSession,
    owner_id: int | None = None,
    limit: int | None = None,
) -> list[QueuedOperation]:
    """Non-terminal records, oldest first, optionally for one owner."""
    query = select(QueuedOperation).where(QueuedOperation.status.in_(ACTIVE_STATUSES))
    if owner_id is not None:
        query = query.where(QueuedOperation.owner_id == owner_id)
    query = query.order_by(QueuedOperation.created_at.asc())
    if limit:
        query = query.limit(limit)
    return list((await db.execute(query)).scalars().all())


def is_ready(operation: QueuedOperation, now=None) -> bool:
    now = now or utc_now()
    return operation.status in ELIGIBLE_STATUSES and as_utc(operation.next_eligible_at) <= now


async def get_user_operations(
    db: AsyncSession,
    owner_id: int,
    status: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[QueuedOperation], int]:
    conditions = [QueuedOperation.owner_id == owner_id]
    if status:
        conditions.append(QueuedOperation.status == status)
    total = await db.scalar(select(func.count(QueuedOperation.id)).where(*conditions))
    rows = (
        await db.execute(
            select(QueuedOperation)
            .where(*conditions)
            .order_by(QueuedOperation.created_at.desc())
            .offset(max(page - 1, 0) * per_page)
            .limit(per_page)
        )
    ).scalars().all()
    return list(rows), int(total or 0)


async def cancel_operation(db: AsyncSession, owner_id: int, operation_id: uuid.UUID) -> QueuedOperation:
    operation = await _get_owned(db, owner_id, operation_id)
    result = await db.execute(
        update(QueuedOperation)
        .where(QueuedOperation.id == operation.id, QueuedOperation.status.in_(ELIGIBLE_STATUSES))
        .values(status=STATUS_CANCELLED, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(operation)
    if result.rowcount != 1:
        raise InvalidOperationStatus(operation.status, "cancel")
    logger.info("Operation %s cancelled by owner %s", operation.id, owner_id)
    return operation


async def reset_for_retry(db: AsyncSession, owner_id: int, operation_id: uuid.UUID) -> QueuedOperation:
    """Make a failed record eligible now with a fresh retry budget."""
    operation = await _get_owned(db, owner_id, operation_id)
    now = utc_now()
    result = await db.execute(
        update(QueuedOperation)
        .where(QueuedOperation.id == operation.id, QueuedOperation.status.in_(RETRYABLE_STATUSES))
        .values(status=STATUS_PENDING, retry_count=0, next_eligible_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(operation)
    if result.rowcount != 1:
        raise InvalidOperationStatus(operation.status, "retry")
    logger.info("Operation %s reset for manual retry by owner %s", operation.id, owner_id)
    return operation


async def reset_user_failed(db: AsyncSession, owner_id: int) -> int:
    """Make every failed record of an owner eligible now. Returns the count."""
    now = utc_now()
    result = await db.execute(
        update(QueuedOperation)
        .where(QueuedOperation.owner_id == owner_id, QueuedOperation.status.in_(RETRYABLE_STATUSES))
        .values(status=STATUS_PENDING, retry_count=0, next_eligible_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("Reset %s failed operations for owner %s", result.rowcount, owner_id)
    return int(result.rowcount or 0)


async def reset_session_expired(db: AsyncSession, owner_id: int) -> int:
    """Requeue an owner's records that gave up only because the session expired."""
    now = utc_now()
    result = await db.execute(
        update(QueuedOperation)
        .where(
            QueuedOperation.owner_id == owner_id,
            QueuedOperation.status == STATUS_FAILED_PERMANENT,
            QueuedOperation.error_message.like(f"{SessionExpired.reason}:%"),
        )
        .values(status=STATUS_PENDING, retry_count=0, next_eligible_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.info("Requeued %s operations for owner %s after session restore", result.rowcount, owner_id)
    return int(result.rowcount or 0)


async def delete_operation(db: AsyncSession, owner_id: int, operation_id: uuid.UUID) -> None:
    operation = await _get_owned(db, owner_id, operation_id)
    result = await db.execute(
        delete(QueuedOperation)
        .where(QueuedOperation.id == operation.id, QueuedOperation.status.in_(TERMINAL_STATUSES))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        await db.refresh(operation)
        raise InvalidOperationStatus(operation.status, "delete")
    logger.info("Operation %s deleted by owner %s", operation_id, owner_id)


async def _status_counts(db: AsyncSession, *conditions) -> dict[str, int]:
    rows = (
        await db.execute(
            select(QueuedOperation.status, func.count(QueuedOperation.id))
            .where(*conditions)
            .group_by(QueuedOperation.status)
        )
    ).all()
    counts = {status: 0 for status in STATUSES}
    counts.update({status: int(count) for status, count in rows})
    return counts


async def get_queue_stats(db: AsyncSession) -> dict:
    counts = await _status_counts(db)
    return {**counts, "total": sum(counts.values())}


async def get_user_stats(db: AsyncSession, owner_id: int) -> dict:
    owner_filter = QueuedOperation.owner_id == owner_id
    counts = await _status_counts(db, owner_filter)

    type_rows = (
        await db.execute(
            select(QueuedOperation.operation_type, func.count(QueuedOperation.id))
            .where(owner_filter)
            .group_by(QueuedOperation.operation_type)
        )
    ).all()
    retry_row = (
        await db.execute(
            select(
                func.count(QueuedOperation.id).filter(QueuedOperation.retry_count > 0),
                func.avg(QueuedOperation.retry_count),
                func.max(QueuedOperation.retry_count),
                func.max(QueuedOperation.last_attempted_at),
            ).where(owner_filter)
        )
    ).one()
    with_retries, avg_retries, max_retries, last_attempt = retry_row

    return {
        "pending_count": counts[STATUS_PENDING] + counts[STATUS_FAILED] + counts[STATUS_IN_PROGRESS],
        "failed_count": counts[STATUS_FAILED_PERMANENT],
        "by_status": counts,
        "by_type": {operation_type: int(count) for operation_type, count in type_rows},
        "total": sum(counts.values()),
        "operations_with_retries": int(with_retries or 0),
        "average_retry_count": round(float(avg_retries or 0), 2),
        "max_retry_count": int(max_retries or 0),
        "last_sync_attempt": as_utc(last_attempt),
    }


async def cleanup_old_operations(db: AsyncSession, days_old: int | None = None) -> int:
    days_old = queue_settings.retention_days if days_old is None else days_old
    cutoff = utc_now() - timedelta(days=days_old)
    result = await db.execute(
        delete(QueuedOperation)
        .where(and_(QueuedOperation.status.in_(TERMINAL_STATUSES), QueuedOperation.updated_at < cutoff))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    deleted = int(result.rowcount or 0)
    if deleted:
        logger.info("Cleaned up %s old queued operations", deleted)
    return deleted
