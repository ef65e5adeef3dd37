"""Bulk shift scheduling endpoints.

Routes are plain `def` so the blocking service (database I/O, resource
locks) runs in FastAPI's threadpool.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from carebase.api.schemas import BulkScheduleIn
from carebase.scheduling.bulk_service import BulkScheduleService
from carebase.scheduling.contracts import BatchReport, CommitResult
from carebase.scheduling.errors import (
    ConcurrentModification,
    ConflictDetected,
    InsufficientUnits,
    InvalidRecurrenceSpec,
    InvalidTimeRange,
    SchedulingError,
)

router = APIRouter(prefix="/scheduling/bulk", tags=["scheduling"])

_STATUS_BY_ERROR: dict[type[SchedulingError], int] = {
    InvalidRecurrenceSpec: status.HTTP_400_BAD_REQUEST,
    InvalidTimeRange: status.HTTP_400_BAD_REQUEST,
    ConflictDetected: status.HTTP_409_CONFLICT,
    ConcurrentModification: status.HTTP_409_CONFLICT,
    InsufficientUnits: status.HTTP_422_UNPROCESSABLE_ENTITY,
}


def get_bulk_service() -> BulkScheduleService:
    return BulkScheduleService()


def to_http_exception(error: SchedulingError) -> HTTPException:
    """Translate a scheduling error into an HTTPException with a structured detail."""
    status_code = _STATUS_BY_ERROR.get(type(error), status.HTTP_400_BAD_REQUEST)
    detail = error.to_dict()
    detail["retryable"] = error.retryable
    report = getattr(error, "report", None)
    if report is not None:
        detail["report"] = report.model_dump(mode="json")
    return HTTPException(status_code=status_code, detail=detail)


@router.post("/preview", response_model=BatchReport)
def preview_bulk_shifts(
    body: BulkScheduleIn,
    service: BulkScheduleService = Depends(get_bulk_service),
) -> BatchReport:
    """Validate a proposed batch without writing.

    Returns:
        BatchReport with per-occurrence status, conflicts and unit totals

    Raises:
        HTTPException: 400 on malformed recurrence or time range
    """
    logger.info("[BULK] Preview requested", client_id=body.client_id, caregiver_id=body.caregiver_id)
    try:
        return service.preview(body.to_request())
    except SchedulingError as e:
        logger.info("[BULK] Preview rejected", code=e.code, message=e.message)
        raise to_http_exception(e) from e


@router.post("", response_model=CommitResult, status_code=status.HTTP_201_CREATED)
def commit_bulk_shifts(
    body: BulkScheduleIn,
    service: BulkScheduleService = Depends(get_bulk_service),
) -> CommitResult:
    """Re-validate and create the batch.

    Raises:
        HTTPException: 400 malformed input, 409 conflicts or stale preview,
            422 insufficient authorization units
    """
    logger.info(
        "[BULK] Commit requested",
        client_id=body.client_id,
        caregiver_id=body.caregiver_id,
        skip_conflicts=body.skip_conflicts,
    )
    try:
        return service.commit(body.to_request())
    except SchedulingError as e:
        logger.info("[BULK] Commit rejected", code=e.code, message=e.message)
        raise to_http_exception(e) from e
