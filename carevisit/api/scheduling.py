"""Scheduling preview API.

Two-phase visit scheduling: build a preview from an anchor visit and optional
repeat rule, edit it over any number of requests, then commit the selection.
Previews are addressed by id and held in memory until committed, abandoned
or expired.
"""

from fastapi import APIRouter, Depends, HTTPException, Response, status
from loguru import logger

from carevisit.api.dependencies import get_scheduling_service
from carevisit.api.schemas import (
    AcknowledgeRequest,
    BuildPreviewRequest,
    CommitRequest,
    CommitResponse,
    OccurrenceKeysRequest,
    PreviewResponse,
    ReassignStaffRequest,
    parse_keys,
)
from carevisit.scheduling.errors import (
    CommitCancelled,
    CommitTimeout,
    DirectoryUnavailable,
    EmptySelection,
    InvalidRule,
    PartialCommitFailure,
    PreviewConsumed,
    PreviewNotFound,
    RecurrenceTooLarge,
    SchedulingError,
    UnknownConflict,
    UnknownOccurrence,
    UnresolvedConflicts,
)
from carevisit.scheduling.preview import SchedulePreview
from carevisit.scheduling.service import SchedulingService

router = APIRouter(prefix="/api/schedule/previews", tags=["scheduling"])

_STATUS_BY_ERROR: dict[type[SchedulingError], int] = {
    InvalidRule: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RecurrenceTooLarge: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UnknownOccurrence: status.HTTP_409_CONFLICT,
    UnknownConflict: status.HTTP_409_CONFLICT,
    UnresolvedConflicts: status.HTTP_409_CONFLICT,
    EmptySelection: status.HTTP_409_CONFLICT,
    PreviewConsumed: status.HTTP_409_CONFLICT,
    CommitCancelled: status.HTTP_409_CONFLICT,
    PreviewNotFound: status.HTTP_404_NOT_FOUND,
    CommitTimeout: status.HTTP_504_GATEWAY_TIMEOUT,
    PartialCommitFailure: status.HTTP_502_BAD_GATEWAY,
    DirectoryUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _http_error(err: SchedulingError) -> HTTPException:
    status_code = _STATUS_BY_ERROR.get(type(err), status.HTTP_400_BAD_REQUEST)
    return HTTPException(
        status_code=status_code,
        detail={"code": err.code, "message": err.message, "detail": err.detail()},
    )


def _preview_response(service: SchedulingService, preview: SchedulePreview) -> PreviewResponse:
    return PreviewResponse.from_preview(preview, service.config.facility_tz)


@router.post("", response_model=PreviewResponse, status_code=status.HTTP_201_CREATED)
def build_preview(
    request: BuildPreviewRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> PreviewResponse:
    """Expand an anchor visit into a preview with conflicts attached.

    Every generated occurrence starts selected.

    Raises:
        HTTPException: 422 if the anchor or repeat rule is invalid or too large,
            503 if the directory service is unreachable
    """
    logger.info(
        "[SCHEDULING] Build preview requested",
        client_id=request.client_id,
        visit_date=request.visit_date.isoformat(),
        repeat=request.repeat is not None,
    )
    try:
        preview = service.create_preview(request.to_anchor(), request.to_rule())
    except SchedulingError as e:
        raise _http_error(e) from e
    return _preview_response(service, preview)


@router.get("/{preview_id}", response_model=PreviewResponse)
def get_preview(
    preview_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
) -> PreviewResponse:
    try:
        preview = service.get_preview(preview_id)
    except SchedulingError as e:
        raise _http_error(e) from e
    return _preview_response(service, preview)


@router.post("/{preview_id}/select", response_model=PreviewResponse)
def select_occurrences(
    preview_id: str,
    request: OccurrenceKeysRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> PreviewResponse:
    try:
        preview = service.select(preview_id, parse_keys(request.keys))
    except SchedulingError as e:
        raise _http_error(e) from e
    return _preview_response(service, preview)


@router.post("/{preview_id}/deselect", response_model=PreviewResponse)
def deselect_occurrences(
    preview_id: str,
    request: OccurrenceKeysRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> PreviewResponse:
    try:
        preview = service.deselect(preview_id, parse_keys(request.keys))
    except SchedulingError as e:
        raise _http_error(e) from e
    return _preview_response(service, preview)


@router.post("/{preview_id}/remove", response_model=PreviewResponse)
def remove_occurrences(
    preview_id: str,
    request: OccurrenceKeysRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> PreviewResponse:
    """Permanently drop occurrences and their conflicts from the preview."""
    try:
        preview = service.remove(preview_id, parse_keys(request.keys))
    except SchedulingError as e:
        raise _http_error(e) from e
    return _preview_response(service, preview)


@router.post("/{preview_id}/reassign-staff", response_model=PreviewResponse)
def reassign_staff(
    preview_id: str,
    request: ReassignStaffRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> PreviewResponse:
    """Assign (or clear) the staff member on some occurrences and re-check them."""
    try:
        preview = service.reassign_staff(preview_id, parse_keys(request.keys), request.staff_id)
    except SchedulingError as e:
        raise _http_error(e) from e
    return _preview_response(service, preview)


@router.post("/{preview_id}/acknowledge", response_model=PreviewResponse)
def acknowledge_conflicts(
    preview_id: str,
    request: AcknowledgeRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> PreviewResponse:
    try:
        service.acknowledge(preview_id, request.conflict_ids, resolved=request.resolved)
        preview = service.get_preview(preview_id)
    except SchedulingError as e:
        raise _http_error(e) from e
    return _preview_response(service, preview)


@router.post("/{preview_id}/commit", response_model=CommitResponse)
def commit_preview(
    preview_id: str,
    request: CommitRequest,
    service: SchedulingService = Depends(get_scheduling_service),
) -> CommitResponse:
    """Persist the selected occurrences as one batch.

    Raises:
        HTTPException: 409 on validation failure, 504 on timeout (retryable),
            502 with per-occurrence detail when persistence failed
    """
    logger.info("[COMMIT] Commit requested", preview_id=preview_id, subset=request.keys is not None)
    try:
        keys = parse_keys(request.keys) if request.keys is not None else None
        result = service.commit(preview_id, keys, timeout=request.timeout_seconds)
    except SchedulingError as e:
        raise _http_error(e) from e
    return CommitResponse.from_result(result)


@router.delete("/{preview_id}", status_code=status.HTTP_204_NO_CONTENT)
def abandon_preview(
    preview_id: str,
    service: SchedulingService = Depends(get_scheduling_service),
) -> Response:
    try:
        service.abandon(preview_id)
    except SchedulingError as e:
        raise _http_error(e) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)
