"""
Request handlers for the lifecycle's external operations.

Handlers take plain request mappings and return an ApiResponse carrying an
HTTP status code and a JSON-ready body, so any web framework (or the CLI)
can host them. Request keys are accepted in snake_case or camelCase.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ..core.exceptions import (
    AlreadyCompletedError,
    ConflictError,
    CooldownActiveError,
    DuplicateSnapshotError,
    ExternalServiceError,
    LockConflictError,
    NotFoundError,
    RetryBudgetExceededError,
    ValidationError,
)
from ..core.utils import to_iso
from ..export.jsonl import PREVIEW_LIMIT
from ..service import FineTuneService


logger = logging.getLogger(__name__)


@dataclass
class ApiResponse:
    """HTTP-equivalent response."""
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)
    
    @property
    def ok(self) -> bool:
        return self.status_code < 400


def _field(request: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        value = request.get(name)
        if value is not None:
            return value
    return default


def error_response(error: Exception) -> ApiResponse:
    """Map an exception to its HTTP-equivalent response."""
    body: Dict[str, Any] = {"error": str(error)}
    
    if isinstance(error, ValidationError):
        if error.validation_errors:
            body["details"] = list(error.validation_errors)
        return ApiResponse(400, body)
    if isinstance(error, NotFoundError):
        return ApiResponse(404, body)
    if isinstance(error, DuplicateSnapshotError):
        if error.expires_at is not None:
            body["locked"] = True
            body["expiresAt"] = to_iso(error.expires_at)
        return ApiResponse(423, body)
    if isinstance(error, LockConflictError):
        if error.expires_at is not None:
            body["expiresAt"] = to_iso(error.expires_at)
        return ApiResponse(409, body)
    if isinstance(error, CooldownActiveError):
        if error.retry_after_seconds is not None:
            body["retryAfterSeconds"] = round(error.retry_after_seconds)
        return ApiResponse(429, body)
    if isinstance(error, RetryBudgetExceededError):
        return ApiResponse(429, body)
    if isinstance(error, (AlreadyCompletedError, ConflictError)):
        return ApiResponse(409, body)
    if isinstance(error, ExternalServiceError):
        return ApiResponse(502, body)
    
    logger.exception(f"Unhandled error: {error}")
    return ApiResponse(500, {"error": "Internal Server Error"})


class FineTuneApi:
    """
    Handlers for create, duplicate check, preview, retry, lock override and poll.
    
    Example:
        >>> api = FineTuneApi(service)
        >>> api.create_snapshot({"filters": {"emotions": ["joy"]}, "name": "joy"}, user_id="u1")
        ApiResponse(status_code=200, body={'success': True, 'jobId': 'ftjob-1', ...})
    """
    
    def __init__(self, service: FineTuneService):
        self.service = service
    
    def create_snapshot(self, request: Mapping[str, Any], user_id: str) -> ApiResponse:
        """Body: ``{filters|filterSpec, name, modelHint?}``."""
        try:
            result = self.service.builder.create(
                _field(request, "filters", "filter_spec", "filterSpec"),
                name=_field(request, "name"),
                created_by=user_id,
                model_hint=_field(request, "model_hint", "modelHint"),
            )
        except Exception as e:
            return error_response(e)
        
        return ApiResponse(200, {
            "success": True,
            "jobId": result.job_id,
            "exportRef": result.export_ref,
            "snapshotId": result.snapshot.snapshot_id,
            "version": result.snapshot.version,
            "exampleCount": result.example_count,
        })
    
    def check_duplicate(self, request: Mapping[str, Any]) -> ApiResponse:
        """Body: ``{filters|filterSpec}``. Read-only."""
        try:
            check = self.service.builder.check_duplicate(
                _field(request, "filters", "filter_spec", "filterSpec")
            )
        except Exception as e:
            return error_response(e)
        return ApiResponse(200, check.to_dict())
    
    def preview_export(self, request: Mapping[str, Any]) -> ApiResponse:
        """Body: ``{filters|filterSpec, limit?}``. Read-only."""
        try:
            preview = self.service.builder.preview(
                _field(request, "filters", "filter_spec", "filterSpec"),
                limit=_field(request, "limit", default=PREVIEW_LIMIT),
            )
        except Exception as e:
            return error_response(e)
        return ApiResponse(200, preview.to_dict())
    
    def retry_job(self, request: Mapping[str, Any], user_id: Optional[str] = None) -> ApiResponse:
        """Body: ``{snapshotId?, jobId?, retryReason?, autoRetry?, retryOrigin?}``."""
        try:
            outcome = self.service.orchestrator.retry(
                snapshot_id=_field(request, "snapshot_id", "snapshotId"),
                job_id=_field(request, "job_id", "jobId"),
                retry_reason=_field(request, "retry_reason", "retryReason"),
                retry_origin=_field(request, "retry_origin", "retryOrigin"),
                auto_retry=bool(_field(request, "auto_retry", "autoRetry", default=False)),
                requested_by=user_id,
            )
        except Exception as e:
            return error_response(e)
        
        return ApiResponse(200, {
            "success": True,
            "jobId": outcome.job_id,
            "snapshotId": outcome.snapshot_id,
            "retryCount": outcome.retry_count,
            "version": outcome.version,
        })
    
    def override_lock(self, request: Mapping[str, Any]) -> ApiResponse:
        """Body: ``{snapshotId}``. Administrative; no business validation."""
        snapshot_id = _field(request, "snapshot_id", "snapshotId")
        if not snapshot_id:
            return error_response(ValidationError("Missing snapshot_id"))
        try:
            deleted = self.service.locks.override(snapshot_id)
        except Exception as e:
            return error_response(e)
        return ApiResponse(200, {"success": True, "deleted": deleted})
    
    def trigger_poll(self) -> ApiResponse:
        """Run one reconciliation pass."""
        try:
            report = self.service.poller.run()
        except Exception as e:
            return error_response(e)
        return ApiResponse(200, {"success": True, **report.to_dict()})
