"""
API routes for DualStore.

Internal (bearer token):
    POST|GET /api/internal/outbox/flush?limit=N
    GET      /api/internal/outbox/failed
    POST     /api/internal/outbox/{key}/requeue

Operator (bearer token):
    GET      /api/v1/conflicts
    POST     /api/v1/conflicts/{id}/resolve

Public:
    GET      /api/v1/records/{table}
    GET      /api/v1/records/{table}/{record_id}
    PUT      /api/v1/records/{table}/{record_id}
    DELETE   /api/v1/records/{table}/{record_id}

Error mapping (see app.py): ValidationError -> 400, UnauthorizedError ->
401, NotFoundError -> 404, StoreError -> 503.
"""

import hmac
import json
import logging
import re
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request, Response
from pydantic import BaseModel, Field

from ..cache.layer import CacheResult
from ..errors import NotFoundError, UnauthorizedError, ValidationError
from ..outbox.models import OutboxStatus
from ..routing.models import ReadDescriptor, WriteDescriptor
from ..service import DualStoreService
from .settings import HttpSettings

logger = logging.getLogger(__name__)

DEFAULT_FLUSH_LIMIT = 100
MAX_FLUSH_LIMIT = 500

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")

internal_router = APIRouter(prefix="/api/internal/outbox", tags=["Outbox"])
router = APIRouter(tags=["DualStore"])


# --- Request/Response Models ---


class ResolveRequest(BaseModel):
    """Request to resolve a conflict.

    The resolution is validated by the resolver so an invalid value is a
    400, not a schema error.
    """

    resolution: Any = Field(None, description="server-wins, client-wins or merge")


class WriteRequest(BaseModel):
    """Request to upsert a record."""

    payload: dict[str, Any] = Field(..., description="Record body")
    mutation: str = Field(..., description="Mutation kind selecting the cache scopes to invalidate")
    affected_user_ids: list[str] = Field(default_factory=list, description="Other affected users")
    write_version: str | None = Field(None, description="Version of the logical write")


class FlushResponse(BaseModel):
    ok: bool
    drained: int
    succeeded: int
    failed: int
    retried: int
    dead_lettered: int
    skipped: int


# --- Helpers ---


def clamp_limit(
    raw: str | None,
    default: int = DEFAULT_FLUSH_LIMIT,
    maximum: int = MAX_FLUSH_LIMIT,
) -> int:
    """Parse a limit parameter leniently and clamp it to [1, maximum].

    The leading integer is used ("12abc" -> 12); a missing or unparsable
    value yields the default.
    """
    if not raw:
        return default
    match = _LEADING_INT.match(raw)
    if match is None:
        return default
    return max(1, min(maximum, int(match.group(1))))


def parse_filter_value(raw: str) -> Any:
    """Parse a query-string filter value.

    JSON scalars are decoded ("5" -> 5, "true" -> True, "null" -> None) so
    filters match numeric and boolean fields. Anything else, including
    invalid JSON, is the literal string; quote it ('"5"') to match a string.
    """
    try:
        value = json.loads(raw)
    except ValueError:
        return raw
    if isinstance(value, (dict, list)):
        return raw
    return value


def _with_cache_headers(response: Response, result: CacheResult[Any]) -> None:
    response.headers["X-Cache-Status"] = result.status.value
    response.headers["Server-Timing"] = result.server_timing()


# --- Dependencies ---


def get_service(request: Request) -> DualStoreService:
    """Get the service from app state."""
    return request.app.state.service


def get_settings(request: Request) -> HttpSettings:
    return request.app.state.settings


def _check_bearer(request: Request, secret: str | None) -> None:
    """Compare the request's bearer token with secret in constant time.

    Every failure, including a missing secret, is the same 401.
    """
    if not secret or not secret.strip():
        raise UnauthorizedError()

    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError()

    if not hmac.compare_digest(token.strip().encode("utf-8"), secret.strip().encode("utf-8")):
        raise UnauthorizedError()


def require_cron_secret(request: Request, settings: HttpSettings = Depends(get_settings)) -> None:
    """Check the bearer token of internal endpoints."""
    if not settings.has_cron_secret:
        logger.warning("Internal endpoint called but no outbox secret is configured")
    _check_bearer(request, settings.outbox_cron_secret)


def require_operator(request: Request, settings: HttpSettings = Depends(get_settings)) -> None:
    """Check the bearer token of conflict endpoints."""
    if not settings.has_operator_token:
        logger.warning("Conflict endpoint called but no operator token is configured")
    _check_bearer(request, settings.operator_token)


def get_actor(request: Request, settings: HttpSettings = Depends(get_settings)) -> str:
    """Get actor from the X-Actor header (conflict routes require the operator token)."""
    return request.headers.get("X-Actor") or settings.default_actor


def get_user_id(request: Request) -> str:
    """Get the caller's user id from the X-User-ID header.

    Raises:
        ValidationError: If the header is missing
    """
    user_id = (request.headers.get("X-User-ID") or "").strip()
    if not user_id:
        raise ValidationError("X-User-ID header is required", field_name="X-User-ID")
    return user_id


# --- Outbox Routes ---


@internal_router.api_route(
    "/flush",
    methods=["GET", "POST"],
    response_model=FlushResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def flush_outbox(
    limit: str | None = Query(None, description="Entries to drain (1-500, default 100)"),
    service: DualStoreService = Depends(get_service),
):
    """
    Drain pending outbox entries into their destination stores.

    Intended to be called by a scheduler.
    """
    outbox_config = service.config.outbox
    result = await service.flush(
        clamp_limit(limit, default=outbox_config.default_flush_limit, maximum=outbox_config.max_flush_limit)
    )
    return {"ok": True, **result.to_dict()}


@internal_router.get("/failed", dependencies=[Depends(require_cron_secret)])
async def list_failed_entries(
    limit: int = Query(100, ge=1, le=500, description="Maximum entries"),
    service: DualStoreService = Depends(get_service),
):
    """List outbox entries that need operator attention."""
    entries = await service.outbox.list_by_status(OutboxStatus.FAILED, limit=limit)
    return {"entries": [entry.to_dict() for entry in entries], "count": len(entries)}


@internal_router.post("/{key}/requeue", dependencies=[Depends(require_cron_secret)])
async def requeue_entry(
    key: str,
    service: DualStoreService = Depends(get_service),
):
    """Return a failed entry to pending with a fresh retry budget."""
    entry = await service.outbox.requeue(key)
    return entry.to_dict()


# --- Conflict Routes ---


@router.get("/conflicts", dependencies=[Depends(require_operator)])
async def list_conflicts(
    entity_type: str | None = Query(None, description="Filter by entity type"),
    limit: int = Query(100, ge=1, le=500, description="Maximum conflicts"),
    service: DualStoreService = Depends(get_service),
):
    """List open conflicts, oldest first."""
    conflicts = await service.ledger.list_open(entity_type=entity_type, limit=limit)
    return {"conflicts": [c.to_dict() for c in conflicts], "count": len(conflicts)}


@router.post("/conflicts/{conflict_id}/resolve", dependencies=[Depends(require_operator)])
async def resolve_conflict(
    conflict_id: str,
    body: ResolveRequest | None = Body(None),
    actor: str = Depends(get_actor),
    service: DualStoreService = Depends(get_service),
):
    """
    Resolve an open conflict.

    An invalid resolution is rejected before any store is written. A store
    failure leaves the conflict open.
    """
    resolution = body.resolution if body is not None else None
    outcome = await service.resolver.resolve(conflict_id, resolution, actor)
    return {
        "message": "Conflict resolved successfully",
        "conflict": outcome.conflict.to_dict(),
    }


# --- Record Routes ---


_RESERVED_PARAMS = {"scope", "limit"}


@router.get("/records/{table}")
async def list_records(
    table: str,
    request: Request,
    response: Response,
    scope: str | None = Query(None, description="Cache scope (defaults to the table name)"),
    limit: int = Query(50, ge=1, le=500, description="Maximum records"),
    user_id: str = Depends(get_user_id),
    service: DualStoreService = Depends(get_service),
):
    """
    Query records through the cache.

    Query parameters other than scope and limit are equality filters; see
    parse_filter_value for how values are typed.
    """
    filters = {
        name: parse_filter_value(value)
        for name, value in request.query_params.items()
        if name not in _RESERVED_PARAMS
    }
    descriptor = ReadDescriptor(table=table, filters=filters or None, limit=limit)
    result = await service.cached_read(descriptor, scope or table, user_id)
    _with_cache_headers(response, result)
    return {"items": result.data, "count": len(result.data)}


@router.get("/records/{table}/{record_id}")
async def get_record(
    table: str,
    record_id: str,
    response: Response,
    scope: str | None = Query(None, description="Cache scope (defaults to the table name)"),
    user_id: str = Depends(get_user_id),
    service: DualStoreService = Depends(get_service),
):
    """Read one record through the cache."""
    descriptor = ReadDescriptor(table=table, record_id=record_id)
    result = await service.cached_read(descriptor, scope or table, user_id)
    if result.data is None:
        raise NotFoundError(f"Record {table}/{record_id} not found", kind="record", identifier=record_id)
    _with_cache_headers(response, result)
    return result.data


@router.put("/records/{table}/{record_id}")
async def put_record(
    table: str,
    record_id: str,
    body: WriteRequest,
    user_id: str = Depends(get_user_id),
    service: DualStoreService = Depends(get_service),
):
    """Upsert a record and invalidate the affected users' cache scopes."""
    result = await service.mutate(
        WriteDescriptor.upsert(table, record_id, body.payload, write_version=body.write_version),
        body.mutation,
        [user_id, *body.affected_user_ids],
    )
    return result.to_dict()


@router.delete("/records/{table}/{record_id}")
async def delete_record(
    table: str,
    record_id: str,
    mutation: str = Query(..., description="Mutation kind"),
    affected_user_id: list[str] | None = Query(None, description="Other affected users"),
    user_id: str = Depends(get_user_id),
    service: DualStoreService = Depends(get_service),
):
    """Delete a record and invalidate the affected users' cache scopes."""
    result = await service.mutate(
        WriteDescriptor.delete(table, record_id),
        mutation,
        [user_id, *(affected_user_id or [])],
    )
    return result.to_dict()
