from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from flask import Blueprint, current_app, request
from pydantic import ValidationError
from werkzeug.exceptions import BadRequest

from app.api.schemas import (
    HealthResponse,
    PasteCreateRequest,
    PasteCreateResponse,
    PasteFetchResponse,
)
from app.domain.errors import (
    BackendUnavailableError,
    ContentionExceededError,
    IdCollisionError,
    InvalidPasteParameters,
    PasteUnavailableError,
)
from app.observability import get_correlation_id
from app.services.paste_store import PasteStore
from app.services.views import paste_to_fetch_dto


logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__, url_prefix="/api")

INTERNAL_ERRORS = (BackendUnavailableError, ContentionExceededError, IdCollisionError)


def get_paste_store() -> PasteStore:
    return current_app.extensions["paste_store"]


def request_now_ms() -> int:
    """
    Current time for this request, in epoch milliseconds.

    With ``TEST_MODE`` enabled an integer ``x-test-now-ms`` header (name set by
    ``TEST_NOW_HEADER``) overrides the clock; anything else falls back to it.
    """

    if current_app.config.get("TEST_MODE"):
        raw = request.headers.get(current_app.config.get("TEST_NOW_HEADER", "x-test-now-ms"))
        if raw is not None:
            try:
                return int(raw)
            except ValueError:
                pass
    return get_paste_store().clock.now_ms()


def share_url(paste_id: str) -> str:
    base = current_app.config.get("PUBLIC_BASE_URL") or request.host_url
    return f"{base.rstrip('/')}/p/{paste_id}"


def _validate_create_request(body: Any) -> PasteCreateRequest:
    try:
        return PasteCreateRequest.model_validate(body)
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}"
            for error in exc.errors()
        )
        raise InvalidPasteParameters(details) from exc


def _internal_error(exc: Exception, event: str) -> tuple[dict[str, Any], int]:
    logger.exception(
        "Paste operation failed",
        extra={
            "event": event,
            "error_type": type(exc).__name__,
            "correlation_id": get_correlation_id(),
        },
    )
    return {"error": "Internal server error"}, HTTPStatus.INTERNAL_SERVER_ERROR


@api_bp.route("/healthz", methods=["GET"])
def healthz() -> tuple[dict, int]:
    """Report whether the key-value backend answers a ping."""

    backend = current_app.extensions["kv_backend"]
    if backend.ping():
        return HealthResponse().model_dump(exclude_none=True), HTTPStatus.OK

    logger.warning(
        "Health check failed: backend unreachable",
        extra={"event": "health_degraded", "correlation_id": get_correlation_id()},
    )
    body = HealthResponse(ok=False, error="Backend unavailable").model_dump()
    return body, HTTPStatus.SERVICE_UNAVAILABLE


@api_bp.route("/pastes", methods=["POST"])
def create_paste() -> tuple[dict, int]:
    """
    Create a new paste.

    Validation is handled by Pydantic; lifecycle rules by the paste store.
    """
    try:
        body = request.get_json(force=True)
    except BadRequest:
        return {"error": "Invalid JSON"}, HTTPStatus.BAD_REQUEST

    try:
        payload = _validate_create_request(body)
    except InvalidPasteParameters as exc:
        return {"error": "Invalid input", "details": str(exc)}, HTTPStatus.BAD_REQUEST

    try:
        paste_id = get_paste_store().create(
            content=payload.content,
            ttl_seconds=payload.ttl_seconds,
            max_views=payload.max_views,
            now_ms=request_now_ms(),
        )
    except INTERNAL_ERRORS as exc:
        return _internal_error(exc, "paste_create_failed")

    response = PasteCreateResponse(id=paste_id, url=share_url(paste_id))
    return response.model_dump(), HTTPStatus.CREATED


@api_bp.route("/pastes/<paste_id>", methods=["GET"])
def fetch_paste(paste_id: str) -> tuple[dict, int]:
    """Fetch a paste, consuming one of its views."""

    try:
        paste = get_paste_store().fetch_and_consume(paste_id, now_ms=request_now_ms())
    except PasteUnavailableError:
        return {"error": "Paste not found or unavailable"}, HTTPStatus.NOT_FOUND
    except INTERNAL_ERRORS as exc:
        return _internal_error(exc, "paste_fetch_failed")

    response = PasteFetchResponse(**paste_to_fetch_dto(paste))
    return response.model_dump(), HTTPStatus.OK
