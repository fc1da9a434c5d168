from __future__ import annotations

import logging
from http import HTTPStatus

from flask import Blueprint, render_template

from app.api.pastes import INTERNAL_ERRORS, get_paste_store, request_now_ms
from app.domain.errors import PasteUnavailableError
from app.observability import get_correlation_id
from app.services.views import paste_to_fetch_dto


logger = logging.getLogger(__name__)

pages_bp = Blueprint("pages", __name__)


@pages_bp.route("/p/<paste_id>", methods=["GET"])
def view_paste_page(paste_id: str) -> tuple[str, int]:
    """
    Render a paste as HTML. Viewing the page consumes a view just like the API.

    Content is escaped by Jinja's autoescaping.
    """
    try:
        paste = get_paste_store().fetch_and_consume(paste_id, now_ms=request_now_ms())
    except PasteUnavailableError:
        return render_template("not_found.html"), HTTPStatus.NOT_FOUND
    except INTERNAL_ERRORS as exc:
        logger.exception(
            "Paste page failed",
            extra={
                "event": "paste_page_failed",
                "error_type": type(exc).__name__,
                "correlation_id": get_correlation_id(),
            },
        )
        return render_template("error.html"), HTTPStatus.INTERNAL_SERVER_ERROR

    return render_template("paste.html", **paste_to_fetch_dto(paste)), HTTPStatus.OK
