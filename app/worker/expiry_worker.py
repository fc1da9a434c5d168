from __future__ import annotations

import logging
import threading
import time
from typing import NoReturn

from flask import Flask

from app.domain.errors import BackendUnavailableError
from app.kv.base import KeyValueBackend


logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30.0

_worker_started = False
_worker_lock = threading.Lock()


def run_expiry_cycle(backend: KeyValueBackend) -> int:
    """Reclaim expired records once; returns how many were removed."""

    purged = backend.purge_expired()
    if purged:
        logger.info(
            "Expiry worker: reclaimed expired records",
            extra={
                "event": "expiry_worker_purged",
                "purged": purged,
                "correlation_id": "expiry-worker",
            },
        )
    return purged


def _expiry_loop(backend: KeyValueBackend, interval: float) -> NoReturn:
    """Background loop that periodically reclaims expired records."""

    while True:
        try:
            run_expiry_cycle(backend)
        except BackendUnavailableError:
            logger.warning(
                "Expiry worker: backend unavailable; skipping cycle",
                extra={
                    "event": "expiry_worker_backend_unavailable",
                    "correlation_id": "expiry-worker",
                },
            )
        except Exception:  # pragma: no cover - keep the thread alive
            logger.exception(
                "Error in expiry worker loop",
                extra={
                    "event": "expiry_worker_error",
                    "correlation_id": "expiry-worker",
                },
            )

        time.sleep(interval)


def start_expiry_worker(app: Flask, backend: KeyValueBackend) -> bool:
    """
    Start the expiry worker in a background thread.

    Only backends that cannot expire keys on their own need it. This function
    is idempotent and will only start a single worker thread. Returns whether
    a thread was started by this call.
    """

    global _worker_started
    if backend.native_ttl:
        return False

    with _worker_lock:
        if _worker_started:
            return False

        interval = float(
            app.config.get("EXPIRY_POLL_INTERVAL_SECONDS", POLL_INTERVAL_SECONDS)
        )
        thread = threading.Thread(
            target=_expiry_loop,
            args=(backend, interval),
            name="expiry-worker",
            daemon=True,
        )
        thread.start()
        _worker_started = True
        return True
