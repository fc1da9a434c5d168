from __future__ import annotations

import atexit
import os

from flask import Flask
from flask_cors import CORS

from .config import get_config
from .domain.clock import Clock, SystemClock
from .domain.ids import IdGenerator
from .kv import KeyValueBackend, build_backend
from .observability import init_observability
from .repositories.paste_repository import PasteRepository
from .services.paste_store import PasteStore
from .api.pastes import api_bp
from .api.pages import pages_bp
from .worker.expiry_worker import start_expiry_worker


def init_paste_store(
    app: Flask,
    backend: KeyValueBackend | None = None,
    clock: Clock | None = None,
) -> PasteStore:
    """
    Connect the key-value backend and build the paste store for ``app``.

    Both live in ``app.extensions`` so request handlers share one backend
    connection without a module-level global. Pass ``backend`` / ``clock`` to
    inject test doubles.
    """

    if backend is None:
        backend = build_backend(app.config)
    backend.connect()
    atexit.register(backend.close)

    store = PasteStore(
        repository=PasteRepository(backend),
        id_generator=IdGenerator(app.config.get("PASTE_ID_LENGTH", 10)),
        clock=clock or SystemClock(),
        create_attempts=app.config.get("PASTE_CREATE_ATTEMPTS", 5),
        fetch_attempts=app.config.get("PASTE_FETCH_ATTEMPTS", 8),
        retry_backoff_seconds=app.config.get("PASTE_RETRY_BACKOFF_SECONDS", 0.0),
    )

    app.extensions["kv_backend"] = backend
    app.extensions["paste_store"] = store
    return store


def create_app(
    env_name: str | None = None,
    *,
    backend: KeyValueBackend | None = None,
    clock: Clock | None = None,
) -> Flask:
    """
    Application factory for the Flask backend.

    The configuration is selected based on the provided ``env_name`` or,
    if not given, the ``APP_ENV`` environment variable (falling back to
    ``development``).
    """
    if env_name is None:
        env_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__)
    app_config = get_config(env_name)
    app.config.from_object(app_config)

    CORS(
        app
    )

    # Initialize infrastructure layers
    init_observability(app)
    init_paste_store(app, backend=backend, clock=clock)

    # Register API blueprints
    app.register_blueprint(api_bp)
    app.register_blueprint(pages_bp)

    # Start background expiry worker (disabled in testing)
    if not app.config.get("TESTING", False):
        start_expiry_worker(app, app.extensions["kv_backend"])

    return app
