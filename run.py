from __future__ import annotations

import os

from app import create_app


def main() -> None:
    env = os.getenv("APP_ENV", "development")
    app = create_app(env)

    host = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    port = int(os.getenv("FLASK_RUN_PORT", "5000"))

    # Each request runs on its own thread; pastes are coordinated by the backend.
    app.run(host=host, port=port, threaded=True, debug=app.config.get("DEBUG", False))


if __name__ == "__main__":
    main()
