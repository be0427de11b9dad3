from __future__ import annotations

import os
import sys
from pathlib import Path

import uvicorn


def _prepare_paths() -> Path:
    base_dir = Path(__file__).resolve().parent
    app_dir = base_dir / "chat-stream"
    if str(app_dir) not in sys.path:
        sys.path.insert(0, str(app_dir))
    # relative paths (data/, images) resolve against the service dir
    os.chdir(app_dir)
    return app_dir


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _apply_defaults(host: str, port: int) -> None:
    """Point the chat turns at this process's own /api/chat/* routes unless env or .env says otherwise."""
    from chatstream.core.settings import AppSettings  # noqa: WPS433

    if "aggregator_base_url" not in AppSettings().model_fields_set:
        shown = "127.0.0.1" if host in ("0.0.0.0", "::") else host
        os.environ["AGGREGATOR_BASE_URL"] = f"http://{shown}:{port}"


def main() -> None:
    _prepare_paths()

    host = _env("APP_HOST", "127.0.0.1")
    try:
        port = int(_env("APP_PORT", "8000"))
    except ValueError:
        port = 8000
    _apply_defaults(host, port)

    # Import after sys.path/cwd are prepared
    from apps.api.main import app  # noqa: WPS433

    # request lines come from the app's own middleware
    uvicorn.run(app, host=host, port=port, reload=False, access_log=False, log_level=_env("LOG_LEVEL", "info").lower())


if __name__ == "__main__":
    main()
