#!/usr/bin/env python3
"""
Container entrypoint: release phase, then exec gunicorn serving app.wsgi:app.

Environment: PORT (default 8080), WEB_CONCURRENCY (default 2), GUNICORN_TIMEOUT (default 120).
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _env_int(name: str, default: int, *, low: int = 1, high: int | None = None) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise SystemExit(f"{name}={raw!r} is not an integer.")
    if value < low or (high is not None and value > high):
        raise SystemExit(f"{name}={value} is out of range.")
    return value


def gunicorn_argv(port: int, workers: int, timeout: int) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", str(workers),
        "--timeout", str(timeout),
        # Engine is disposed in each worker after fork (see create_app).
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _env_int("PORT", 8080, high=65535)
    workers = _env_int("WEB_CONCURRENCY", 2)
    timeout = _env_int("GUNICORN_TIMEOUT", 120)

    from scripts.release import run_release

    try:
        run_release()
    except Exception as e:
        print(f"Release failed, not starting web server: {e}", flush=True)
        sys.exit(1)

    print(f"Starting gunicorn on port {port} with {workers} worker(s)", flush=True)
    argv = gunicorn_argv(port, workers, timeout)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
