from __future__ import annotations

import argparse

import uvicorn

from backend.serveai.config import load_settings

APP_IMPORT_PATH = "backend.serveai.main:app"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the ShimmyServe API server.")
    parser.add_argument("--host", help="Bind address (default: SHIMMYSERVE_HOST).")
    parser.add_argument("--port", type=int, help="Listen port (default: SHIMMYSERVE_PORT).")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Restart the server when source files change.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    settings = load_settings()
    # Logging is configured by the application lifespan, not by uvicorn.
    uvicorn.run(
        APP_IMPORT_PATH,
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
        log_config=None,
    )


if __name__ == "__main__":
    main()
