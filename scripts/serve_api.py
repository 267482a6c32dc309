from __future__ import annotations

import argparse

import uvicorn

from whisprnet.apps.api.main import create_app
from whisprnet.core.config import get_settings


def main() -> None:
    # Env-driven settings; the flags only choose where to listen.
    parser = argparse.ArgumentParser(description="Run the WhisprNet API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    settings = get_settings()
    app = create_app(settings=settings)
    uvicorn.run(app, host=args.host, port=args.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
