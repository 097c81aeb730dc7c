"""Command-line entrypoint for running the caching proxy under uvicorn."""

from __future__ import annotations

import uvicorn

from ..common.settings import ProxySettings
from .app import create_app


def main() -> None:
    settings = ProxySettings()
    app = create_app(settings)
    # structlog owns log formatting; keep uvicorn from installing its own handlers.
    uvicorn.run(app, host=settings.bind_host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
