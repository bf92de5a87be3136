"""Entry point for running XOLink via ``python -m xolink``."""

from __future__ import annotations

import uvicorn

from .config import configure_logging, get_settings


def main() -> None:
    """Start the FastAPI-powered XOLink server."""

    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run("xolink.ui:app", host=settings.host, port=settings.port, reload=False)


if __name__ == "__main__":
    main()
