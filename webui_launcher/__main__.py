"""
Entry point for running the launcher via `python -m webui_launcher`.

Starts the dashboard server with uvicorn; the supervised server is started
by the application on startup.
"""

import uvicorn

from .config import load_config
from .main import configure_logging, create_app


def main():
    """Run the launcher."""
    config = load_config()
    configure_logging(config)
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
