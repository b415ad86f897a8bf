import os

import uvicorn

from logging_config import get_logger, setup_logging


def main():
    # Logging must be configured before the app module builds its clients
    setup_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), log_file=os.getenv("LOG_FILE", None))
    logger = get_logger(__name__)

    from app import app

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    logger.info(f"Starting room fan-out worker on {host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
