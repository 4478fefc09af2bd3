import logging

from config import Settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(settings: Settings) -> None:
    """Route the API, the store and the purge job through one root handler.

    LOG_LEVEL applies to our modules and to the uvicorn server alike.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    for server_logger in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(server_logger).setLevel(level)
