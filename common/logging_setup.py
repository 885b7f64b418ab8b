import logging

from common.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = LOG_LEVEL) -> None:
    """Configure the root logger once per process entry point."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # pika is very chatty at INFO
    logging.getLogger("pika").setLevel(logging.WARNING)
